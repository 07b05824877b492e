import json
import shlex
import sys
import tempfile
import time
import unittest
from pathlib import Path

from agent_toolbelt.config import TOOL_TYPE_BASH, TOOL_TYPE_MCP, TOOL_TYPE_PROCESS, ToolConfig
from agent_toolbelt.domain.contracts import RunResult
from agent_toolbelt.execution.process_registry import ProcessRegistry
from agent_toolbelt.tools import build_default_tool_registry
from agent_toolbelt.tools.base import ToolContext, ToolRegistry, ToolRequest, parse_tool_arguments
from agent_toolbelt.tools.bash import BashTool
from agent_toolbelt.tools.mcp import McpTool, schema_to_parameters
from agent_toolbelt.tools.process import ProcessTool, build_summary

FAKE_SERVER = Path(__file__).resolve().parent / "mcp_fake_server.py"


class _RecordingRunner:
    def __init__(self, result=None):
        self.calls = []
        self._result = result or RunResult(stdout="ok\n", stderr="", status="completed", exit_code=0, command="x")

    def run(self, spec, timeout_sec=30, stdin_text=""):
        self.calls.append({"spec": spec, "timeout_sec": timeout_sec, "stdin_text": stdin_text})
        return self._result


def _payload(result):
    return json.loads(result.output)


class TestProcessTool(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.workspace = Path(self.tmp.name)
        self.context = ToolContext(workspace_root=self.workspace)

    def tearDown(self):
        self.tmp.cleanup()

    def _tool(self, **configuration):
        configuration.setdefault("workspace", str(self.workspace))
        return ProcessTool(name="Printf", configuration=configuration, registry=ProcessRegistry())

    def test_extra_args_prepended_with_quote_aware_split(self):
        tool = self._tool(command="printf", extraArgs="'%s|'")
        result = tool.run(ToolRequest("Printf", {"command_arguments": '"a b" c'}), self.context)
        self.assertTrue(result.ok)
        payload = _payload(result)
        self.assertEqual(payload["status"], "completed")
        self.assertEqual(payload["stdout"], "a b|c|")
        self.assertIn("Status: completed", payload["summary"])
        self.assertNotIn("recoverable", payload)

    def test_command_key_is_accepted_as_arguments_alias(self):
        runner = _RecordingRunner()
        tool = ProcessTool(
            name="Git",
            configuration={"command": "git", "extraArgs": "-C .", "workspace": str(self.workspace)},
            runner=runner,
        )
        tool.run(ToolRequest("Git", {"command": "log -n 1"}), self.context)
        self.assertEqual(runner.calls[0]["spec"].argv, ("git", "-C", ".", "log", "-n", "1"))
        self.assertEqual(runner.calls[0]["spec"].cwd, self.workspace.resolve())

    def test_timeout_mapping(self):
        runner = _RecordingRunner()
        tool = ProcessTool(
            name="Go", configuration={"command": "go", "workspace": str(self.workspace)}, runner=runner
        )
        tool.run(ToolRequest("Go", {"command_arguments": "version"}), self.context)
        tool.run(ToolRequest("Go", {"command_arguments": "version", "timeout": 5}), self.context)
        tool.run(ToolRequest("Go", {"command_arguments": "version", "timeout": -1}), self.context)
        self.assertEqual([c["timeout_sec"] for c in runner.calls], [0, 5, None])

    def test_input_is_sent_with_trailing_newline(self):
        runner = _RecordingRunner()
        tool = ProcessTool(
            name="Python", configuration={"command": "python3", "workspace": str(self.workspace)}, runner=runner
        )
        tool.run(ToolRequest("Python", {"command_arguments": "-", "input": "print(1)"}), self.context)
        self.assertEqual(runner.calls[0]["stdin_text"], "print(1)\n")

    def test_shell_mode_runs_through_bash(self):
        tool = self._tool(command="echo")
        result = tool.run(
            ToolRequest("Printf", {"command_arguments": "$TOOLBELT_SHELL_VAR", "shell": True, "env": ["TOOLBELT_SHELL_VAR=expanded"]}),
            self.context,
        )
        payload = _payload(result)
        self.assertEqual(payload["stdout"], "expanded\n")
        self.assertEqual(payload["command"], "bash -c echo $TOOLBELT_SHELL_VAR")

    def test_failed_run_is_marked_recoverable(self):
        tool = self._tool(command="ls")
        payload = _payload(tool.run(ToolRequest("Printf", {"command_arguments": "does-not-exist"}), self.context))
        self.assertEqual(payload["status"], "failed")
        self.assertTrue(payload["recoverable"])
        self.assertIn("Stderr", payload["summary"])

    def test_background_status_kill_cycle(self):
        tool = self._tool(command="sleep")
        started = _payload(tool.run(ToolRequest("Printf", {"command_arguments": "30", "background": True}), self.context))
        self.assertEqual(started["status"], "running")
        pid = started["pid"]
        status = _payload(tool.run(ToolRequest("Printf", {"action": "status", "pid": pid}), self.context))
        self.assertEqual(status["status"], "running")
        killed = _payload(tool.run(ToolRequest("Printf", {"action": "kill", "pid": pid}), self.context))
        self.assertEqual(killed["status"], "terminated")
        gone = _payload(tool.run(ToolRequest("Printf", {"action": "status", "pid": pid}), self.context))
        self.assertEqual(gone, {"stdout": "", "stderr": "", "status": "not found"})

    def test_write_and_read_actions(self):
        tool = self._tool(command="cat")
        pid = _payload(tool.run(ToolRequest("Printf", {"background": True}), self.context))["pid"]
        try:
            written = _payload(tool.run(ToolRequest("Printf", {"action": "write", "pid": pid, "input": "ping"}), self.context))
            self.assertEqual(written["status"], "written")
            seen = ""
            deadline = time.time() + 5
            while "ping" not in seen and time.time() < deadline:
                seen += _payload(tool.run(ToolRequest("Printf", {"action": "read", "pid": pid}), self.context))["stdout"]
                time.sleep(0.05)
            self.assertIn("ping", seen)
        finally:
            tool.close()

    def test_status_requires_pid(self):
        result = self._tool(command="true").run(ToolRequest("Printf", {"action": "status"}), self.context)
        self.assertFalse(result.ok)
        self.assertIn("PID is required", result.output)

    def test_unknown_action_is_error(self):
        result = self._tool(command="true").run(ToolRequest("Printf", {"action": "restart"}), self.context)
        self.assertFalse(result.ok)
        self.assertTrue(result.output.startswith("Error: unknown action: restart"))

    def test_missing_command_configuration(self):
        tool = ProcessTool(name="Broken", configuration={"workspace": str(self.workspace)})
        result = tool.run(ToolRequest("Broken", {"command_arguments": "x"}), self.context)
        self.assertFalse(result.ok)
        self.assertIn("'command' is required", result.output)

    def test_missing_workspace_configuration(self):
        tool = ProcessTool(
            name="Broken", configuration={"command": "true", "workspace": str(self.workspace / "missing")}
        )
        result = tool.run(ToolRequest("Broken", {}), self.context)
        self.assertFalse(result.ok)
        self.assertIn("workspace does not exist", result.output)

    def test_invalid_argument_types(self):
        result = self._tool(command="true").run(ToolRequest("Printf", {"timeout": "soon"}), self.context)
        self.assertFalse(result.ok)
        self.assertIn("invalid tool arguments", result.output)

    def test_summary_truncates_long_output(self):
        stdout = "\n".join(f"line {i}" for i in range(25))
        summary = build_summary(RunResult(stdout=stdout, stderr="", status="completed", command="seq"))
        self.assertIn("Stdout (25 lines):", summary)
        self.assertIn("... and 15 more lines", summary)
        self.assertNotIn("line 10", summary)


class TestBashTool(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.context = ToolContext(workspace_root=Path(self.tmp.name))
        self.tool = BashTool(configuration={})

    def tearDown(self):
        self.tool.close()
        self.tmp.cleanup()

    def test_runs_in_context_workspace(self):
        result = self.tool.run(ToolRequest("Bash", {"command": "pwd"}), self.context)
        payload = _payload(result)
        self.assertEqual(payload["status"], "completed")
        self.assertEqual(Path(payload["stdout"].strip()).resolve(), Path(self.tmp.name).resolve())
        self.assertNotIn("summary", payload)

    def test_timeout_status(self):
        payload = _payload(self.tool.run(ToolRequest("Bash", {"command": "echo begin; sleep 20", "timeout": 1}), self.context))
        self.assertEqual(payload["status"], "timeout")
        self.assertIn("begin", payload["stdout"])

    def test_command_required_for_run(self):
        result = self.tool.run(ToolRequest("Bash", {}), self.context)
        self.assertFalse(result.ok)
        self.assertIn("command is required", result.output)

    def test_write_is_not_a_bash_action(self):
        result = self.tool.run(ToolRequest("Bash", {"action": "write", "pid": 1, "input": "x"}), self.context)
        self.assertFalse(result.ok)
        self.assertIn("unknown action", result.output)

    def test_kill_untracked_pid_is_not_found(self):
        payload = _payload(self.tool.run(ToolRequest("Bash", {"action": "kill", "pid": 999999}), self.context))
        self.assertEqual(payload["status"], "not found")

    def test_schema(self):
        names = [p.name for p in self.tool.parameters()]
        self.assertIn("command", names)
        self.assertIn("pid", names)


class TestMcpTool(unittest.TestCase):
    def setUp(self):
        self.tool = McpTool(
            name="echo",
            description="Echo through the fake server",
            configuration={
                "command": sys.executable,
                "args": f"-u {shlex.quote(str(FAKE_SERVER))}",
                "workspace": str(FAKE_SERVER.parent),
                "timeout": "5",
            },
        )

    def tearDown(self):
        self.tool.close()

    def test_forwards_arguments_as_params(self):
        self.assertIsNone(self.tool.transport)
        result = self.tool.run(ToolRequest("echo", {"text": "hi", "n": 2}), ToolContext())
        self.assertTrue(result.ok)
        self.assertEqual(json.loads(result.output), {"text": "hi", "n": 2})
        self.assertIsNotNone(self.tool.transport)

    def test_parameters_from_list_tools(self):
        params = {p.name: p for p in self.tool.parameters()}
        self.assertTrue(params["text"].required)
        self.assertFalse(params["mode"].required)
        self.assertEqual(params["mode"].enum, ["plain", "upper"])
        self.assertEqual(params["tags"].items_type, "string")

    def test_server_error_becomes_tool_error(self):
        tool = McpTool(name="nonexistent_method", configuration=self.tool.configuration)
        try:
            result = tool.run(ToolRequest("nonexistent_method", {}), ToolContext())
        finally:
            tool.close()
        self.assertFalse(result.ok)
        self.assertIn("error executing MCP method", result.output)
        self.assertIn("method not found", result.output)

    def test_update_configuration_restarts_server(self):
        self.tool.start()
        first_pid = self.tool.transport.pid
        self.tool.update_configuration({"timeout": "3"})
        self.assertNotEqual(self.tool.transport.pid, first_pid)
        self.assertEqual(self.tool.configuration["timeout"], "3")

    def test_missing_command_is_configuration_error(self):
        tool = McpTool(name="echo", configuration={})
        result = tool.run(ToolRequest("echo", {}), ToolContext())
        self.assertFalse(result.ok)
        self.assertIn("'command' is required", result.output)

    def test_schema_without_properties(self):
        self.assertEqual(schema_to_parameters({"type": "object"}), [])
        self.assertEqual(schema_to_parameters(None), [])


class TestToolRegistry(unittest.TestCase):
    def test_parse_tool_arguments(self):
        self.assertEqual(parse_tool_arguments(""), {})
        self.assertEqual(parse_tool_arguments(b'{"a": 1}'), {"a": 1})

    def test_execute_rejects_bad_json(self):
        registry = ToolRegistry()
        registry.register(BashTool())
        result = registry.execute("bash", "{not json")
        self.assertFalse(result.ok)
        self.assertIn("error parsing tool arguments", result.output)
        result = registry.execute("bash", "[1]")
        self.assertIn("must be a JSON object", result.output)

    def test_execute_unknown_tool(self):
        result = ToolRegistry().execute("nope", "{}")
        self.assertFalse(result.ok)
        self.assertIn("unknown tool", result.output)

    def test_execute_is_case_insensitive(self):
        registry = ToolRegistry()
        registry.register(BashTool())
        try:
            result = registry.execute("BASH", '{"command": "echo via-registry"}')
            self.assertIn("via-registry", _payload(result)["stdout"])
        finally:
            registry.close()

    def test_default_registry_skips_invalid_configs(self):
        with tempfile.TemporaryDirectory() as tmp:
            configs = [
                ToolConfig(tool_type=TOOL_TYPE_BASH, name="Bash", configuration={"workspace": tmp}),
                ToolConfig(tool_type=TOOL_TYPE_PROCESS, name="Git", configuration={"command": "git", "workspace": tmp}),
                ToolConfig(tool_type=TOOL_TYPE_PROCESS, name="Nocmd", configuration={"workspace": tmp}),
                ToolConfig(tool_type=TOOL_TYPE_MCP, name="remote", configuration={"command": "server"}),
                ToolConfig(tool_type="Unknown", name="odd"),
            ]
            registry = build_default_tool_registry(configs)
        self.assertEqual(registry.names(), ["bash", "git", "remote"])
        self.assertIs(registry.get("bash").process_registry, registry.get("git").process_registry)

    def test_tool_schemas(self):
        registry = ToolRegistry()
        registry.register(ProcessTool(name="Git", configuration={"command": "git"}))
        schemas = registry.tool_schemas()
        self.assertEqual(schemas[0]["name"], "Git")
        props = schemas[0]["input_schema"]["properties"]
        self.assertEqual(props["action"]["enum"], ["run", "status", "kill", "write", "read"])
        self.assertEqual(props["env"]["items"], {"type": "string"})


if __name__ == "__main__":
    unittest.main()
