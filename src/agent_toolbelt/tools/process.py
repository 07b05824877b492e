"""Process tool: runs a configured executable (git, go, python, ...) in the workspace.

Configuration keys:
  workspace : working directory (defaults to the context workspace, then cwd)
  command   : base executable, required
  extraArgs : arguments prepended to every invocation (quote-aware split)

Arguments (JSON object):
  action           : run (default) | status | kill | write | read
  command_arguments: argument string appended after extraArgs
  shell            : run the whole command line through bash -c
  input            : text sent to stdin, followed by a newline
  background       : start without waiting and track by pid
  timeout          : seconds; 0 means the default (30), negative disables it
  env              : ["KEY=VALUE", ...] merged over the inherited environment
  pid              : target of status / kill / write / read
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from agent_toolbelt.config import require_command, resolve_workspace
from agent_toolbelt.domain.contracts import STATUS_FAILED, CommandSpec, RunResult
from agent_toolbelt.domain.errors import ToolArgumentError, ToolError
from agent_toolbelt.execution.argv import build_command_spec, build_shell_spec, split_command_arguments
from agent_toolbelt.execution.foreground import NO_TIMEOUT, ForegroundRunner
from agent_toolbelt.execution.process_registry import ProcessRegistry
from agent_toolbelt.observability.structured_log import log_json
from agent_toolbelt.tools.base import (
    ToolContext,
    ToolParameter,
    ToolRequest,
    ToolResult,
    error_result,
    json_output,
    validate_args,
)
from agent_toolbelt.util import preview_lines, redact_command

logger = logging.getLogger(__name__)

STDOUT_PREVIEW_LINES = 10
STDERR_PREVIEW_LINES = 5


class ProcessArgs(BaseModel):
    model_config = ConfigDict(extra="ignore")

    action: str = "run"
    command_arguments: str = Field(default="", validation_alias=AliasChoices("command_arguments", "command"))
    shell: bool = False
    input: str = ""
    background: bool = False
    timeout: int = 0
    env: List[str] = Field(default_factory=list)
    pid: int = 0


class ManagedProcessTool:
    """Shared run/status/kill plumbing of the Process and Bash tools."""

    name = ""
    description = ""
    actions: tuple[str, ...] = ("run", "status", "kill")

    def __init__(
        self,
        name: str = "",
        description: str = "",
        configuration: Optional[Dict[str, str]] = None,
        registry: Optional[ProcessRegistry] = None,
        runner: Optional[ForegroundRunner] = None,
    ) -> None:
        self.name = name or self.name
        self.description = description or self.description
        self._configuration: Dict[str, str] = dict(configuration or {})
        self._registry = registry or ProcessRegistry()
        self._runner = runner or ForegroundRunner()

    @property
    def configuration(self) -> Dict[str, str]:
        return dict(self._configuration)

    @property
    def process_registry(self) -> ProcessRegistry:
        return self._registry

    def update_configuration(self, configuration: Dict[str, str]) -> None:
        self._configuration = dict(configuration or {})

    def validate_configuration(self, context: Optional[ToolContext] = None) -> Path:
        return self._workspace(context or ToolContext())

    def close(self) -> None:
        self._registry.close_all()

    def _workspace(self, context: ToolContext) -> Path:
        if not str(self._configuration.get("workspace") or "").strip() and context.workspace_root is not None:
            return resolve_workspace({"workspace": str(context.workspace_root)})
        return resolve_workspace(self._configuration)

    def _dispatch(self, action: str, pid: int, input_text: str = "") -> Optional[RunResult]:
        if action == "status":
            return self._registry.status(_require_pid(pid, "status check"))
        if action == "kill":
            return self._registry.kill(_require_pid(pid, "kill"))
        if action == "write" and "write" in self.actions:
            pid = _require_pid(pid, "write")
            if not input_text:
                raise ToolArgumentError("input required for write")
            return self._registry.write(pid, input_text + "\n")
        if action == "read" and "read" in self.actions:
            return self._registry.read(_require_pid(pid, "read"))
        return None

    def _execute(
        self,
        spec: CommandSpec,
        background: bool,
        timeout: int,
        input_text: str,
    ) -> RunResult:
        stdin_text = input_text + "\n" if input_text else ""
        if background:
            return self._registry.spawn(spec, stdin_text=stdin_text)
        timeout_sec = NO_TIMEOUT if timeout < 0 else timeout
        return self._runner.run(spec, timeout_sec=timeout_sec, stdin_text=stdin_text)

    def _unknown_action(self, action: str) -> ToolResult:
        log_json(logger, "tool.unknown_action", level=logging.WARNING, tool=self.name, action=action)
        return error_result(f"unknown action: {action}. Expected one of: {', '.join(self.actions)}.")


class ProcessTool(ManagedProcessTool):
    name = "Process"
    description = (
        "Executes a configured CLI command with support for background processes, timeouts, "
        "and full output. The extraArgs are prepended with the arguments passed to the tool."
    )
    actions = ("run", "status", "kill", "write", "read")

    def validate_configuration(self, context: Optional[ToolContext] = None) -> Path:
        require_command(self._configuration, self.name)
        return super().validate_configuration(context)

    def parameters(self) -> List[ToolParameter]:
        return [
            ToolParameter("command_arguments", "string", "Arguments passed to the configured command", False),
            ToolParameter("shell", "boolean", "Run the command through bash to inherit PATH and environment"),
            ToolParameter("input", "string", "Input data to send to the process's stdin"),
            ToolParameter("background", "boolean", "Run the command in the background (e.g., for web servers)"),
            ToolParameter("timeout", "integer", "Timeout in seconds (default: 30, negative for no timeout)"),
            ToolParameter("env", "array", "Environment variables as key=value pairs", items_type="string"),
            ToolParameter("pid", "integer", "PID of a background process to check, kill, write or read"),
            ToolParameter("action", "string", "Action to perform", enum=list(self.actions)),
        ]

    def run(self, request: ToolRequest, context: ToolContext) -> ToolResult:
        try:
            args = validate_args(ProcessArgs, request.args)
            action = (args.action or "run").strip().lower()
            if action == "run":
                result = self._run(args, context)
                return ToolResult(ok=True, output=json_output(_with_summary(result)))
            outcome = self._dispatch(action, args.pid, args.input)
        except ToolError as exc:
            return error_result(str(exc))
        if outcome is None:
            return self._unknown_action(action)
        return ToolResult(ok=True, output=json_output(outcome.to_dict()))

    def _run(self, args: ProcessArgs, context: ToolContext) -> RunResult:
        command = require_command(self._configuration, self.name)
        workspace = self._workspace(context)
        extra_raw = str(self._configuration.get("extraArgs") or "").strip()
        if args.shell:
            command_line = " ".join(part for part in (command, extra_raw, args.command_arguments) if part)
            spec = build_shell_spec(command_line, cwd=workspace, env=args.env)
        else:
            argv = split_command_arguments(extra_raw) + split_command_arguments(args.command_arguments)
            spec = build_command_spec(command, argv, cwd=workspace, env=args.env)
        log_json(
            logger,
            "tool.process.run",
            tool=self.name,
            command=redact_command(spec.argv),
            background=args.background,
            timeout=args.timeout,
        )
        return self._execute(spec, args.background, args.timeout, args.input)


def _with_summary(result: RunResult) -> Dict[str, Any]:
    payload = result.to_dict()
    payload["summary"] = build_summary(result)
    if result.status == STATUS_FAILED:
        payload["recoverable"] = True
    return payload


def build_summary(result: RunResult) -> str:
    """Short human-readable digest of a run for display next to the full output."""
    lines = [f"Command: {result.command}", f"Status: {result.status}"]
    if result.pid:
        lines.append(f"PID: {result.pid}")
    lines.append("")

    out_lines, out_more = preview_lines(result.stdout, STDOUT_PREVIEW_LINES)
    if out_lines:
        lines.append(f"Stdout ({len(out_lines) + out_more} lines):")
        lines.extend(f"   {line}" for line in out_lines)
        if out_more:
            lines.append(f"   ... and {out_more} more lines")

    err_lines, err_more = preview_lines(result.stderr, STDERR_PREVIEW_LINES)
    if err_lines:
        if out_lines:
            lines.append("")
        lines.append(f"Stderr ({len(err_lines) + err_more} lines):")
        lines.extend(f"   {line}" for line in err_lines)
        if err_more:
            lines.append(f"   ... and {err_more} more lines")
    return "\n".join(lines).rstrip() + "\n"


def _require_pid(pid: int, purpose: str) -> int:
    if not pid:
        raise ToolArgumentError(f"PID is required for {purpose}")
    return int(pid)
