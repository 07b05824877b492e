from __future__ import annotations

import logging
from typing import List

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from agent_toolbelt.domain.errors import ToolArgumentError, ToolError
from agent_toolbelt.execution.argv import build_shell_spec
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
from agent_toolbelt.tools.process import ManagedProcessTool
from agent_toolbelt.util import redact

logger = logging.getLogger(__name__)


class BashArgs(BaseModel):
    model_config = ConfigDict(extra="ignore")

    action: str = "run"
    command: str = Field(default="", validation_alias=AliasChoices("command", "command_arguments"))
    background: bool = False
    timeout: int = 0
    env: List[str] = Field(default_factory=list)
    pid: int = 0


class BashTool(ManagedProcessTool):
    """Runs ``bash -c <command>`` in the workspace, in the foreground or tracked by pid."""

    name = "Bash"
    description = "A tool that executes bash commands with support for background processes and full output"

    def parameters(self) -> List[ToolParameter]:
        return [
            ToolParameter("command", "string", "The bash command to execute", True),
            ToolParameter("background", "boolean", "Run the command in the background (e.g., for web servers)"),
            ToolParameter("timeout", "integer", "Timeout in seconds (default: 30, negative for no timeout)"),
            ToolParameter("env", "array", "Environment variables as key=value pairs", items_type="string"),
            ToolParameter("pid", "integer", "PID of a background process to check or kill"),
            ToolParameter("action", "string", "Action to perform", enum=list(self.actions)),
        ]

    def run(self, request: ToolRequest, context: ToolContext) -> ToolResult:
        try:
            args = validate_args(BashArgs, request.args)
            action = (args.action or "run").strip().lower()
            if action == "run":
                outcome = self._run(args, context)
            else:
                outcome = self._dispatch(action, args.pid)
        except ToolError as exc:
            return error_result(str(exc))
        if outcome is None:
            return self._unknown_action(action)
        return ToolResult(ok=True, output=json_output(outcome.to_dict()))

    def _run(self, args: BashArgs, context: ToolContext):
        if not args.command.strip():
            raise ToolArgumentError("command is required")
        workspace = self._workspace(context)
        spec = build_shell_spec(args.command, cwd=workspace, env=args.env)
        log_json(
            logger,
            "tool.bash.run",
            tool=self.name,
            command=redact(args.command),
            background=args.background,
            timeout=args.timeout,
        )
        return self._execute(spec, args.background, args.timeout, "")
