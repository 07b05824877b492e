from __future__ import annotations

import json
import logging
import threading
from typing import Any, Callable, Dict, List, Optional

from agent_toolbelt.config import parse_timeout_sec, require_command, resolve_workspace
from agent_toolbelt.domain.errors import ToolError, TransportError
from agent_toolbelt.execution.argv import split_command_arguments
from agent_toolbelt.observability.structured_log import log_json
from agent_toolbelt.tools.base import ToolContext, ToolParameter, ToolRequest, ToolResult, error_result
from agent_toolbelt.transport.mcp_stdio import DEFAULT_CALL_TIMEOUT_SEC, McpStdioTransport

logger = logging.getLogger(__name__)

LIST_TOOLS_METHOD = "list_tools"

TransportFactory = Callable[..., McpStdioTransport]


class McpTool:
    """Proxies every call to an MCP server child process.

    The tool name doubles as the JSON-RPC method and the call arguments are
    forwarded verbatim as ``params``. The server is started on first use and
    kept for the lifetime of the tool.
    """

    def __init__(
        self,
        name: str,
        description: str = "",
        configuration: Optional[Dict[str, str]] = None,
        transport_factory: Optional[TransportFactory] = None,
    ) -> None:
        self.name = name
        self.description = description
        self._configuration: Dict[str, str] = dict(configuration or {})
        self._transport_factory = transport_factory or McpStdioTransport
        self._transport: Optional[McpStdioTransport] = None
        self._lock = threading.Lock()

    @property
    def configuration(self) -> Dict[str, str]:
        return dict(self._configuration)

    @property
    def transport(self) -> Optional[McpStdioTransport]:
        return self._transport

    def start(self) -> McpStdioTransport:
        with self._lock:
            if self._transport is not None:
                return self._transport
            command = require_command(self._configuration, self.name)
            workspace = resolve_workspace(self._configuration)
            args = split_command_arguments(str(self._configuration.get("args") or ""))
            timeout = parse_timeout_sec(self._configuration.get("timeout"), DEFAULT_CALL_TIMEOUT_SEC)
            transport = self._transport_factory(
                command,
                working_dir=workspace,
                args=args,
                call_timeout_sec=timeout,
            )
            transport.start()
            self._transport = transport
            return transport

    def update_configuration(self, configuration: Dict[str, str]) -> None:
        """Merge new settings and restart the server with them."""
        self.close()
        self._configuration.update(configuration or {})
        self.start()

    def close(self) -> None:
        with self._lock:
            transport, self._transport = self._transport, None
        if transport is not None:
            transport.close()

    def invoke(self, method: str, params: Any = None) -> Any:
        return self.start().invoke(method, params)

    def run(self, request: ToolRequest, context: ToolContext) -> ToolResult:
        log_json(logger, "tool.mcp.run", tool=self.name, arg_keys=sorted(request.args.keys()))
        try:
            result = self.invoke(self.name, dict(request.args))
        except TransportError as exc:
            return error_result(f"error executing MCP method: {exc}")
        except ToolError as exc:
            return error_result(str(exc))
        return ToolResult(ok=True, output=json.dumps(result, ensure_ascii=False))

    def parameters(self) -> List[ToolParameter]:
        """Parameter list of this tool as advertised by the server's ``list_tools``."""
        try:
            listing = self.invoke(LIST_TOOLS_METHOD, None)
        except ToolError as exc:
            logger.error("Error invoking %s for tool %s: %s", LIST_TOOLS_METHOD, self.name, exc)
            return []
        if not isinstance(listing, list):
            logger.error("Invalid response format for %s", LIST_TOOLS_METHOD)
            return []
        for entry in listing:
            if isinstance(entry, dict) and entry.get("name") == self.name:
                return schema_to_parameters(entry.get("parameters") or entry.get("inputSchema"))
        logger.error("Tool %s not found in MCP server", self.name)
        return []


def schema_to_parameters(schema: Any) -> List[ToolParameter]:
    if not isinstance(schema, dict) or not isinstance(schema.get("properties"), dict):
        logger.error("Invalid parameters schema: %r", schema)
        return []
    required = {str(item) for item in schema.get("required") or [] if isinstance(item, str)}
    params: List[ToolParameter] = []
    for name, prop in schema["properties"].items():
        if not isinstance(prop, dict):
            continue
        enum = prop.get("enum")
        items = prop.get("items")
        params.append(
            ToolParameter(
                name=name,
                type=str(prop.get("type") or "string"),
                description=str(prop.get("description") or ""),
                required=name in required,
                enum=[str(v) for v in enum] if isinstance(enum, list) else None,
                items_type=str(items.get("type")) if isinstance(items, dict) and items.get("type") else None,
            )
        )
    return params
