from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Type, TypeVar

from pydantic import BaseModel, ValidationError

from agent_toolbelt.domain.errors import ToolArgumentError

logger = logging.getLogger(__name__)

ArgsModel = TypeVar("ArgsModel", bound=BaseModel)


@dataclass(frozen=True)
class ToolRequest:
    name: str
    args: Dict[str, object]


@dataclass(frozen=True)
class ToolContext:
    workspace_root: Optional[Path] = None


@dataclass(frozen=True)
class ToolResult:
    ok: bool
    output: str


@dataclass(frozen=True)
class ToolParameter:
    name: str
    type: str
    description: str = ""
    required: bool = False
    enum: Optional[List[str]] = None
    items_type: Optional[str] = None


class Tool(Protocol):
    name: str

    def run(self, request: ToolRequest, context: ToolContext) -> ToolResult:
        ...


def parse_tool_arguments(arguments: str | bytes | None) -> Dict[str, object]:
    """Decode the raw JSON argument string of a tool call into an object."""
    raw = arguments.decode("utf-8") if isinstance(arguments, bytes) else (arguments or "")
    if not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
    except ValueError as exc:
        raise ToolArgumentError(f"error parsing tool arguments: {exc}") from exc
    if not isinstance(parsed, dict):
        raise ToolArgumentError("tool arguments must be a JSON object")
    return parsed


def validate_args(model: Type[ArgsModel], args: Dict[str, object]) -> ArgsModel:
    try:
        return model.model_validate(dict(args or {}))
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'arguments'}: {err['msg']}" for err in exc.errors()
        )
        raise ToolArgumentError(f"invalid tool arguments: {problems}") from exc


def json_output(payload: Dict[str, Any]) -> str:
    return json.dumps(payload, ensure_ascii=False)


def error_result(message: str) -> ToolResult:
    text = str(message or "unknown error").strip()
    if not text.startswith("Error:"):
        text = f"Error: {text}"
    return ToolResult(ok=False, output=text)


def parameters_to_schema(name: str, description: str, parameters: List[ToolParameter]) -> Dict[str, Any]:
    """Anthropic-style tool definition for a tool's parameter list."""
    properties: Dict[str, Any] = {}
    required: List[str] = []
    for param in parameters:
        prop: Dict[str, Any] = {"type": param.type, "description": param.description}
        if param.enum:
            prop["enum"] = list(param.enum)
        if param.items_type:
            prop["items"] = {"type": param.items_type}
        properties[param.name] = prop
        if param.required:
            required.append(param.name)
    return {
        "name": name,
        "description": description,
        "input_schema": {"type": "object", "properties": properties, "required": required},
    }


class ToolRegistry:
    def __init__(self) -> None:
        self._tools: Dict[str, Tool] = {}

    def register(self, tool: Tool) -> None:
        name = (getattr(tool, "name", "") or "").strip().lower()
        if not name:
            raise ValueError("Tool name is required.")
        if name in self._tools:
            logger.warning("Replacing registered tool '%s'", name)
        self._tools[name] = tool

    def get(self, name: str) -> Optional[Tool]:
        return self._tools.get((name or "").strip().lower())

    def names(self) -> List[str]:
        return sorted(self._tools.keys())

    def execute(
        self,
        name: str,
        arguments: str | bytes | None,
        context: Optional[ToolContext] = None,
    ) -> ToolResult:
        """Run one tool call given its raw JSON argument string."""
        tool = self.get(name)
        if tool is None:
            return error_result(f"unknown tool '{name}'.")
        try:
            args = parse_tool_arguments(arguments)
        except ToolArgumentError as exc:
            return error_result(str(exc))
        return tool.run(ToolRequest(name=tool.name, args=args), context or ToolContext())

    def tool_schemas(self) -> List[Dict[str, Any]]:
        """Tool definitions for every registered tool that can describe its parameters."""
        schemas: List[Dict[str, Any]] = []
        for name in sorted(self._tools.keys()):
            tool = self._tools[name]
            describe = getattr(tool, "parameters", None)
            if describe is None:
                continue
            schemas.append(
                parameters_to_schema(tool.name, str(getattr(tool, "description", "") or ""), describe())
            )
        return schemas

    def close(self) -> None:
        for name in sorted(self._tools.keys()):
            closer = getattr(self._tools[name], "close", None)
            if closer is None:
                continue
            try:
                closer()
            except Exception:
                logger.exception("Failed to close tool '%s'", name)
