import logging
from typing import Iterable, Optional

from agent_toolbelt.config import TOOL_TYPE_BASH, TOOL_TYPE_MCP, TOOL_TYPE_PROCESS, ToolConfig
from agent_toolbelt.domain.errors import ToolError
from agent_toolbelt.execution.foreground import ForegroundRunner
from agent_toolbelt.execution.process_registry import ProcessRegistry
from agent_toolbelt.tools.base import ToolContext, ToolRegistry, ToolRequest, ToolResult
from agent_toolbelt.tools.bash import BashTool
from agent_toolbelt.tools.mcp import McpTool
from agent_toolbelt.tools.process import ProcessTool

logger = logging.getLogger(__name__)


def build_tool(
    config: ToolConfig,
    process_registry: Optional[ProcessRegistry] = None,
    runner: Optional[ForegroundRunner] = None,
):
    """Instantiate the adapter for one tool configuration."""
    if config.tool_type == TOOL_TYPE_BASH:
        return BashTool(
            name=config.name,
            description=config.description,
            configuration=config.configuration,
            registry=process_registry,
            runner=runner,
        )
    if config.tool_type == TOOL_TYPE_PROCESS:
        return ProcessTool(
            name=config.name,
            description=config.description,
            configuration=config.configuration,
            registry=process_registry,
            runner=runner,
        )
    if config.tool_type == TOOL_TYPE_MCP:
        return McpTool(name=config.name, description=config.description, configuration=config.configuration)
    raise ValueError(f"unknown tool type: {config.tool_type}")


def build_default_tool_registry(
    configs: Iterable[ToolConfig],
    process_registry: Optional[ProcessRegistry] = None,
    runner: Optional[ForegroundRunner] = None,
) -> ToolRegistry:
    """Build a registry from tool configurations.

    Process-family tools share one ``ProcessRegistry`` so a pid started by
    one of them can be inspected through any other. Tools whose
    configuration is invalid are skipped and logged.
    """
    registry = ToolRegistry()
    shared_processes = process_registry or ProcessRegistry()
    shared_runner = runner or ForegroundRunner()
    for config in configs:
        try:
            tool = build_tool(config, process_registry=shared_processes, runner=shared_runner)
            validate = getattr(tool, "validate_configuration", None)
            if validate is not None:
                validate()
        except (ToolError, ValueError) as exc:
            logger.error("Skipping tool %s (%s): %s", config.name, config.tool_type, exc)
            continue
        registry.register(tool)
    return registry


__all__ = [
    "BashTool",
    "McpTool",
    "ProcessTool",
    "ToolContext",
    "ToolRegistry",
    "ToolRequest",
    "ToolResult",
    "build_default_tool_registry",
    "build_tool",
]
