import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional

from agent_toolbelt.domain.errors import ToolConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_DIR = Path.home() / ".config" / "agent-toolbelt"

WORKSPACE_KEY = "TOOLBELT_WORKSPACE"
PROCESS_TOOLS_KEY = "TOOLBELT_PROCESS_TOOLS"
BASH_ENABLED_KEY = "TOOLBELT_ENABLE_BASH"
MCP_COMMAND_KEY = "TOOLBELT_MCP_COMMAND"
MCP_ARGS_KEY = "TOOLBELT_MCP_ARGS"
MCP_WORKSPACE_KEY = "TOOLBELT_MCP_WORKSPACE"
MCP_TOOLS_KEY = "TOOLBELT_MCP_TOOLS"
MCP_TIMEOUT_KEY = "TOOLBELT_MCP_TIMEOUT_SEC"

TOOL_TYPE_BASH = "Bash"
TOOL_TYPE_PROCESS = "Process"
TOOL_TYPE_MCP = "MCP"


@dataclass(frozen=True)
class ToolConfig:
    """One configured tool instance: its type, its name and a flat string map."""

    tool_type: str
    name: str
    description: str = ""
    configuration: Dict[str, str] = field(default_factory=dict)


def load_env_file(path: Path) -> Dict[str, str]:
    data: Dict[str, str] = {}
    if not path.exists():
        return data
    try:
        for line in path.read_text(encoding="utf-8").splitlines():
            line = line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            k, v = line.split("=", 1)
            data[k.strip()] = v.strip()
    except OSError as exc:
        logger.warning("Failed to read %s: %s", path, exc)
    return data


def get_env_value(key: str, env_file: Mapping[str, str]) -> Optional[str]:
    return os.environ.get(key) or env_file.get(key)


def resolve_workspace(configuration: Mapping[str, str], key: str = "workspace") -> Path:
    """Workspace directory for a tool; the current directory when unset."""
    raw = str(configuration.get(key) or "").strip()
    if not raw:
        return Path.cwd()
    root = Path(raw).expanduser().resolve()
    if not root.exists():
        raise ToolConfigurationError(f"workspace does not exist: {root}")
    if not root.is_dir():
        raise ToolConfigurationError(f"workspace is not a directory: {root}")
    return root


def require_command(configuration: Mapping[str, str], tool_name: str) -> str:
    command = str(configuration.get("command") or "").strip()
    if not command:
        raise ToolConfigurationError(f"'command' is required in the configuration of tool '{tool_name}'")
    return command


def parse_timeout_sec(raw: Optional[str], default: float) -> float:
    value = str(raw or "").strip()
    if not value:
        return float(default)
    try:
        parsed = float(value)
    except ValueError:
        return float(default)
    return parsed if parsed > 0 else float(default)


def parse_process_tools(raw: Optional[str]) -> List[tuple[str, str, str]]:
    """Parse ``Name=command extra args,Other=cmd`` into (name, command, extraArgs)."""
    entries: List[tuple[str, str, str]] = []
    for part in str(raw or "").split(","):
        part = part.strip()
        if not part or "=" not in part:
            continue
        name, command_line = part.split("=", 1)
        name = name.strip()
        command, _, extra = command_line.strip().partition(" ")
        if not name or not command:
            continue
        entries.append((name, command, extra.strip()))
    return entries


def load_tool_configs(config_dir: Path = DEFAULT_CONFIG_DIR) -> List[ToolConfig]:
    """Build tool configurations from the environment and ``<config_dir>/.env``."""
    env_file = load_env_file(config_dir / ".env")
    workspace = get_env_value(WORKSPACE_KEY, env_file) or ""
    configs: List[ToolConfig] = []

    bash_flag = (get_env_value(BASH_ENABLED_KEY, env_file) or "true").strip().lower()
    if bash_flag in {"1", "true", "yes", "on"}:
        configs.append(
            ToolConfig(
                tool_type=TOOL_TYPE_BASH,
                name="Bash",
                description=(
                    "This tool executes a bash command with support for background processes, "
                    "timeouts, and full output.\n\nThe command is executed in the workspace directory."
                ),
                configuration={"workspace": workspace},
            )
        )

    for name, command, extra in parse_process_tools(get_env_value(PROCESS_TOOLS_KEY, env_file)):
        configs.append(
            ToolConfig(
                tool_type=TOOL_TYPE_PROCESS,
                name=name,
                description=(
                    "This tool executes a configured CLI command with support for background processes, "
                    "timeouts, and full output.\n\nThe command is executed in the workspace directory. "
                    "The extraArgs are prepended with the arguments passed to the tool."
                ),
                configuration={"workspace": workspace, "command": command, "extraArgs": extra},
            )
        )

    mcp_command = (get_env_value(MCP_COMMAND_KEY, env_file) or "").strip()
    if mcp_command:
        mcp_config = {
            "command": mcp_command,
            "args": get_env_value(MCP_ARGS_KEY, env_file) or "",
            "workspace": get_env_value(MCP_WORKSPACE_KEY, env_file) or workspace,
            "timeout": get_env_value(MCP_TIMEOUT_KEY, env_file) or "",
        }
        for name in (get_env_value(MCP_TOOLS_KEY, env_file) or "").split(","):
            name = name.strip()
            if name:
                configs.append(ToolConfig(tool_type=TOOL_TYPE_MCP, name=name, configuration=dict(mcp_config)))
    return configs
