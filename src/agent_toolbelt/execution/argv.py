import shlex
from pathlib import Path
from typing import Any, Iterable, List, Optional, Sequence, Tuple

from agent_toolbelt.domain.contracts import CommandSpec
from agent_toolbelt.domain.errors import ToolArgumentError

DEFAULT_SHELL = "bash"


def split_command_arguments(raw: str) -> List[str]:
    """Split a command line on unquoted whitespace.

    Single and double quotes group words, backslashes escape the next
    character, and quoted empty strings survive as empty arguments.
    """
    try:
        return shlex.split(str(raw or ""), comments=False, posix=True)
    except ValueError as exc:
        raise ToolArgumentError(f"failed to parse command arguments: {exc}") from exc


def parse_env_overlay(entries: Optional[Iterable[Any]]) -> Tuple[Tuple[str, str], ...]:
    overlay: List[Tuple[str, str]] = []
    for entry in entries or ():
        text = str(entry)
        key, sep, value = text.partition("=")
        key = key.strip()
        if not sep or not key:
            raise ToolArgumentError(f"invalid env entry '{text}': expected KEY=VALUE")
        overlay.append((key, value))
    return tuple(overlay)


def build_command_spec(
    executable: str,
    args: Sequence[str] = (),
    cwd: Optional[Path] = None,
    env: Optional[Iterable[Any]] = None,
) -> CommandSpec:
    executable = str(executable or "").strip()
    if not executable:
        raise ToolArgumentError("no command specified")
    return CommandSpec(
        executable=executable,
        args=tuple(str(a) for a in args),
        cwd=cwd,
        env=parse_env_overlay(env),
    )


def build_shell_spec(
    command_line: str,
    cwd: Optional[Path] = None,
    env: Optional[Iterable[Any]] = None,
    shell: str = DEFAULT_SHELL,
) -> CommandSpec:
    if not str(command_line or "").strip():
        raise ToolArgumentError("command is required")
    return build_command_spec(shell, ["-c", command_line], cwd=cwd, env=env)
