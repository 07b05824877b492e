import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

STATUS_RUNNING = "running"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
STATUS_TIMEOUT = "timeout"
STATUS_EXITED = "exited"
STATUS_TERMINATED = "terminated"
STATUS_NOT_FOUND = "not found"
STATUS_WRITTEN = "written"
STATUS_READ = "read"


@dataclass(frozen=True)
class CommandSpec:
    """Immutable description of one process invocation."""

    executable: str
    args: Tuple[str, ...] = ()
    cwd: Optional[Path] = None
    env: Tuple[Tuple[str, str], ...] = ()

    @property
    def argv(self) -> Tuple[str, ...]:
        return (self.executable,) + tuple(self.args)

    @property
    def command_line(self) -> str:
        return " ".join(self.argv)

    def merged_env(self, base: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
        merged = dict(os.environ if base is None else base)
        for key, value in self.env:
            merged[key] = value
        return merged


@dataclass(frozen=True)
class RunResult:
    stdout: str
    stderr: str
    status: str
    pid: Optional[int] = None
    exit_code: Optional[int] = None
    command: str = ""

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "stdout": self.stdout,
            "stderr": self.stderr,
            "status": self.status,
        }
        if self.pid is not None:
            payload["pid"] = self.pid
        if self.exit_code is not None:
            payload["exit_code"] = self.exit_code
        if self.command:
            payload["command"] = self.command
        return payload
