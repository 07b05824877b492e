from __future__ import annotations

import logging
import os
import subprocess
import threading
from typing import Optional

from agent_toolbelt.domain.contracts import (
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_TIMEOUT,
    CommandSpec,
    RunResult,
)
from agent_toolbelt.observability.structured_log import log_json
from agent_toolbelt.util import redact_command

from .spawn import SpawnedProcess, spawn_process

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SEC = 30
KILL_GRACE_SEC = 2
READER_JOIN_SEC = 5.0

# Passing this as ``timeout_sec`` disables the deadline entirely.
NO_TIMEOUT = None


def resolve_timeout(timeout_sec: Optional[int], default: int = DEFAULT_TIMEOUT_SEC) -> Optional[int]:
    if timeout_sec is NO_TIMEOUT:
        return None
    value = int(timeout_sec)
    if value <= 0:
        return default
    return value


class ForegroundRunner:
    """Runs one command to completion or deadline and reports what it printed."""

    def __init__(
        self,
        default_timeout_sec: Optional[int] = None,
        kill_grace_sec: Optional[int] = None,
    ) -> None:
        self._default_timeout_sec = default_timeout_sec or _env_int(
            "TOOLBELT_DEFAULT_TIMEOUT_SEC", DEFAULT_TIMEOUT_SEC
        )
        self._kill_grace_sec = kill_grace_sec or _env_int("TOOLBELT_KILL_GRACE_SEC", KILL_GRACE_SEC)

    @property
    def default_timeout_sec(self) -> int:
        return self._default_timeout_sec

    def run(
        self,
        spec: CommandSpec,
        timeout_sec: Optional[int] = DEFAULT_TIMEOUT_SEC,
        stdin_text: str = "",
    ) -> RunResult:
        deadline = resolve_timeout(timeout_sec, default=self._default_timeout_sec)
        try:
            spawned = spawn_process(spec, stdin_pipe=bool(stdin_text))
        except FileNotFoundError:
            return self._spawn_failure(spec, f"command not found: {spec.executable}")
        except OSError as exc:
            return self._spawn_failure(spec, f"failed to start command: {exc}")

        if stdin_text:
            _feed_stdin(spawned, stdin_text)

        timed_out = False
        try:
            spawned.wait(timeout=deadline)
        except subprocess.TimeoutExpired:
            timed_out = True
            spawned.kill()
            try:
                spawned.wait(timeout=self._kill_grace_sec)
            except subprocess.TimeoutExpired:
                logger.warning("pid %s did not exit after SIGKILL", spawned.pid)

        spawned.join_readers(timeout=READER_JOIN_SEC)
        stdout, stderr = spawned.capture.snapshot()
        exit_code = spawned.poll()
        spawned.close()

        if timed_out:
            status = STATUS_TIMEOUT
            log_json(
                logger,
                "process.foreground.timeout",
                level=logging.WARNING,
                pid=spawned.pid,
                command=redact_command(spec.argv),
                timeout_sec=deadline,
            )
        else:
            status = STATUS_COMPLETED if exit_code == 0 else STATUS_FAILED
            log_json(
                logger,
                "process.foreground.finish",
                pid=spawned.pid,
                command=redact_command(spec.argv),
                exit_code=exit_code,
                status=status,
            )
        return RunResult(
            stdout=stdout,
            stderr=stderr,
            status=status,
            exit_code=exit_code,
            command=spec.command_line,
        )

    def _spawn_failure(self, spec: CommandSpec, message: str) -> RunResult:
        log_json(
            logger,
            "process.foreground.spawn_failed",
            level=logging.WARNING,
            command=redact_command(spec.argv),
            error=message,
        )
        return RunResult(stdout="", stderr=message, status=STATUS_FAILED, command=spec.command_line)


def _feed_stdin(spawned: SpawnedProcess, text: str) -> None:
    def _write() -> None:
        try:
            spawned.write_stdin(text)
        except (BrokenPipeError, OSError) as exc:
            logger.debug("stdin write to pid %s failed: %s", spawned.pid, exc)
        finally:
            spawned.close_stdin()

    threading.Thread(target=_write, daemon=True, name=f"stdin-writer-{spawned.pid}").start()


def _env_int(name: str, default: int) -> int:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return int(default)
    try:
        value = int(raw)
    except ValueError:
        return int(default)
    return max(1, value)
