from __future__ import annotations

import logging
import subprocess
import threading
from dataclasses import dataclass
from typing import Dict, List, Optional

from agent_toolbelt.domain.contracts import (
    STATUS_EXITED,
    STATUS_FAILED,
    STATUS_NOT_FOUND,
    STATUS_READ,
    STATUS_RUNNING,
    STATUS_TERMINATED,
    STATUS_WRITTEN,
    CommandSpec,
    RunResult,
)
from agent_toolbelt.domain.errors import ProcessIOError, ProcessSignalError
from agent_toolbelt.observability.structured_log import log_json
from agent_toolbelt.util import redact_command

from .spawn import SpawnedProcess, spawn_process

logger = logging.getLogger(__name__)

TERMINATE_GRACE_SEC = 2
STDIN_WRITE_TIMEOUT_SEC = 5.0


@dataclass
class ProcessHandle:
    """One background process owned by a ProcessRegistry entry."""

    pid: int
    command: str
    spawned: SpawnedProcess
    exit_code: Optional[int] = None
    _exited: bool = False

    def refresh(self) -> bool:
        """Poll the OS once; the exit flag flips at most once."""
        if self._exited:
            return True
        code = self.spawned.poll()
        if code is None:
            return False
        self.exit_code = code
        self._exited = True
        return True


class ProcessRegistry:
    """Lock-guarded map of background processes keyed by OS pid.

    Exit is only observed when somebody asks for ``status``; nothing polls in
    the background, so a pid stays registered until it is queried or killed.
    """

    def __init__(
        self,
        terminate_grace_sec: int = TERMINATE_GRACE_SEC,
        stdin_write_timeout_sec: float = STDIN_WRITE_TIMEOUT_SEC,
    ) -> None:
        self._lock = threading.RLock()
        self._handles: Dict[int, ProcessHandle] = {}
        self._terminate_grace_sec = max(0, int(terminate_grace_sec))
        self._stdin_write_timeout_sec = max(0.0, float(stdin_write_timeout_sec))

    def spawn(self, spec: CommandSpec, stdin_text: str = "") -> RunResult:
        try:
            spawned = spawn_process(spec, stdin_pipe=True)
        except FileNotFoundError:
            return self._spawn_failure(spec, f"command not found: {spec.executable}")
        except OSError as exc:
            return self._spawn_failure(spec, f"failed to start command: {exc}")

        handle = ProcessHandle(pid=spawned.pid, command=spec.command_line, spawned=spawned)
        with self._lock:
            stale = self._handles.get(handle.pid)
            self._handles[handle.pid] = handle
        if stale is not None:
            logger.warning("pid %s reused while still registered; dropping stale handle", handle.pid)
            stale.spawned.close()

        if stdin_text:
            # stdin stays open afterwards for later writes.
            threading.Thread(
                target=_feed_initial_input,
                args=(handle, stdin_text),
                daemon=True,
                name=f"stdin-writer-{handle.pid}",
            ).start()

        log_json(logger, "process.background.start", pid=handle.pid, command=redact_command(spec.argv))
        return RunResult(
            stdout="Command started in background",
            stderr="",
            status=STATUS_RUNNING,
            pid=handle.pid,
            command=handle.command,
        )

    def status(self, pid: int) -> RunResult:
        with self._lock:
            handle = self._handles.get(pid)
            if handle is None:
                return RunResult(stdout="", stderr="", status=STATUS_NOT_FOUND)
            if not handle.refresh():
                return RunResult(stdout="", stderr="", status=STATUS_RUNNING, pid=pid, command=handle.command)
            self._handles.pop(pid, None)

        handle.spawned.join_readers(timeout=1.0)
        stdout, stderr = handle.spawned.capture.snapshot()
        handle.spawned.close()
        log_json(logger, "process.background.exited", pid=pid, exit_code=handle.exit_code)
        return RunResult(
            stdout=stdout,
            stderr=stderr,
            status=STATUS_EXITED,
            pid=pid,
            exit_code=handle.exit_code,
            command=handle.command,
        )

    def kill(self, pid: int) -> RunResult:
        with self._lock:
            handle = self._handles.get(pid)
            if handle is None:
                return RunResult(stdout="", stderr="", status=STATUS_NOT_FOUND)
            try:
                handle.spawned.terminate()
            except OSError as exc:
                log_json(logger, "process.background.kill_failed", level=logging.ERROR, pid=pid, error=str(exc))
                raise ProcessSignalError(pid, str(exc)) from exc
            self._handles.pop(pid, None)

        handle.spawned.close_stdin()
        self._reap_later(handle)
        log_json(logger, "process.background.terminated", pid=pid)
        return RunResult(stdout="", stderr="", status=STATUS_TERMINATED, pid=pid, command=handle.command)

    def write(self, pid: int, text: str) -> RunResult:
        """Send ``text`` to a running process's stdin.

        Gives up with ``ProcessIOError`` once ``stdin_write_timeout_sec`` passes
        without the child draining its pipe; whatever was already written stays
        written.
        """
        with self._lock:
            handle = self._handles.get(pid)
        if handle is None:
            return RunResult(stdout="", stderr="", status=STATUS_NOT_FOUND)
        try:
            handle.spawned.write_stdin(text, timeout=self._stdin_write_timeout_sec)
        except OSError as exc:
            raise ProcessIOError(f"stdin write to pid {pid} failed: {exc}") from exc
        return RunResult(stdout="", stderr="", status=STATUS_WRITTEN, pid=pid, command=handle.command)

    def read(self, pid: int) -> RunResult:
        with self._lock:
            handle = self._handles.get(pid)
        if handle is None:
            return RunResult(stdout="", stderr="", status=STATUS_NOT_FOUND)
        stdout, stderr = handle.spawned.capture.drain()
        return RunResult(stdout=stdout, stderr=stderr, status=STATUS_READ, pid=pid, command=handle.command)

    def pids(self) -> List[int]:
        with self._lock:
            return sorted(self._handles.keys())

    def __contains__(self, pid: object) -> bool:
        with self._lock:
            return pid in self._handles

    def close_all(self) -> int:
        with self._lock:
            handles = list(self._handles.values())
            self._handles.clear()
        for handle in handles:
            self._stop(handle)
        if handles:
            log_json(logger, "process.background.close_all", count=len(handles))
        return len(handles)

    def _reap_later(self, handle: ProcessHandle) -> None:
        threading.Thread(
            target=self._stop,
            args=(handle,),
            daemon=True,
            name=f"reaper-{handle.pid}",
        ).start()

    def _stop(self, handle: ProcessHandle) -> None:
        spawned = handle.spawned
        if spawned.poll() is None:
            try:
                spawned.terminate()
                spawned.wait(timeout=self._terminate_grace_sec)
            except subprocess.TimeoutExpired:
                spawned.kill()
                try:
                    spawned.wait(timeout=self._terminate_grace_sec)
                except subprocess.TimeoutExpired:
                    logger.warning("pid %s survived SIGKILL", handle.pid)
            except OSError as exc:
                logger.warning("failed to stop pid %s: %s", handle.pid, exc)
        spawned.close()

    def _spawn_failure(self, spec: CommandSpec, message: str) -> RunResult:
        log_json(
            logger,
            "process.background.spawn_failed",
            level=logging.WARNING,
            command=redact_command(spec.argv),
            error=message,
        )
        return RunResult(stdout="", stderr=message, status=STATUS_FAILED, command=spec.command_line)


def _feed_initial_input(handle: ProcessHandle, text: str) -> None:
    try:
        handle.spawned.write_stdin(text)
    except OSError as exc:
        log_json(
            logger,
            "process.background.stdin_failed",
            level=logging.WARNING,
            pid=handle.pid,
            error=str(exc),
        )
