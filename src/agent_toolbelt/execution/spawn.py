from __future__ import annotations

import errno
import logging
import os
import select
import signal
import subprocess
import threading
import time
from dataclasses import dataclass, field
from typing import IO, Tuple

from agent_toolbelt.domain.contracts import CommandSpec

logger = logging.getLogger(__name__)

READ_CHUNK_BYTES = 4096
_SELECT_INTERVAL_SEC = 0.2


class OutputCapture:
    """Growable stdout/stderr sinks fed by the reader threads of one process."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._stdout = bytearray()
        self._stderr = bytearray()

    def append(self, stream: str, data: bytes) -> None:
        if not data:
            return
        with self._lock:
            if stream == "stderr":
                self._stderr.extend(data)
            else:
                self._stdout.extend(data)

    def snapshot(self) -> Tuple[str, str]:
        with self._lock:
            return _decode(self._stdout), _decode(self._stderr)

    def drain(self) -> Tuple[str, str]:
        with self._lock:
            out, err = _decode(self._stdout), _decode(self._stderr)
            self._stdout.clear()
            self._stderr.clear()
        return out, err


@dataclass
class SpawnedProcess:
    """Pipe-backed subprocess whose output streams into an OutputCapture."""

    process: subprocess.Popen
    capture: OutputCapture
    _threads: list[threading.Thread] = field(default_factory=list)
    _stop_event: threading.Event = field(default_factory=threading.Event)
    _stdin_lock: threading.Lock = field(default_factory=threading.Lock)
    _stdin_closing: threading.Event = field(default_factory=threading.Event)

    @property
    def pid(self) -> int:
        return self.process.pid

    def start_readers(self) -> None:
        for name, stream in (("stdout", self.process.stdout), ("stderr", self.process.stderr)):
            if stream is None:
                continue
            thread = threading.Thread(
                target=self._read_pipe_output,
                args=(name, stream),
                daemon=True,
                name=f"{name}-reader-{self.process.pid}",
            )
            self._threads.append(thread)
            thread.start()

    def poll(self) -> int | None:
        return self.process.poll()

    def wait(self, timeout: float | None = None) -> int:
        return self.process.wait(timeout=timeout)

    def write_stdin(self, text: str, timeout: float | None = None) -> None:
        """Write all of ``text`` to the child's stdin.

        Writes go out in ``PIPE_BUF`` chunks only once select reports the pipe
        writable, so a child that never reads cannot wedge the caller past
        ``timeout`` (``TimeoutError``). ``close_stdin`` aborts a pending write.
        """
        payload = memoryview((text or "").encode("utf-8", errors="replace"))
        deadline = None if timeout is None else time.monotonic() + timeout
        if not self._stdin_lock.acquire(timeout=-1 if timeout is None else max(0.0, timeout)):
            raise TimeoutError("stdin is busy with another write")
        try:
            stream = self.process.stdin
            if stream is None or stream.closed or self._stdin_closing.is_set():
                raise BrokenPipeError("stdin is not open")
            fd = stream.fileno()
            while payload:
                wait = _SELECT_INTERVAL_SEC
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        raise TimeoutError(f"stdin write timed out with {len(payload)} bytes unsent")
                    wait = min(wait, remaining)
                _, ready, _ = select.select([], [fd], [], wait)
                if self._stdin_closing.is_set():
                    raise BrokenPipeError("stdin was closed")
                if ready:
                    written = os.write(fd, payload[: select.PIPE_BUF])
                    payload = payload[written:]
        finally:
            self._stdin_lock.release()

    def close_stdin(self) -> None:
        self._stdin_closing.set()
        with self._stdin_lock:
            if self.process.stdin is not None and not self.process.stdin.closed:
                try:
                    self.process.stdin.close()
                except OSError:
                    pass

    def terminate(self) -> bool:
        return self.send_signal(signal.SIGTERM)

    def kill(self) -> bool:
        return self.send_signal(signal.SIGKILL)

    def send_signal(self, sig: int) -> bool:
        """Signal the process group. Returns False when the process is already gone."""
        if self.process.returncode is not None:
            # Reaped; the pid may already belong to someone else.
            return False
        try:
            os.killpg(self.process.pid, sig)
            return True
        except ProcessLookupError:
            return False
        except PermissionError:
            # Fall back to the direct child when the group is not ours to signal.
            try:
                self.process.send_signal(sig)
            except ProcessLookupError:
                return False
            return True

    def join_readers(self, timeout: float | None = None) -> None:
        current = threading.current_thread()
        for thread in self._threads:
            if thread is current:
                continue
            thread.join(timeout=timeout)

    def close(self) -> None:
        self._stop_event.set()
        self.close_stdin()
        self.join_readers(timeout=0.5)
        for stream in (self.process.stdout, self.process.stderr):
            if stream is None or stream.closed:
                continue
            try:
                stream.close()
            except OSError:
                pass

    def _read_pipe_output(self, name: str, stream: IO[bytes]) -> None:
        fd = stream.fileno()
        while not self._stop_event.is_set():
            try:
                ready, _, _ = select.select([fd], [], [], _SELECT_INTERVAL_SEC)
            except (OSError, ValueError):
                break
            if not ready:
                if self.process.poll() is not None:
                    # Exited with nothing left buffered.
                    break
                continue
            try:
                chunk = os.read(fd, READ_CHUNK_BYTES)
            except OSError as exc:
                if exc.errno in {errno.EAGAIN, errno.EWOULDBLOCK}:
                    continue
                break
            if not chunk:
                break
            self.capture.append(name, chunk)


def spawn_process(spec: CommandSpec, stdin_pipe: bool = False) -> SpawnedProcess:
    """Start ``spec`` in its own session with stdout/stderr captured.

    Raises ``OSError`` (``FileNotFoundError``, ``PermissionError``, ...) when the
    executable cannot be started.
    """
    proc = subprocess.Popen(
        list(spec.argv),
        cwd=(str(spec.cwd) if spec.cwd is not None else None),
        stdin=(subprocess.PIPE if stdin_pipe else subprocess.DEVNULL),
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        shell=False,
        close_fds=True,
        start_new_session=True,
        env=spec.merged_env(),
    )
    for stream in (proc.stdout, proc.stderr):
        if stream is not None:
            os.set_blocking(stream.fileno(), False)
    spawned = SpawnedProcess(process=proc, capture=OutputCapture())
    spawned.start_readers()
    logger.debug("spawned pid=%s argv0=%s", proc.pid, spec.executable)
    return spawned


def _decode(buffer: bytearray) -> str:
    return bytes(buffer).decode("utf-8", errors="replace")
