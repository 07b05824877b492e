"""Line-delimited JSON-RPC over the standard streams of a child process.

One child per transport. Requests go to stdin as a single JSON line; the next
line read from stdout is taken as the answer. stderr is drained on its own
thread for the life of the session and only ever logged.

Callers must not overlap ``invoke`` calls on the same transport; the call lock
serializes them, and every envelope carries the same ``id``.
"""
from __future__ import annotations

import json
import logging
import os
import queue
import signal
import subprocess
import threading
import time
from pathlib import Path
from typing import IO, Any, List, Mapping, Optional, Sequence

from agent_toolbelt.domain.errors import (
    RpcMethodError,
    RpcProtocolError,
    TransportClosedError,
    TransportError,
    TransportStartError,
    TransportTimeoutError,
)
from agent_toolbelt.observability.structured_log import log_json
from agent_toolbelt.util import redact, redact_argv

logger = logging.getLogger(__name__)

JSONRPC_VERSION = "2.0"
REQUEST_ID = 1
DEFAULT_CALL_TIMEOUT_SEC = 5.0
_SHUTDOWN_WAIT_SEC = 2.0
_THREAD_JOIN_SEC = 1.0

_EOF = object()
_CLOSED = object()


def encode_request(method: str, params: Any) -> bytes:
    envelope = {
        "jsonrpc": JSONRPC_VERSION,
        "method": method,
        "params": params,
        "id": REQUEST_ID,
    }
    return (json.dumps(envelope, ensure_ascii=False) + "\n").encode("utf-8")


def decode_response(line: bytes | str) -> Any:
    """Return the ``result`` of one response line or raise the matching error."""
    text = line.decode("utf-8", errors="replace") if isinstance(line, bytes) else line
    try:
        response = json.loads(text)
    except ValueError as exc:
        raise RpcProtocolError(f"error decoding response: {exc}") from exc
    if not isinstance(response, dict):
        raise RpcProtocolError("response is not a JSON object")
    if response.get("error") is not None:
        raise RpcMethodError(response["error"])
    if "result" not in response:
        raise RpcProtocolError("no 'result' in response")
    return response["result"]


class McpStdioTransport:
    def __init__(
        self,
        command: str,
        working_dir: Optional[Path] = None,
        args: Sequence[str] = (),
        env: Optional[Mapping[str, str]] = None,
        call_timeout_sec: float = DEFAULT_CALL_TIMEOUT_SEC,
    ) -> None:
        self._command = str(command or "").strip()
        self._working_dir = Path(working_dir) if working_dir else None
        self._args: List[str] = [str(a) for a in args]
        self._env = dict(env) if env is not None else None
        self._call_timeout_sec = float(call_timeout_sec)
        self._process: Optional[subprocess.Popen] = None
        self._lines: "queue.Queue[Any]" = queue.Queue()
        self._threads: List[threading.Thread] = []
        self._call_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._closed = False
        self._eof = False

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process is not None else None

    @property
    def is_running(self) -> bool:
        with self._state_lock:
            return self._process is not None and not self._closed and self._process.poll() is None

    @property
    def argv(self) -> List[str]:
        return [self._command] + list(self._args)

    def start(self) -> None:
        with self._state_lock:
            if self._closed:
                raise TransportClosedError("transport is closed")
            if self._process is not None:
                return
            if not self._command:
                raise TransportStartError("MCP command is required")
            try:
                proc = subprocess.Popen(
                    self.argv,
                    cwd=(str(self._working_dir) if self._working_dir else None),
                    stdin=subprocess.PIPE,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    shell=False,
                    close_fds=True,
                    start_new_session=True,
                    env=(dict(os.environ, **self._env) if self._env is not None else None),
                )
            except OSError as exc:
                log_json(
                    logger,
                    "mcp.transport.start_failed",
                    level=logging.ERROR,
                    argv=redact_argv(self.argv),
                    error=str(exc),
                )
                raise TransportStartError(f"error starting command {self._command!r}: {exc}") from exc
            self._process = proc
            self._threads = [
                self._start_thread(self._pump_stdout, proc.stdout, f"mcp-stdout-{proc.pid}"),
                self._start_thread(self._drain_stderr, proc.stderr, f"mcp-stderr-{proc.pid}"),
            ]
        log_json(logger, "mcp.transport.started", pid=proc.pid, argv=redact_argv(self.argv))

    def invoke(self, method: str, params: Any = None, timeout_sec: Optional[float] = None) -> Any:
        timeout = self._call_timeout_sec if timeout_sec is None else float(timeout_sec)
        with self._call_lock:
            proc = self._require_process()
            self._discard_stale_lines()
            payload = encode_request(method, params)
            if proc.stdin is None:
                raise TransportClosedError("stdin is not attached")
            try:
                proc.stdin.write(payload)
                proc.stdin.flush()
            except (BrokenPipeError, ValueError, OSError) as exc:
                raise TransportClosedError(f"error writing to stdin: {exc}") from exc

            line = self._next_line(timeout)
            logger.debug("mcp response for %s: %s", method, redact(line.decode("utf-8", errors="replace")))
            try:
                return decode_response(line)
            except TransportError as exc:
                log_json(logger, "mcp.transport.call_failed", level=logging.WARNING, method=method, error=str(exc))
                raise

    def close(self) -> None:
        with self._state_lock:
            if self._closed:
                return
            self._closed = True
            proc = self._process
        self._stop_event.set()
        self._lines.put(_CLOSED)
        if proc is None:
            return

        if proc.poll() is None:
            try:
                os.killpg(proc.pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
            except PermissionError:
                proc.kill()
        try:
            proc.wait(timeout=_SHUTDOWN_WAIT_SEC)
        except subprocess.TimeoutExpired:
            logger.warning("MCP server pid %s did not exit after SIGKILL", proc.pid)

        current = threading.current_thread()
        for thread in self._threads:
            if thread is not current:
                thread.join(timeout=_THREAD_JOIN_SEC)
        readers_done = all(not t.is_alive() for t in self._threads)
        for stream in (proc.stdin, proc.stdout, proc.stderr):
            if stream is None or stream.closed:
                continue
            if stream is not proc.stdin and not readers_done:
                continue
            try:
                stream.close()
            except OSError:
                pass
        log_json(logger, "mcp.transport.closed", pid=proc.pid, returncode=proc.returncode)

    def __enter__(self) -> "McpStdioTransport":
        self.start()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def _require_process(self) -> subprocess.Popen:
        with self._state_lock:
            if self._closed:
                raise TransportClosedError("transport is closed")
            if self._process is None:
                raise TransportClosedError("transport is not started")
            if self._eof:
                raise TransportClosedError("error reading from stdout: end of stream")
            return self._process

    def _discard_stale_lines(self) -> None:
        while True:
            try:
                item = self._lines.get_nowait()
            except queue.Empty:
                return
            if item is _EOF or item is _CLOSED:
                self._eof = True
                raise TransportClosedError("error reading from stdout: end of stream")
            log_json(
                logger,
                "mcp.transport.stale_response_dropped",
                level=logging.WARNING,
                line=redact(item.decode("utf-8", errors="replace"))[:200],
            )

    def _next_line(self, timeout: float) -> bytes:
        deadline = time.monotonic() + timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise TransportTimeoutError(f"timeout reading response after {timeout:g}s")
            try:
                item = self._lines.get(timeout=remaining)
            except queue.Empty:
                raise TransportTimeoutError(f"timeout reading response after {timeout:g}s") from None
            if item is _CLOSED:
                raise TransportClosedError("transport is closed")
            if item is _EOF:
                self._eof = True
                raise TransportClosedError("error reading from stdout: end of stream")
            if item.strip():
                return item

    def _start_thread(self, target, stream: Optional[IO[bytes]], name: str) -> threading.Thread:
        thread = threading.Thread(target=target, args=(stream,), daemon=True, name=name)
        thread.start()
        return thread

    def _pump_stdout(self, stream: Optional[IO[bytes]]) -> None:
        if stream is None:
            self._lines.put(_EOF)
            return
        try:
            for line in iter(stream.readline, b""):
                self._lines.put(line)
        except (OSError, ValueError) as exc:
            if not self._stop_event.is_set():
                logger.warning("error reading MCP server stdout: %s", exc)
        self._lines.put(_EOF)

    def _drain_stderr(self, stream: Optional[IO[bytes]]) -> None:
        if stream is None:
            return
        try:
            for raw in iter(stream.readline, b""):
                if self._stop_event.is_set():
                    break
                text = raw.decode("utf-8", errors="replace").rstrip("\n")
                if text:
                    logger.info("MCP server stderr: %s", redact(text))
        except (OSError, ValueError) as exc:
            if not self._stop_event.is_set():
                logger.warning("error reading MCP server stderr: %s", exc)
