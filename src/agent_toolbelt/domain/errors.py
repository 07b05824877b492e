from typing import Any, Optional


class ToolError(Exception):
    """Base class for every error a tool call can surface to its caller."""


class ToolArgumentError(ToolError):
    pass


class ToolConfigurationError(ToolError):
    pass


class ProcessSignalError(ToolError):
    def __init__(self, pid: int, message: str) -> None:
        super().__init__(f"failed to signal process {pid}: {message}")
        self.pid = pid


class ProcessIOError(ToolError):
    pass


class TransportError(ToolError):
    pass


class TransportStartError(TransportError):
    pass


class TransportTimeoutError(TransportError):
    pass


class TransportClosedError(TransportError):
    pass


class RpcProtocolError(TransportError):
    pass


class RpcMethodError(TransportError):
    """The server answered with a JSON-RPC ``error`` object."""

    def __init__(self, error: Any) -> None:
        self.code: Optional[int] = None
        self.data: Any = None
        if isinstance(error, dict):
            raw_code = error.get("code")
            self.code = raw_code if isinstance(raw_code, int) else None
            self.message = str(error.get("message") or "unknown error")
            self.data = error.get("data")
        else:
            self.message = str(error)
        detail = f"{self.message} (code {self.code})" if self.code is not None else self.message
        super().__init__(f"MCP server error: {detail}")
