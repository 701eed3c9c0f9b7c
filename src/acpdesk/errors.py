"""Error types shared by the multiplexer, the session orchestrator and handlers."""

from __future__ import annotations

from typing import Any

PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603
# Agents report "auth required" with this code, some only in the message text.
AUTH_REQUIRED_CODE = -32000
AUTH_REQUIRED_TEXT = "authentication required"


class RpcError(Exception):
    """A JSON-RPC style error with a numeric code and readable message."""

    code: int = INTERNAL_ERROR

    def __init__(self, message: str, *, code: int | None = None, data: Any = None) -> None:
        super().__init__(message)
        self.message = message or "Unknown error"
        if code is not None:
            self.code = code
        self.data = data

    def to_error_obj(self) -> dict[str, Any]:
        obj: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.data is not None:
            obj["data"] = self.data
        return obj

    @classmethod
    def from_wire(cls, error: Any) -> "RpcError":
        """Build the most specific error for a wire ``{code, message}`` object."""
        if not isinstance(error, dict):
            return RpcError(str(error) or "Unknown error")
        code = error.get("code")
        message = str(error.get("message") or "Unknown error")
        data = error.get("data")
        if not isinstance(code, int):
            code = INTERNAL_ERROR
        error_cls = _WIRE_ERRORS.get(code, RpcError)
        return error_cls(message, code=code, data=data)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r}, message={self.message!r})"


class InvalidRequestError(RpcError):
    code = INVALID_REQUEST


class MethodNotFoundError(RpcError):
    code = METHOD_NOT_FOUND

    @classmethod
    def for_method(cls, method: str) -> "MethodNotFoundError":
        return cls(f"Method not found: {method}", data={"method": method})


class InvalidParamsError(RpcError):
    code = INVALID_PARAMS


class InternalRpcError(RpcError):
    code = INTERNAL_ERROR


class AuthRequiredError(RpcError):
    code = AUTH_REQUIRED_CODE


class RequestTimeoutError(RpcError):
    """No response arrived for an outbound request in time."""

    code = INTERNAL_ERROR

    def __init__(self, method: str, timeout_s: float) -> None:
        super().__init__(f"Request timeout: {method} (no response after {timeout_s:g}s)")
        self.method = method
        self.timeout_s = timeout_s


class DisconnectedError(RpcError):
    """The channel went away while a request was pending."""

    def __init__(self, message: str = "Agent disconnected") -> None:
        super().__init__(message)


class TransportError(DisconnectedError):
    """Writing to or reading from the channel failed."""


class ConnectionCancelled(RpcError):
    """The user cancelled a connection attempt; not a failure."""

    def __init__(self, message: str = "Connection cancelled") -> None:
        super().__init__(message)


class SessionStateError(RpcError):
    """An operation was invoked in a state that does not allow it."""

    def __init__(self, message: str = "No active session") -> None:
        super().__init__(message)


class InteractionBusyError(InvalidRequestError):
    """A second human interaction of the same kind arrived while one is pending."""


class FrameError(ValueError):
    """A raw inbound line could not be classified as a frame."""


_WIRE_ERRORS: dict[int, type[RpcError]] = {
    INVALID_REQUEST: InvalidRequestError,
    METHOD_NOT_FOUND: MethodNotFoundError,
    INVALID_PARAMS: InvalidParamsError,
    INTERNAL_ERROR: InternalRpcError,
    AUTH_REQUIRED_CODE: AuthRequiredError,
}


def is_auth_required(error: BaseException) -> bool:
    """Return True if ``error`` signals that the agent wants authentication."""
    if isinstance(error, (RequestTimeoutError, DisconnectedError, ConnectionCancelled)):
        return False
    if isinstance(error, RpcError) and error.code == AUTH_REQUIRED_CODE:
        return True
    message = error.message if isinstance(error, RpcError) else str(error)
    return AUTH_REQUIRED_TEXT in message.lower()
