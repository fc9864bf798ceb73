"""Error taxonomy for the RPC layer.

Every failure that can reach a caller or a subscriber is an RpcError
carrying a stable code. Codes travel on the wire inside ErrorInfo so the
remote side can rebuild the same exception class.
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .protocol.frames import ErrorInfo


class ErrorCode(str, Enum):
    """Stable error codes shared by both endpoints."""

    DECODE_ERROR = "DECODE_ERROR"
    METHOD_NOT_FOUND = "METHOD_NOT_FOUND"
    INVALID_PAYLOAD = "INVALID_PAYLOAD"
    HANDLER_ERROR = "HANDLER_ERROR"
    TIMEOUT = "TIMEOUT"
    CANCELLED = "CANCELLED"
    TRANSPORT_CLOSED = "TRANSPORT_CLOSED"
    PROTOCOL_ERROR = "PROTOCOL_ERROR"
    ENDPOINT_FAILED = "ENDPOINT_FAILED"


class RpcError(Exception):
    """Base class for all call and subscription failures.

    Attributes:
        code: Error code (an ErrorCode value, or an application-defined string)
        message: Human-readable message
        details: Optional structured details
    """

    code: str = ErrorCode.HANDLER_ERROR.value

    def __init__(
        self,
        message: str,
        *,
        code: str | ErrorCode | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        if code is not None:
            self.code = code.value if isinstance(code, ErrorCode) else code
        self.message = message
        self.details = details

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r}, message={self.message!r})"

    def to_info(self) -> ErrorInfo:
        """Convert to the wire representation."""
        from .protocol.frames import ErrorInfo

        return ErrorInfo(code=self.code, message=self.message, details=self.details)

    @classmethod
    def from_info(cls, info: ErrorInfo) -> RpcError:
        """Rebuild the matching exception from a wire ErrorInfo."""
        error_cls = _ERRORS_BY_CODE.get(info.code)
        if error_cls is None:
            return RpcError(info.message, code=info.code, details=info.details)
        return error_cls(info.message, details=info.details)


class DecodeFailedError(RpcError):
    code = ErrorCode.DECODE_ERROR.value


class MethodNotFoundError(RpcError):
    code = ErrorCode.METHOD_NOT_FOUND.value


class InvalidPayloadError(RpcError):
    code = ErrorCode.INVALID_PAYLOAD.value


class HandlerError(RpcError):
    code = ErrorCode.HANDLER_ERROR.value


class CallTimeoutError(RpcError):
    code = ErrorCode.TIMEOUT.value


class CallCancelledError(RpcError):
    """Raised for user-initiated cancellation and endpoint disposal."""

    code = ErrorCode.CANCELLED.value


class TransportClosedError(RpcError):
    code = ErrorCode.TRANSPORT_CLOSED.value


class ProtocolError(RpcError):
    code = ErrorCode.PROTOCOL_ERROR.value


class EndpointFailedError(RpcError):
    code = ErrorCode.ENDPOINT_FAILED.value


class CallIdExhaustedError(EndpointFailedError):
    """The registry ran out of call ids. Unrecoverable for the endpoint."""


_ERRORS_BY_CODE: dict[str, type[RpcError]] = {
    ErrorCode.DECODE_ERROR.value: DecodeFailedError,
    ErrorCode.METHOD_NOT_FOUND.value: MethodNotFoundError,
    ErrorCode.INVALID_PAYLOAD.value: InvalidPayloadError,
    ErrorCode.HANDLER_ERROR.value: HandlerError,
    ErrorCode.TIMEOUT.value: CallTimeoutError,
    ErrorCode.CANCELLED.value: CallCancelledError,
    ErrorCode.TRANSPORT_CLOSED.value: TransportClosedError,
    ErrorCode.PROTOCOL_ERROR.value: ProtocolError,
    ErrorCode.ENDPOINT_FAILED.value: EndpointFailedError,
}
