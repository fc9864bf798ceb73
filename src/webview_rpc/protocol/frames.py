"""Frame definitions for the wire protocol.

A frame is one logical message on the transport. Every frame carries the
call id of the call it belongs to; the call id is allocated by the
endpoint that sent the original REQUEST.

Correlation patterns:
- Unary: REQUEST → RESPONSE
- Server streaming: REQUEST → STREAM_EVENT* → STREAM_END | STREAM_ERROR
- Cancellation: CANCEL (subscriber → server), advisory

Example (unary):
    {"kind":"request","call_id":7,"service":"cline.UiService","method":"scrollToSettings","payload":{"value":"models"}}
    {"kind":"response","call_id":7,"payload":{}}

Example (stream):
    {"kind":"request","call_id":8,"service":"cline.UiService","method":"subscribeToChatButtonClicked","payload":{}}
    {"kind":"stream_event","call_id":8,"payload":{}}
    {"kind":"stream_end","call_id":8}
"""

from __future__ import annotations

import math
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, JsonValue, model_validator


def check_wire_value(value: Any, where: str) -> None:
    """Raise ValueError unless value is JSON that can be written as UTF-8.

    Rejects lone surrogates, non-finite numbers, non-string object keys and
    anything that is not a JSON type.
    """
    if value is None or isinstance(value, bool | int):
        return
    if isinstance(value, float):
        if not math.isfinite(value):
            raise ValueError(f"{where}: non-finite number {value!r}")
        return
    if isinstance(value, str):
        check_text(value, where)
        return
    if isinstance(value, list):
        for item in value:
            check_wire_value(item, where)
        return
    if isinstance(value, dict):
        for key, item in value.items():
            if not isinstance(key, str):
                raise ValueError(f"{where}: object keys must be strings")
            check_text(key, where)
            check_wire_value(item, where)
        return
    raise ValueError(f"{where}: {type(value).__name__} is not a JSON value")


def check_text(text: str, where: str) -> None:
    """Raise ValueError if text cannot be encoded as UTF-8 (lone surrogates)."""
    try:
        text.encode("utf-8")
    except UnicodeEncodeError as e:
        raise ValueError(f"{where}: text is not valid Unicode ({e.reason})") from None


class FrameKind(str, Enum):
    """All frame kinds in the protocol."""

    REQUEST = "request"
    RESPONSE = "response"
    STREAM_EVENT = "stream_event"
    STREAM_END = "stream_end"
    STREAM_ERROR = "stream_error"
    CANCEL = "cancel"


# Frames that settle or close a call on the issuing endpoint
TERMINAL_KINDS = frozenset({FrameKind.RESPONSE, FrameKind.STREAM_END, FrameKind.STREAM_ERROR})


class ErrorInfo(BaseModel):
    """Error carried by RESPONSE and STREAM_ERROR frames."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    details: dict[str, JsonValue] | None = None

    @model_validator(mode="after")
    def _check_encodable(self) -> ErrorInfo:
        check_text(self.code, "code")
        check_text(self.message, "message")
        if self.details is not None:
            check_wire_value(self.details, "details")
        return self


class Frame(BaseModel):
    """A single protocol frame.

    `service` and `method` are present only on REQUEST frames. `error` is
    required on STREAM_ERROR and optional on RESPONSE (present means the
    call failed). Unknown top-level fields are preserved so newer peers
    can add fields without breaking older ones.
    """

    model_config = ConfigDict(extra="allow", frozen=True)

    kind: FrameKind
    call_id: int = Field(ge=0)
    service: str | None = None
    method: str | None = None
    payload: JsonValue = None
    error: ErrorInfo | None = None

    @model_validator(mode="after")
    def _check_kind_fields(self) -> Frame:
        if self.kind == FrameKind.REQUEST:
            if not self.service or not self.method:
                raise ValueError("request frames require service and method")
        elif self.service is not None or self.method is not None:
            raise ValueError(f"{self.kind.value} frames must not carry service or method")
        if self.kind == FrameKind.STREAM_ERROR and self.error is None:
            raise ValueError("stream_error frames require error")
        if self.error is not None and self.kind not in (FrameKind.RESPONSE, FrameKind.STREAM_ERROR):
            raise ValueError(f"{self.kind.value} frames must not carry error")
        for name in ("service", "method"):
            value = getattr(self, name)
            if value is not None:
                check_text(value, name)
        check_wire_value(self.payload, "payload")
        for key, value in (self.model_extra or {}).items():
            check_text(key, "extra field")
            check_wire_value(value, "extra field")
        return self

    @property
    def is_error(self) -> bool:
        """Check if this frame reports a failure."""
        return self.error is not None

    @property
    def is_terminal(self) -> bool:
        """Check if this frame ends its call."""
        return self.kind in TERMINAL_KINDS

    def describe(self) -> str:
        """Short description for log lines."""
        if self.kind == FrameKind.REQUEST:
            return f"{self.kind.value}#{self.call_id} {self.service}/{self.method}"
        if self.error is not None:
            return f"{self.kind.value}#{self.call_id} [{self.error.code}]"
        return f"{self.kind.value}#{self.call_id}"

    # =========================================================================
    # Factory methods
    # =========================================================================

    @classmethod
    def request(cls, call_id: int, service: str, method: str, payload: Any = None) -> Frame:
        """Create a REQUEST frame."""
        return cls(
            kind=FrameKind.REQUEST,
            call_id=call_id,
            service=service,
            method=method,
            payload=payload,
        )

    @classmethod
    def response(cls, call_id: int, payload: Any = None) -> Frame:
        """Create a successful RESPONSE frame."""
        return cls(kind=FrameKind.RESPONSE, call_id=call_id, payload=payload)

    @classmethod
    def error_response(cls, call_id: int, error: ErrorInfo) -> Frame:
        """Create a RESPONSE frame reporting a failure."""
        return cls(kind=FrameKind.RESPONSE, call_id=call_id, error=error)

    @classmethod
    def stream_event(cls, call_id: int, payload: Any = None) -> Frame:
        """Create a STREAM_EVENT frame."""
        return cls(kind=FrameKind.STREAM_EVENT, call_id=call_id, payload=payload)

    @classmethod
    def stream_end(cls, call_id: int) -> Frame:
        """Create a STREAM_END frame."""
        return cls(kind=FrameKind.STREAM_END, call_id=call_id)

    @classmethod
    def stream_error(cls, call_id: int, error: ErrorInfo) -> Frame:
        """Create a STREAM_ERROR frame."""
        return cls(kind=FrameKind.STREAM_ERROR, call_id=call_id, error=error)

    @classmethod
    def cancel(cls, call_id: int) -> Frame:
        """Create a CANCEL frame."""
        return cls(kind=FrameKind.CANCEL, call_id=call_id)
