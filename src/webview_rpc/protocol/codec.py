"""Frame codec.

Wire format: one compact UTF-8 JSON object per transport message.
Fields are written in declaration order and absent optional fields are
omitted, so encoding the same frame twice yields identical bytes.

decode() never raises. Malformed input comes back as a DecodeError value
so the dispatcher can log it and drop the frame. Input that could not be
written back out (lone surrogates, NaN or Infinity) is malformed too.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError

from .frames import Frame

ENCODING = "utf-8"

# How much of a bad frame to keep for log lines
RAW_PREVIEW_LIMIT = 120


@dataclass(frozen=True)
class DecodeError:
    """Typed decode failure.

    Attributes:
        reason: What was wrong with the frame
        raw: Truncated preview of the offending input
        call_id: The call id, if it could still be read
    """

    reason: str
    raw: str = ""
    call_id: int | None = None

    def __str__(self) -> str:
        return self.reason


def encode(frame: Frame) -> bytes:
    """Serialize a frame to its wire bytes."""
    exclude: dict[str, Any] = {
        name: True
        for name in ("service", "method", "payload", "error")
        if getattr(frame, name) is None
    }
    if frame.error is not None and frame.error.details is None:
        exclude["error"] = {"details"}
    return frame.model_dump_json(exclude=exclude).encode(ENCODING)


def decode(data: bytes | str) -> Frame | DecodeError:
    """Parse wire bytes into a frame, or describe why that failed."""
    if isinstance(data, bytes | bytearray):
        try:
            text = bytes(data).decode(ENCODING)
        except UnicodeDecodeError as e:
            return DecodeError(f"Invalid UTF-8: {e}", _preview(repr(bytes(data))))
    else:
        text = data

    if text.startswith("\ufeff"):
        text = text[1:]

    try:
        parsed = json.loads(text, parse_constant=_reject_constant)
    except (ValueError, RecursionError) as e:
        return DecodeError(f"Invalid JSON: {e}", _preview(text))

    if not isinstance(parsed, dict):
        return DecodeError(
            f"Frame must be a JSON object, got {type(parsed).__name__}", _preview(text)
        )

    try:
        return Frame.model_validate(parsed)
    except ValidationError as e:
        call_id = parsed.get("call_id")
        if not isinstance(call_id, int) or isinstance(call_id, bool):
            call_id = None
        return DecodeError(
            f"Invalid frame: {e.error_count()} validation error(s): {_summarize(e)}",
            _preview(text),
            call_id,
        )


def _reject_constant(name: str) -> Any:
    raise ValueError(f"{name} is not allowed")


def _preview(text: str) -> str:
    text = text.encode(ENCODING, "backslashreplace").decode(ENCODING)
    if len(text) <= RAW_PREVIEW_LIMIT:
        return text
    return text[: RAW_PREVIEW_LIMIT - 3] + "..."


def _summarize(error: ValidationError) -> str:
    parts = []
    for item in error.errors():
        location = ".".join(str(p) for p in item["loc"]) or "frame"
        parts.append(f"{location}: {item['msg']}")
    return "; ".join(parts)
