"""Transport-agnostic wire protocol.

Defines the frames exchanged between a host endpoint and a view endpoint
and the codec that turns them into transport messages.

Key concepts:
- Frame: one logical message (request, response, stream event/end/error, cancel)
- Call id: allocated by the endpoint that sends the REQUEST; every later
  frame for that call carries the same id
- Codec: deterministic JSON encoding, total decoding
"""

from .codec import DecodeError, decode, encode
from .frames import ErrorInfo, Frame, FrameKind

__all__ = [
    "DecodeError",
    "ErrorInfo",
    "Frame",
    "FrameKind",
    "decode",
    "encode",
]
