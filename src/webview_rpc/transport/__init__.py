"""Transport abstraction layer.

The RPC core only needs a message-oriented, ordered, reliable channel:
- MemoryTransport - in-process pair (tests, embedding)
- StdioTransport - newline-delimited frames over stdin/stdout
- SubprocessTransport - spawn the peer and talk over its pipes
- WebSocketTransport / WebSocketClientTransport - one frame per message
"""

from .base import CloseHandler, FrameTransport, ReceiveHandler
from .memory import MemoryTransport
from .process import SubprocessTransport
from .stdio import StdioTransport

# Note: websocket transports import starlette; they are imported separately
# Use: from webview_rpc.transport.websocket import WebSocketTransport

__all__ = [
    "CloseHandler",
    "FrameTransport",
    "MemoryTransport",
    "ReceiveHandler",
    "StdioTransport",
    "SubprocessTransport",
]
