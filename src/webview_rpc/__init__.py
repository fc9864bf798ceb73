"""Webview RPC - bidirectional RPC and event streams between a host and its webviews.

Either side runs one Endpoint over a transport. Both sides can call
(unary request/response), subscribe (server-streaming events) and serve
handlers for the other side.

Building blocks:
- Frame / encode / decode: the wire protocol
- CallRegistry: pending calls and open subscriptions of one endpoint
- ServiceTable: inbound handlers by (service, method)
- Dispatcher: routes inbound frames
- Endpoint: the user-facing façade
"""

from .config import EndpointConfig, load_config
from .dispatcher import Dispatcher
from .endpoint import Endpoint
from .errors import (
    CallCancelledError,
    CallIdExhaustedError,
    CallTimeoutError,
    DecodeFailedError,
    EndpointFailedError,
    ErrorCode,
    HandlerError,
    InvalidPayloadError,
    MethodNotFoundError,
    ProtocolError,
    RpcError,
    TransportClosedError,
)
from .hub import EventHub
from .protocol import DecodeError, ErrorInfo, Frame, FrameKind, decode, encode
from .registry import (
    CallRegistry,
    PendingCall,
    Subscription,
    SubscriptionSink,
    SubscriptionState,
)
from .service_table import (
    CallContext,
    MethodDefinition,
    ServiceDefinition,
    ServiceRegistration,
    ServiceTable,
)
from .stream import EventStream
from .transport import FrameTransport, MemoryTransport, StdioTransport, SubprocessTransport

__version__ = "0.1.0"

__all__ = [
    # Endpoint
    "Endpoint",
    "EndpointConfig",
    "EventStream",
    "load_config",
    # Core
    "CallRegistry",
    "PendingCall",
    "Subscription",
    "SubscriptionSink",
    "SubscriptionState",
    "Dispatcher",
    "ServiceTable",
    "ServiceRegistration",
    "ServiceDefinition",
    "MethodDefinition",
    "CallContext",
    "EventHub",
    # Protocol
    "Frame",
    "FrameKind",
    "ErrorInfo",
    "DecodeError",
    "encode",
    "decode",
    # Errors
    "ErrorCode",
    "RpcError",
    "DecodeFailedError",
    "MethodNotFoundError",
    "InvalidPayloadError",
    "HandlerError",
    "CallTimeoutError",
    "CallCancelledError",
    "TransportClosedError",
    "ProtocolError",
    "EndpointFailedError",
    "CallIdExhaustedError",
    # Transports
    "FrameTransport",
    "MemoryTransport",
    "StdioTransport",
    "SubprocessTransport",
]
