"""Dispatcher - routes inbound frames.

Every frame the transport delivers goes through Dispatcher.dispatch():

| Frame         | Routed to                                              |
|---------------|--------------------------------------------------------|
| REQUEST       | Service Table handler, run as its own task             |
| RESPONSE      | pending call (resolve / reject)                        |
| STREAM_EVENT  | open subscription sink                                 |
| STREAM_END    | subscription close                                     |
| STREAM_ERROR  | subscription close with error                          |
| CANCEL        | running inbound handler for that call id               |

Frames for unknown call ids are dropped and logged. Handler failures are
converted into error frames for the caller; nothing raised by a handler
escapes dispatch().
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
from collections.abc import AsyncIterable, AsyncIterator, Callable, Iterable
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ValidationError

from .errors import (
    ErrorCode,
    HandlerError,
    InvalidPayloadError,
    ProtocolError,
    RpcError,
)
from .protocol import DecodeError, ErrorInfo, Frame, FrameKind, decode
from .registry import CallRegistry
from .service_table import CallContext, ServiceRegistration, ServiceTable

logger = logging.getLogger(__name__)

FrameSender = Callable[[Frame], None]


def to_payload(value: Any) -> Any:
    """Convert a handler result or event into a JSON payload."""
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json", by_alias=True, exclude_none=True)
    return value


@dataclass
class _InboundCall:
    context: CallContext
    task: asyncio.Task[None]


class Dispatcher:
    """Routes decoded frames to handlers, pending calls and subscriptions.

    Inbound requests run as independent asyncio tasks, so one slow or
    failing handler never holds up dispatch of other frames. Frames for
    one call id are handled in arrival order.

    Usage:
        dispatcher = Dispatcher(registry, services, send_frame)
        transport.on_receive(dispatcher.dispatch)
    """

    def __init__(
        self,
        registry: CallRegistry,
        services: ServiceTable,
        send: FrameSender,
        *,
        name: str = "endpoint",
        log_frames: bool = False,
    ) -> None:
        """Initialize dispatcher.

        Args:
            registry: Registry of this endpoint's outbound calls
            services: Handlers for inbound calls
            send: Sends a frame to the peer
            name: Endpoint name for log lines
            log_frames: Log every inbound frame at DEBUG
        """
        self._registry = registry
        self._services = services
        self._send_frame = send
        self._name = name
        self._log_frames = log_frames
        self._inbound: dict[int, _InboundCall] = {}
        self._closed = False

    @property
    def active_handlers(self) -> int:
        """Number of inbound calls whose handler is still running."""
        return len(self._inbound)

    def is_running(self, call_id: int) -> bool:
        """Check if an inbound call with this peer call id is still running."""
        return call_id in self._inbound

    # =========================================================================
    # Entry points
    # =========================================================================

    def dispatch(self, data: bytes) -> None:
        """Decode and route one transport message."""
        frame = decode(data)
        if isinstance(frame, DecodeError):
            logger.warning(
                f"[{self._name}] Dropping undecodable frame: {frame.reason} ({frame.raw})"
            )
            return
        self.dispatch_frame(frame)

    def dispatch_frame(self, frame: Frame) -> None:
        """Route one decoded frame."""
        if self._closed:
            logger.debug(f"[{self._name}] Dispatcher closed, dropping {frame.describe()}")
            return

        if self._log_frames:
            logger.debug(f"[{self._name}] <- {frame.describe()}")

        match frame.kind:
            case FrameKind.REQUEST:
                self._handle_request(frame)
            case FrameKind.RESPONSE:
                self._handle_response(frame)
            case FrameKind.STREAM_EVENT:
                self._handle_stream_event(frame)
            case FrameKind.STREAM_END:
                self._handle_stream_end(frame)
            case FrameKind.STREAM_ERROR:
                self._handle_stream_error(frame)
            case FrameKind.CANCEL:
                self._handle_cancel(frame)

    def shutdown(self) -> None:
        """Stop routing frames and cancel every running inbound handler.

        No frames are sent for the cancelled handlers.
        """
        if self._closed:
            return
        self._closed = True
        inbound = list(self._inbound.values())
        self._inbound.clear()
        for call in inbound:
            call.task.cancel()
        if inbound:
            logger.debug(f"[{self._name}] Cancelled {len(inbound)} running handler(s)")

    # =========================================================================
    # Outbound call side: responses and stream frames
    # =========================================================================

    def _handle_response(self, frame: Frame) -> None:
        call_id = frame.call_id
        if self._registry.has_call(call_id):
            if frame.error is not None:
                self._registry.reject(call_id, RpcError.from_info(frame.error))
            else:
                self._registry.resolve(call_id, frame.payload)
        elif self._registry.has_subscription(call_id):
            # A subscribe that failed before streaming (e.g. METHOD_NOT_FOUND)
            if frame.error is not None:
                error = RpcError.from_info(frame.error)
            else:
                error = ProtocolError("Received a unary response for a subscription")
            self._registry.close_subscription(call_id, error)
        else:
            self._drop(frame, "no pending call")

    def _handle_stream_event(self, frame: Frame) -> None:
        if not self._registry.feed_event(frame.call_id, frame.payload):
            self._drop(frame, "no open subscription")

    def _handle_stream_end(self, frame: Frame) -> None:
        call_id = frame.call_id
        if self._registry.has_subscription(call_id):
            self._registry.close_subscription(call_id)
        elif self._registry.has_call(call_id):
            self._registry.reject(call_id, ProtocolError("Stream ended without a response"))
        else:
            self._drop(frame, "no open subscription")

    def _handle_stream_error(self, frame: Frame) -> None:
        call_id = frame.call_id
        assert frame.error is not None
        if self._registry.has_subscription(call_id):
            self._registry.close_subscription(call_id, RpcError.from_info(frame.error))
        elif self._registry.has_call(call_id):
            self._registry.reject(call_id, RpcError.from_info(frame.error))
        else:
            self._drop(frame, "no open subscription")

    def _drop(self, frame: Frame, reason: str) -> None:
        logger.debug(f"[{self._name}] Dropping {frame.describe()}: {reason}")

    # =========================================================================
    # Serving side: requests and cancellation
    # =========================================================================

    def _handle_request(self, frame: Frame) -> None:
        call_id = frame.call_id
        assert frame.service is not None and frame.method is not None

        if call_id in self._inbound:
            logger.warning(f"[{self._name}] Duplicate request id {call_id}, rejecting")
            self._send(
                Frame.error_response(
                    call_id,
                    ErrorInfo(
                        code=ErrorCode.PROTOCOL_ERROR.value,
                        message=f"Call id {call_id} is already in use",
                    ),
                )
            )
            return

        registration = self._services.lookup(frame.service, frame.method)
        if registration is None:
            logger.warning(f"[{self._name}] Method not found: {frame.service}/{frame.method}")
            self._send(
                Frame.error_response(
                    call_id,
                    ErrorInfo(
                        code=ErrorCode.METHOD_NOT_FOUND.value,
                        message=f"Method not found: {frame.service}/{frame.method}",
                    ),
                )
            )
            return

        context = CallContext(
            service=frame.service,
            method=frame.method,
            call_id=call_id,
            streaming=registration.streaming,
        )
        if registration.streaming:
            runner = self._run_streaming(frame, registration, context)
        else:
            runner = self._run_unary(frame, registration, context)

        task = asyncio.get_running_loop().create_task(
            runner, name=f"rpc:{frame.service}/{frame.method}#{call_id}"
        )
        inbound = _InboundCall(context=context, task=task)
        self._inbound[call_id] = inbound
        task.add_done_callback(lambda _: self._forget(call_id, inbound))

    def _handle_cancel(self, frame: Frame) -> None:
        inbound = self._inbound.get(frame.call_id)
        if inbound is None:
            self._drop(frame, "handler already finished")
            return
        logger.debug(
            f"[{self._name}] Cancelling {inbound.context.service}/{inbound.context.method}"
            f"#{frame.call_id}"
        )
        inbound.context.cancel()
        inbound.task.cancel()

    def _forget(self, call_id: int, inbound: _InboundCall) -> None:
        if self._inbound.get(call_id) is inbound:
            del self._inbound[call_id]
        # Cancelled before the handler ever ran: still owe the caller a stream end
        context = inbound.context
        if inbound.task.cancelled() and context.cancelled and context.streaming:
            self._send(Frame.stream_end(call_id))

    async def _run_unary(
        self,
        frame: Frame,
        registration: ServiceRegistration,
        context: CallContext,
    ) -> None:
        call_id = frame.call_id
        try:
            request = self._parse_request(registration, frame.payload)
            result = registration.handler(request, context)
            if inspect.isawaitable(result):
                result = await result
            response = self._outbound(Frame.response, call_id, result, registration)
        except asyncio.CancelledError:
            if context.cancelled:
                logger.debug(
                    f"[{self._name}] {registration.service}/{registration.method} cancelled"
                )
                return
            raise
        except RpcError as e:
            self._send(Frame.error_response(call_id, _error_info(e)))
            return
        except Exception as e:
            logger.exception(
                f"[{self._name}] Handler {registration.service}/{registration.method} failed: {e}"
            )
            self._send(Frame.error_response(call_id, _error_info(e)))
            return

        if context.cancelled:
            return
        self._send(response)

    async def _run_streaming(
        self,
        frame: Frame,
        registration: ServiceRegistration,
        context: CallContext,
    ) -> None:
        call_id = frame.call_id
        emitted = 0
        try:
            request = self._parse_request(registration, frame.payload)
            events = registration.handler(request, context)
            if inspect.isawaitable(events):
                events = await events
            async with contextlib.aclosing(_iterate(events)) as stream:
                async for item in stream:
                    if context.cancelled:
                        break
                    self._send(self._outbound(Frame.stream_event, call_id, item, registration))
                    emitted += 1
        except asyncio.CancelledError:
            if not context.cancelled:
                raise
            logger.debug(
                f"[{self._name}] {registration.service}/{registration.method} "
                f"cancelled after {emitted} event(s)"
            )
        except RpcError as e:
            self._send(Frame.stream_error(call_id, _error_info(e)))
            return
        except Exception as e:
            logger.exception(
                f"[{self._name}] Streaming handler {registration.service}/{registration.method} "
                f"failed: {e}"
            )
            self._send(Frame.stream_error(call_id, _error_info(e)))
            return

        self._send(Frame.stream_end(call_id))

    def _outbound(
        self,
        factory: Callable[[int, Any], Frame],
        call_id: int,
        value: Any,
        registration: ServiceRegistration,
    ) -> Frame:
        try:
            return factory(call_id, to_payload(value))
        except ValidationError as e:
            reason = e.errors(include_url=False)[0]["msg"]
            logger.warning(
                f"[{self._name}] {registration.service}/{registration.method} produced "
                f"a value that cannot be sent: {reason}"
            )
            raise HandlerError(f"Handler produced a value that cannot be sent: {reason}") from e

    @staticmethod
    def _parse_request(registration: ServiceRegistration, payload: Any) -> Any:
        if registration.request_model is None:
            return payload
        try:
            return registration.request_model.model_validate({} if payload is None else payload)
        except ValidationError as e:
            raise InvalidPayloadError(
                f"Invalid payload for {registration.service}/{registration.method}: "
                f"{e.error_count()} validation error(s)",
                details={"errors": e.errors(include_url=False, include_context=False)},
            ) from e

    def _send(self, frame: Frame) -> None:
        if self._closed:
            return
        try:
            self._send_frame(frame)
        except Exception:
            logger.exception(f"[{self._name}] Failed to send {frame.describe()}")


def _error_info(error: Exception) -> ErrorInfo:
    """Wire error for a failed handler.

    RpcError codes pass through; anything else is HANDLER_ERROR. Text that
    cannot be encoded is escaped and details that are not JSON are dropped.
    """
    if isinstance(error, RpcError):
        code, message, details = error.code, error.message, error.details
    else:
        code = ErrorCode.HANDLER_ERROR.value
        message, details = str(error) or type(error).__name__, None
    try:
        return ErrorInfo(code=code, message=message, details=details)
    except ValidationError:
        return ErrorInfo(code=_escape(code), message=_escape(message))


def _escape(text: str) -> str:
    return text.encode("utf-8", "backslashreplace").decode("utf-8")


async def _iterate(events: Any) -> AsyncIterator[Any]:
    """Iterate a handler's events, whether async or plain."""
    if isinstance(events, AsyncIterable):
        iterator = aiter(events)
        try:
            async for item in iterator:
                yield item
        finally:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                await aclose()
    elif isinstance(events, Iterable):
        for item in events:
            yield item
    else:
        raise TypeError(f"Streaming handler returned {type(events).__name__}, not an iterable")
