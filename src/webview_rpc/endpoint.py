"""Endpoint - the user-facing side of the protocol.

An Endpoint composes one CallRegistry, one ServiceTable and one
Dispatcher over a single transport. Either process (host or view) runs
one; both can call and both can serve.

Usage:
    host_transport, view_transport = MemoryTransport.pair()

    host = Endpoint(host_transport, name="host")
    host.register_handler("cline.UiService", "scrollToSettings", scroll_to_settings)

    view = Endpoint(view_transport, name="view")
    await view.call("cline.UiService", "scrollToSettings", {"value": "models"})

    async with view.subscribe("cline.UiService", "subscribeToAddToInput") as events:
        async for event in events:
            ...

    view.dispose()
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping
from typing import Any, TypeVar, overload

from pydantic import BaseModel, ValidationError

from .config import EndpointConfig
from .dispatcher import Dispatcher, to_payload
from .errors import (
    CallCancelledError,
    EndpointFailedError,
    InvalidPayloadError,
    RpcError,
    TransportClosedError,
)
from .protocol import Frame, encode
from .registry import CallRegistry
from .service_table import Handler, ServiceDefinition, ServiceRegistration, ServiceTable
from .stream import EventStream
from .transport.base import FrameTransport

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


class _UseDefault:
    def __repr__(self) -> str:
        return "DEFAULT"


DEFAULT = _UseDefault()


class Endpoint:
    """One side of the RPC channel.

    The endpoint attaches to the transport on construction. When the
    transport closes, every pending call and open subscription fails with
    TRANSPORT_CLOSED and the endpoint disposes itself.
    """

    def __init__(
        self,
        transport: FrameTransport,
        *,
        config: EndpointConfig | None = None,
        services: ServiceTable | None = None,
        name: str | None = None,
    ) -> None:
        """Initialize endpoint.

        Args:
            transport: Carrier for frames
            config: Endpoint configuration (default: EndpointConfig())
            services: Service table to serve from (default: a new, empty table)
            name: Name for log lines (default: config.name)
        """
        self.config = config or EndpointConfig()
        self.name = name or self.config.name
        self.services = services if services is not None else ServiceTable()
        self.registry = CallRegistry(self.config.max_call_id, on_timeout=self._on_call_timeout)
        self.dispatcher = Dispatcher(
            self.registry,
            self.services,
            self._send_frame,
            name=self.name,
            log_frames=self.config.log_frames,
        )
        self._transport = transport
        self._disposed = False
        self._close_error: RpcError | None = None

        self._detach_close: Callable[[], None] = _no_op

        transport.on_receive(self.dispatcher.dispatch)
        # Disposes immediately when the transport is already closed
        detach = transport.on_close(self._on_transport_closed)
        if not self._disposed:
            self._detach_close = detach

    def __repr__(self) -> str:
        return (
            f"Endpoint({self.name!r}, disposed={self._disposed}, "
            f"in_flight={len(self.registry)})"
        )

    @property
    def transport(self) -> FrameTransport:
        return self._transport

    @property
    def is_disposed(self) -> bool:
        return self._disposed

    @property
    def failed(self) -> bool:
        """True once the endpoint can no longer issue calls (call id space exhausted)."""
        return self.registry.exhausted

    # =========================================================================
    # Serving
    # =========================================================================

    def register_handler(
        self,
        service: str,
        method: str,
        handler: Handler,
        *,
        streaming: bool = False,
        request_model: type[BaseModel] | None = None,
    ) -> ServiceRegistration:
        """Register an inbound handler. See ServiceTable.register()."""
        return self.services.register(
            service, method, handler, streaming=streaming, request_model=request_model
        )

    def register_service(
        self, definition: ServiceDefinition, handlers: Mapping[str, Handler]
    ) -> list[ServiceRegistration]:
        """Bind a whole service definition. See ServiceTable.register_service()."""
        return self.services.register_service(definition, handlers)

    # =========================================================================
    # Calling
    # =========================================================================

    @overload
    async def call(
        self,
        service: str,
        method: str,
        payload: Any = None,
        *,
        timeout: float | None | _UseDefault = DEFAULT,
        result_model: type[M],
    ) -> M: ...

    @overload
    async def call(
        self,
        service: str,
        method: str,
        payload: Any = None,
        *,
        timeout: float | None | _UseDefault = DEFAULT,
        result_model: None = None,
    ) -> Any: ...

    async def call(
        self,
        service: str,
        method: str,
        payload: Any = None,
        *,
        timeout: float | None | _UseDefault = DEFAULT,
        result_model: type[BaseModel] | None = None,
    ) -> Any:
        """Issue a unary call and wait for its result.

        Args:
            service: Service name
            method: Method name
            payload: JSON value or pydantic model
            timeout: Seconds before failing with TIMEOUT
                (default: config.default_timeout; None waits forever)
            result_model: Optional pydantic model to validate the result into

        Returns:
            The response payload (or a result_model instance)

        Raises:
            RpcError: METHOD_NOT_FOUND, HANDLER_ERROR, TIMEOUT, CANCELLED,
                TRANSPORT_CLOSED, ... as reported for this call
        """
        self._check_usable()
        template = _request_template(service, method, payload)
        if isinstance(timeout, _UseDefault):
            timeout = self.config.default_timeout

        pending = self.registry.register_call(timeout, label=f"{service}/{method}")
        call_id = pending.call_id
        try:
            self._send_frame(template.model_copy(update={"call_id": call_id}))
        except Exception:
            self.registry.discard(call_id)
            raise
        try:
            result = await pending.future
        except asyncio.CancelledError:
            if self.registry.discard(call_id):
                self._send_cancel(call_id)
            raise

        if result_model is None:
            return result
        try:
            return result_model.model_validate({} if result is None else result)
        except ValidationError as e:
            raise InvalidPayloadError(
                f"Invalid result from {service}/{method}: {e.error_count()} validation error(s)"
            ) from e

    def subscribe(
        self,
        service: str,
        method: str,
        payload: Any = None,
        *,
        event_model: type[BaseModel] | None = None,
    ) -> EventStream[Any]:
        """Open a server-streaming call.

        The request is sent lazily, on first iteration or `async with`.
        Subscriptions have no deadline.

        Args:
            service: Service name
            method: Method name
            payload: JSON value or pydantic model
            event_model: Optional pydantic model each event is validated into

        Returns:
            EventStream of events
        """
        self._check_usable()
        template = _request_template(service, method, payload)
        label = f"{service}/{method}"

        def open_stream(sink: EventStream[Any]) -> int:
            self._check_usable()
            call_id = self.registry.open_subscription(sink, label=label)
            try:
                self._send_frame(template.model_copy(update={"call_id": call_id}))
            except Exception:
                self.registry.close_subscription(call_id)
                raise
            return call_id

        return EventStream(
            open_stream,
            self._cancel_subscription,
            event_model=event_model,
            label=label,
        )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def dispose(self, error: RpcError | None = None) -> None:
        """Tear the endpoint down. Idempotent.

        Rejects every pending call, closes every subscription, cancels
        running inbound handlers and detaches from the transport.

        Args:
            error: Error delivered to in-flight calls (default: CANCELLED)
        """
        if self._disposed:
            return
        self._disposed = True
        self._close_error = error or CallCancelledError("Endpoint disposed")

        self.dispatcher.shutdown()
        settled = self.registry.cancel_all(self._close_error)
        self._transport.on_receive(None)
        self._detach_close()
        logger.info(f"[{self.name}] Endpoint disposed ({settled} in-flight call(s) settled)")

    async def __aenter__(self) -> Endpoint:
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.dispose()

    # =========================================================================
    # Internals
    # =========================================================================

    def _check_usable(self) -> None:
        if self._disposed:
            assert self._close_error is not None
            error = self._close_error
            raise type(error)(error.message, code=error.code, details=error.details)
        if self.registry.exhausted:
            raise EndpointFailedError("Endpoint has failed: call id space exhausted")

    def _send_frame(self, frame: Frame) -> None:
        if self.config.log_frames:
            logger.debug(f"[{self.name}] -> {frame.describe()}")
        self._transport.send(encode(frame))

    def _send_cancel(self, call_id: int) -> None:
        if self._disposed or self._transport.is_closed:
            return
        try:
            self._send_frame(Frame.cancel(call_id))
        except Exception:
            logger.exception(f"[{self.name}] Failed to send cancel for #{call_id}")

    def _cancel_subscription(self, call_id: int) -> None:
        if self.registry.close_subscription(call_id):
            self._send_cancel(call_id)

    def _on_call_timeout(self, call_id: int) -> None:
        self._send_cancel(call_id)

    def _on_transport_closed(self) -> None:
        logger.info(f"[{self.name}] Transport closed")
        self.dispose(TransportClosedError("Transport closed"))


def _request_template(service: str, method: str, payload: Any) -> Frame:
    try:
        return Frame.request(0, service, method, to_payload(payload))
    except ValidationError as e:
        raise InvalidPayloadError(
            f"Cannot send request for {service}/{method}: {e.error_count()} validation error(s)",
            details={"errors": e.errors(include_url=False, include_context=False)},
        ) from e


def _no_op() -> None:
    pass
