"""Consumer side of a server-streaming call.

EventStream is a lazy, cancellable async iterator. It is also the
subscription sink the registry delivers events into, so one object owns
both ends of the local buffer.

Usage:
    async with endpoint.subscribe("cline.UiService", "subscribeToAddToInput") as events:
        async for event in events:
            handle(event)
            if done:
                break
    # leaving the block cancels the subscription if it is still open
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from enum import Enum
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, ValidationError

from .errors import InvalidPayloadError, RpcError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Opens the subscription on the endpoint and returns its call id
StreamOpener = Callable[["EventStream[Any]"], int]
# Cancels an open subscription by call id
StreamCanceller = Callable[[int], None]


class _Signal(str, Enum):
    EVENT = "event"
    END = "end"
    ERROR = "error"


class EventStream(Generic[T]):
    """Lazy sequence of events from one subscription.

    The REQUEST frame is sent on first iteration, on `async with`, or on
    an explicit open(). Iteration stops on STREAM_END or after cancel();
    STREAM_ERROR and endpoint teardown raise the corresponding RpcError.
    """

    def __init__(
        self,
        opener: StreamOpener,
        canceller: StreamCanceller,
        *,
        event_model: type[BaseModel] | None = None,
        label: str = "",
    ) -> None:
        self._opener = opener
        self._canceller = canceller
        self._event_model = event_model
        self._label = label
        self._queue: asyncio.Queue[tuple[_Signal, Any]] = asyncio.Queue()
        self._call_id: int | None = None
        self._opened = False
        self._finished = False
        self._events_received = 0

    def __repr__(self) -> str:
        return f"EventStream({self._label!r}, call_id={self._call_id}, closed={self.closed})"

    @property
    def call_id(self) -> int | None:
        """Call id of the subscription, once opened."""
        return self._call_id

    @property
    def opened(self) -> bool:
        return self._opened

    @property
    def closed(self) -> bool:
        """True once the stream has ended, failed or been cancelled."""
        return self._finished

    @property
    def events_received(self) -> int:
        """Number of events delivered into this stream."""
        return self._events_received

    def open(self) -> None:
        """Send the subscription request if it has not been sent yet.

        Raises:
            RpcError: If the endpoint can no longer issue calls
        """
        if self._opened:
            return
        self._opened = True
        if self._finished:
            return
        try:
            self._call_id = self._opener(self)
        except BaseException:
            self._finished = True
            raise

    def cancel(self) -> None:
        """Stop the subscription. Safe to call more than once.

        Events that arrive afterwards are discarded by the registry.
        """
        if self._finished:
            return
        self._finished = True
        # Wake a consumer blocked in __anext__
        self._queue.put_nowait((_Signal.END, None))
        if self._call_id is not None:
            self._canceller(self._call_id)

    async def aclose(self) -> None:
        self.cancel()

    # =========================================================================
    # Sink interface (called by the registry)
    # =========================================================================

    def on_event(self, value: Any) -> None:
        self._events_received += 1
        self._queue.put_nowait((_Signal.EVENT, value))

    def on_complete(self) -> None:
        self._queue.put_nowait((_Signal.END, None))

    def on_error(self, error: RpcError) -> None:
        self._queue.put_nowait((_Signal.ERROR, error))

    # =========================================================================
    # Iteration
    # =========================================================================

    def __aiter__(self) -> EventStream[T]:
        return self

    async def __anext__(self) -> T:
        self.open()
        if self._finished:
            raise StopAsyncIteration

        signal, value = await self._queue.get()
        if self._finished:
            raise StopAsyncIteration

        if signal == _Signal.END:
            self._finished = True
            raise StopAsyncIteration
        if signal == _Signal.ERROR:
            self._finished = True
            raise value

        if self._event_model is None:
            return value
        try:
            event = self._event_model.model_validate({} if value is None else value)
        except ValidationError as e:
            logger.warning(
                f"Invalid event on {self._label}, cancelling: {e.error_count()} error(s)"
            )
            self.cancel()
            raise InvalidPayloadError(f"Invalid event on {self._label}") from e
        return event  # type: ignore[return-value]

    async def __aenter__(self) -> EventStream[T]:
        self.open()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.cancel()
