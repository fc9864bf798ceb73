"""Transport abstraction base class.

The RPC core needs only three things from a carrier:
- send(bytes): ship one complete frame, fire-and-forget
- on_receive(handler): where to deliver each inbound frame
- on_close(handler): notification that the channel is gone

Carriers are assumed reliable, ordered per direction, and already
message-delimited.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)

ReceiveHandler = Callable[[bytes], None]
CloseHandler = Callable[[], None]


class FrameTransport(ABC):
    """Abstract message-oriented transport.

    Subclasses implement send() and call _deliver() for every inbound
    message and _mark_closed() exactly when the channel goes away.
    """

    def __init__(self) -> None:
        self._receive_handler: ReceiveHandler | None = None
        self._close_handlers: list[CloseHandler] = []
        self._closed = False

    @property
    def is_closed(self) -> bool:
        """Check if the channel has closed."""
        return self._closed

    def on_receive(self, handler: ReceiveHandler | None) -> None:
        """Set the inbound frame handler (None detaches)."""
        self._receive_handler = handler

    def on_close(self, handler: CloseHandler) -> Callable[[], None]:
        """Register a close handler.

        If the transport is already closed the handler runs immediately.

        Returns:
            Function that removes the handler
        """
        if self._closed:
            handler()
            return lambda: None

        self._close_handlers.append(handler)

        def remove() -> None:
            if handler in self._close_handlers:
                self._close_handlers.remove(handler)

        return remove

    @abstractmethod
    def send(self, data: bytes) -> None:
        """Send one frame. Never blocks; drops (and logs) if closed."""
        ...

    async def start(self) -> None:
        """Begin receiving. Default: nothing to start."""

    async def close(self) -> None:
        """Close the channel."""
        self._mark_closed()

    def _deliver(self, data: bytes) -> None:
        """Hand one inbound frame to the receive handler."""
        handler = self._receive_handler
        if handler is None:
            logger.debug(f"{type(self).__name__}: no receiver attached, dropping frame")
            return
        try:
            handler(data)
        except Exception:
            logger.exception(f"{type(self).__name__}: receive handler failed")

    def _mark_closed(self) -> None:
        """Flag the channel closed and notify close handlers once."""
        if self._closed:
            return
        self._closed = True
        handlers = list(self._close_handlers)
        self._close_handlers.clear()
        for handler in handlers:
            try:
                handler()
            except Exception:
                logger.exception(f"{type(self).__name__}: close handler failed")

    async def __aenter__(self) -> FrameTransport:
        await self.start()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()
