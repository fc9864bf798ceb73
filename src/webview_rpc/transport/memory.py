"""In-process transport pair.

Two MemoryTransport objects wired back to back. Frames are delivered on
the event loop in send order, never re-entrantly from inside send().
Useful for tests and for embedding host and view in one process.
"""

from __future__ import annotations

import asyncio
import logging

from .base import FrameTransport

logger = logging.getLogger(__name__)


class MemoryTransport(FrameTransport):
    """One side of an in-memory channel. Create with MemoryTransport.pair()."""

    def __init__(self, name: str = "memory") -> None:
        super().__init__()
        self.name = name
        self._peer: MemoryTransport | None = None
        self.sent: list[bytes] = []

    @classmethod
    def pair(
        cls, first: str = "host", second: str = "view"
    ) -> tuple[MemoryTransport, MemoryTransport]:
        """Create two connected transports."""
        a, b = cls(first), cls(second)
        a._peer, b._peer = b, a
        return a, b

    def send(self, data: bytes) -> None:
        if self._closed or self._peer is None:
            logger.debug(f"{self.name}: channel closed, dropping frame")
            return
        self.sent.append(data)
        asyncio.get_running_loop().call_soon(self._peer._deliver_if_open, data)

    def inject(self, data: bytes) -> None:
        """Deliver a frame as if the peer had sent it (test helper)."""
        asyncio.get_running_loop().call_soon(self._deliver_if_open, data)

    def _deliver_if_open(self, data: bytes) -> None:
        if not self._closed:
            self._deliver(data)

    async def close(self) -> None:
        """Close both ends of the channel."""
        peer = self._peer
        self._mark_closed()
        if peer is not None and not peer.is_closed:
            asyncio.get_running_loop().call_soon(peer._mark_closed)
