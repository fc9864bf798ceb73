"""WebSocket transports.

One frame per WebSocket message (text frames carrying the JSON).

- WebSocketTransport: server side, wraps a starlette WebSocket
- WebSocketClientTransport: client side, built on the `websockets` library

Both queue outbound frames and write them from a single writer task, so
send() stays synchronous and frames leave in send order.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any

from starlette.websockets import WebSocket, WebSocketDisconnect, WebSocketState

from .base import FrameTransport

logger = logging.getLogger(__name__)

ENCODING = "utf-8"


class WebSocketTransport(FrameTransport):
    """Server-side transport over one starlette WebSocket connection.

    Usage (inside a websocket route):
        transport = WebSocketTransport(websocket)
        await transport.start()
        endpoint = Endpoint(transport)
        await transport.run()      # returns when the client disconnects
        endpoint.dispose()
    """

    def __init__(self, websocket: WebSocket) -> None:
        super().__init__()
        self._websocket = websocket
        self._outbox: asyncio.Queue[bytes | None] = asyncio.Queue()
        self._writer_task: asyncio.Task[None] | None = None

    @property
    def is_connected(self) -> bool:
        """Check if the WebSocket is connected."""
        return not self._closed and self._websocket.client_state == WebSocketState.CONNECTED

    async def start(self) -> None:
        """Accept the connection and start the writer."""
        if self._websocket.client_state == WebSocketState.CONNECTING:
            await self._websocket.accept()
        if self._writer_task is None:
            self._writer_task = asyncio.create_task(self._write_loop(), name="ws-writer")

    async def run(self) -> None:
        """Receive frames until the client disconnects."""
        try:
            while not self._closed:
                message = await self._websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                data = message.get("bytes")
                if data is None:
                    text = message.get("text")
                    if text is None:
                        continue
                    data = text.encode(ENCODING)
                self._deliver(data)
        except WebSocketDisconnect:
            pass
        finally:
            self._mark_closed()
            await self._stop_writer()

    def send(self, data: bytes) -> None:
        if self._closed:
            logger.debug("websocket: connection closed, dropping frame")
            return
        self._outbox.put_nowait(data)

    async def close(self) -> None:
        """Close the connection."""
        self._mark_closed()
        await self._stop_writer()
        if self._websocket.client_state == WebSocketState.CONNECTED:
            with contextlib.suppress(RuntimeError):
                await self._websocket.close()

    async def _write_loop(self) -> None:
        while True:
            data = await self._outbox.get()
            if data is None:
                break
            try:
                await self._websocket.send_text(data.decode(ENCODING))
            except (WebSocketDisconnect, RuntimeError) as e:
                logger.debug(f"websocket: send failed ({e})")
                self._mark_closed()
                break

    async def _stop_writer(self) -> None:
        task = self._writer_task
        if task is None or task.done():
            return
        # Flush what is queued, then stop
        self._outbox.put_nowait(None)
        with contextlib.suppress(asyncio.CancelledError):
            await task


class WebSocketClientTransport(FrameTransport):
    """Client-side transport connecting to a server's /ws route.

    Usage:
        transport = WebSocketClientTransport("ws://localhost:4096/ws")
        await transport.start()
        view = Endpoint(transport, name="view")
        ...
        await transport.close()
    """

    def __init__(
        self,
        url: str,
        *,
        ping_interval: float | None = 30,
        ping_timeout: float | None = 10,
    ) -> None:
        super().__init__()
        self.url = url
        self.ping_interval = ping_interval
        self.ping_timeout = ping_timeout
        self._ws: Any = None  # websockets client connection
        self._outbox: asyncio.Queue[bytes | None] = asyncio.Queue()
        self._reader_task: asyncio.Task[None] | None = None
        self._writer_task: asyncio.Task[None] | None = None

    async def start(self) -> None:
        """Open the connection.

        Raises:
            ConnectionError: If the server cannot be reached
        """
        if self._ws is not None:
            return

        import websockets
        from websockets.exceptions import WebSocketException

        try:
            self._ws = await websockets.connect(
                self.url,
                ping_interval=self.ping_interval,
                ping_timeout=self.ping_timeout,
            )
        except (OSError, WebSocketException) as e:
            raise ConnectionError(f"Failed to connect to {self.url}: {e}") from e

        self._reader_task = asyncio.create_task(self._read_loop(), name="ws-client-reader")
        self._writer_task = asyncio.create_task(self._write_loop(), name="ws-client-writer")
        logger.info(f"WebSocket connected: {self.url}")

    def send(self, data: bytes) -> None:
        if self._closed or self._ws is None:
            logger.debug("websocket client: connection closed, dropping frame")
            return
        self._outbox.put_nowait(data)

    async def close(self) -> None:
        """Flush queued frames and close the connection."""
        if self._writer_task is not None and not self._writer_task.done():
            self._outbox.put_nowait(None)
            with contextlib.suppress(asyncio.CancelledError):
                await self._writer_task
        if self._ws is not None:
            await self._ws.close()
        if self._reader_task is not None and not self._reader_task.done():
            self._reader_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reader_task
        self._mark_closed()

    async def _read_loop(self) -> None:
        from websockets.exceptions import ConnectionClosed

        try:
            async for message in self._ws:
                data = message.encode(ENCODING) if isinstance(message, str) else message
                self._deliver(data)
        except ConnectionClosed as e:
            logger.info(f"WebSocket closed: {e}")
        finally:
            self._mark_closed()

    async def _write_loop(self) -> None:
        from websockets.exceptions import ConnectionClosed

        while True:
            data = await self._outbox.get()
            if data is None:
                break
            try:
                await self._ws.send(data.decode(ENCODING))
            except ConnectionClosed:
                self._mark_closed()
                break
