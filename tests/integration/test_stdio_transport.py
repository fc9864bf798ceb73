"""Integration tests for the stdio transport.

Runs a host Endpoint over real binary streams, verifying:
- Request lines in, response lines out
- LF-only output, one frame per line
- BOM, CRLF and blank-line tolerance on input
- End of input closes the transport and disposes the endpoint
"""

import asyncio
import io
import json
import os

import pytest

from webview_rpc.config import EndpointConfig
from webview_rpc.endpoint import Endpoint
from webview_rpc.errors import TransportClosedError
from webview_rpc.protocol import Frame, encode
from webview_rpc.services.ui import SERVICE_NAME, UiController
from webview_rpc.transport import StdioTransport

# =============================================================================
# Helpers
# =============================================================================


def request_line(call_id: int, method: str, payload=None) -> bytes:
    """Encode a request frame as one input line."""
    return encode(Frame.request(call_id, SERVICE_NAME, method, payload)) + b"\n"


def read_frames(stream: io.BytesIO) -> list[dict]:
    """Parse every output line as JSON."""
    return [json.loads(line) for line in stream.getvalue().splitlines() if line.strip()]


async def wait_until(predicate, timeout: float = 2.0) -> None:
    async def poll():
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(poll(), timeout)


class PipeInput:
    """Writable end of an OS pipe feeding the transport's stdin."""

    def __init__(self):
        read_fd, self._write_fd = os.pipe()
        self.reader = os.fdopen(read_fd, "rb")

    def write(self, data: bytes) -> None:
        os.write(self._write_fd, data)

    def close(self) -> None:
        os.close(self._write_fd)


# =============================================================================
# Tests: Serving over stdio
# =============================================================================


class TestStdioServing:
    """Test a host endpoint served over stdio streams."""

    @pytest.mark.anyio
    async def test_request_gets_response(self):
        """A request line produces a response line with the same call id."""
        stdin = PipeInput()
        stdout = io.BytesIO()
        transport = StdioTransport(stdin=stdin.reader, stdout=stdout)
        controller = UiController()
        endpoint = Endpoint(transport, config=EndpointConfig(name="host"))
        controller.register(endpoint)
        await transport.start()

        try:
            stdin.write(request_line(7, "scrollToSettings", {"value": "models"}))
            await wait_until(lambda: stdout.getvalue().endswith(b"\n"))
        finally:
            stdin.close()
            await asyncio.wait_for(transport.wait_closed(), 2)

        assert read_frames(stdout) == [{"kind": "response", "call_id": 7, "payload": {}}]
        assert controller.last_settings_section == "models"

    @pytest.mark.anyio
    async def test_output_is_lf_terminated(self):
        """Each output frame ends in LF, never CRLF."""
        stdin = PipeInput()
        stdout = io.BytesIO()
        transport = StdioTransport(stdin=stdin.reader, stdout=stdout)
        UiController().register(Endpoint(transport))
        await transport.start()

        try:
            stdin.write(request_line(1, "onDidShowAnnouncement", {}))
            stdin.write(request_line(2, "scrollToSettings", {"value": "a"}))
            await wait_until(lambda: stdout.getvalue().count(b"\n") == 2)
        finally:
            stdin.close()
            await asyncio.wait_for(transport.wait_closed(), 2)

        output = stdout.getvalue()
        assert b"\r" not in output
        assert sorted(frame["call_id"] for frame in read_frames(stdout)) == [1, 2]

    @pytest.mark.anyio
    async def test_tolerant_input(self):
        """BOM, CRLF, blank lines and garbage do not disturb valid frames."""
        stdin = PipeInput()
        stdout = io.BytesIO()
        transport = StdioTransport(stdin=stdin.reader, stdout=stdout)
        controller = UiController()
        controller.register(Endpoint(transport))
        await transport.start()

        try:
            stdin.write(b"\xef\xbb\xbf" + request_line(1, "scrollToSettings", {"value": "x"}))
            stdin.write(b"\n\r\n")
            stdin.write(b"this is not json\n")
            stdin.write(request_line(2, "scrollToSettings", {"value": "y"}).replace(b"\n", b"\r\n"))
            await wait_until(lambda: stdout.getvalue().count(b"\n") == 2)
        finally:
            stdin.close()
            await asyncio.wait_for(transport.wait_closed(), 2)

        frames = read_frames(stdout)
        assert [frame["call_id"] for frame in frames] == [1, 2]
        assert all(frame["kind"] == "response" for frame in frames)
        assert controller.last_settings_section == "y"

    @pytest.mark.anyio
    async def test_unknown_method_reported(self):
        """Unknown methods get a METHOD_NOT_FOUND response line."""
        stdin = PipeInput()
        stdout = io.BytesIO()
        transport = StdioTransport(stdin=stdin.reader, stdout=stdout)
        UiController().register(Endpoint(transport))
        await transport.start()

        try:
            stdin.write(request_line(3, "noSuchMethod", {}))
            await wait_until(lambda: stdout.getvalue().endswith(b"\n"))
        finally:
            stdin.close()
            await asyncio.wait_for(transport.wait_closed(), 2)

        (frame,) = read_frames(stdout)
        assert frame["kind"] == "response"
        assert frame["call_id"] == 3
        assert frame["error"]["code"] == "METHOD_NOT_FOUND"


# =============================================================================
# Tests: End of input
# =============================================================================


class TestEndOfInput:
    """Test what happens when stdin ends."""

    @pytest.mark.anyio
    async def test_eof_disposes_endpoint(self):
        """End of input closes the transport and disposes the endpoint."""
        transport = StdioTransport(stdin=io.BytesIO(b"\n\n"), stdout=io.BytesIO())
        endpoint = Endpoint(transport)
        await transport.start()

        await asyncio.wait_for(transport.wait_closed(), 2)

        assert transport.is_closed
        assert endpoint.is_disposed

    @pytest.mark.anyio
    async def test_send_after_close_dropped(self):
        """Frames sent after the transport closed are not written."""
        stdout = io.BytesIO()
        transport = StdioTransport(stdin=io.BytesIO(b""), stdout=stdout)
        await transport.start()
        await asyncio.wait_for(transport.wait_closed(), 2)

        transport.send(b'{"kind":"cancel","call_id":1}')

        assert stdout.getvalue() == b""

    @pytest.mark.anyio
    async def test_pending_call_fails_on_eof(self):
        """A call awaiting a reply fails with TRANSPORT_CLOSED at EOF."""
        stdin = PipeInput()
        transport = StdioTransport(stdin=stdin.reader, stdout=io.BytesIO())
        view = Endpoint(transport, config=EndpointConfig(name="view", default_timeout=None))
        await transport.start()

        call = asyncio.create_task(view.call(SERVICE_NAME, "scrollToSettings", {"value": "x"}))
        await asyncio.sleep(0.05)
        stdin.close()

        with pytest.raises(TransportClosedError):
            await asyncio.wait_for(call, 2)
