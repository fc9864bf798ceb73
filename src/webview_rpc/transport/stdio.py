"""stdio transport.

Carries frames over a pair of binary streams as newline-delimited JSON.
This is how a view runs as a subprocess of the host (or the other way
round).

Wire format (UTF-8, one frame per line):
- Output: frame bytes + LF, never CRLF
- Input: LF or CRLF accepted; a leading UTF-8 BOM is stripped
- Blank lines are ignored

Encoded frames never contain a raw newline, so lines and frames map 1:1.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import sys
from typing import BinaryIO

from .base import FrameTransport

logger = logging.getLogger(__name__)

NEWLINE = b"\n"
UTF8_BOM = b"\xef\xbb\xbf"


def _ensure_binary_stream(stream: BinaryIO | None, default_fd: int) -> BinaryIO:
    """Use the given stream, or the raw binary stdin/stdout."""
    if stream is not None:
        return stream
    if default_fd == 0:
        return sys.stdin.buffer
    return sys.stdout.buffer


def normalize_line(line: bytes) -> bytes:
    """Strip line endings, surrounding whitespace and a UTF-8 BOM."""
    line = line.strip()
    if line.startswith(UTF8_BOM):
        line = line[len(UTF8_BOM) :].strip()
    return line


class StdioTransport(FrameTransport):
    """Frame transport over stdin/stdout.

    Reading happens on a background task using blocking readline() in the
    default executor, so it works with pipes, files and BytesIO alike.
    End of input closes the transport.

    Usage:
        transport = StdioTransport()
        endpoint = Endpoint(transport)
        await transport.start()
        await transport.wait_closed()
    """

    def __init__(self, stdin: BinaryIO | None = None, stdout: BinaryIO | None = None) -> None:
        """Initialize stdio transport.

        Args:
            stdin: Binary input stream (default: sys.stdin.buffer)
            stdout: Binary output stream (default: sys.stdout.buffer)
        """
        super().__init__()
        self._stdin = _ensure_binary_stream(stdin, 0)
        self._stdout = _ensure_binary_stream(stdout, 1)
        self._reader_task: asyncio.Task[None] | None = None

    async def start(self) -> None:
        """Start reading frames from stdin."""
        if self._reader_task is None:
            self._reader_task = asyncio.create_task(self._read_loop(), name="stdio-reader")

    async def wait_closed(self) -> None:
        """Wait until input ends or the transport is closed."""
        if self._reader_task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await self._reader_task

    def send(self, data: bytes) -> None:
        if self._closed:
            logger.debug("stdio: transport closed, dropping frame")
            return
        try:
            self._stdout.write(data + NEWLINE)
            self._stdout.flush()
        except (BrokenPipeError, ValueError, OSError) as e:
            logger.warning(f"stdio: output closed ({e})")
            self._mark_closed()

    async def close(self) -> None:
        """Stop reading and mark the transport closed."""
        if self._reader_task is not None and not self._reader_task.done():
            self._reader_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reader_task
        self._mark_closed()

    async def _read_loop(self) -> None:
        loop = asyncio.get_running_loop()
        try:
            while not self._closed:
                line = await loop.run_in_executor(None, self._stdin.readline)
                if not line:
                    logger.info("stdio: input closed")
                    break
                line = normalize_line(line)
                if not line:
                    continue
                self._deliver(line)
        except (OSError, ValueError) as e:
            logger.warning(f"stdio: error reading input: {e}")
        finally:
            self._mark_closed()
