"""Subprocess transport.

Launches the peer process and exchanges newline-delimited frames over its
stdin/stdout. The child's stderr is forwarded to logging.

Usage:
    transport = SubprocessTransport(["webview-rpc"])
    await transport.start()
    view = Endpoint(transport, name="view")
    ui = UiServiceClient(view)
    await ui.scroll_to_settings("models")
    await transport.close()
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os

from .base import FrameTransport
from .stdio import NEWLINE, normalize_line

logger = logging.getLogger(__name__)


class SubprocessTransport(FrameTransport):
    """Frame transport to a child process."""

    def __init__(
        self,
        command: list[str],
        *,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        terminate_timeout: float = 5.0,
    ) -> None:
        """Initialize subprocess transport.

        Args:
            command: Command line of the peer process
            cwd: Working directory for the child
            env: Extra environment variables for the child
            terminate_timeout: Seconds to wait after SIGTERM before SIGKILL
        """
        super().__init__()
        self.command = command
        self.cwd = cwd
        self.env = env
        self.terminate_timeout = terminate_timeout
        self._process: asyncio.subprocess.Process | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._stderr_task: asyncio.Task[None] | None = None

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    async def start(self) -> None:
        """Launch the child and start reading its output.

        Raises:
            ConnectionError: If the process cannot be started
        """
        if self._process is not None:
            return

        env = None
        if self.env:
            env = {**os.environ, **self.env}

        try:
            self._process = await asyncio.create_subprocess_exec(
                *self.command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.cwd,
                env=env,
            )
        except OSError as e:
            raise ConnectionError(f"Failed to launch {self.command[0]}: {e}") from e

        self._reader_task = asyncio.create_task(self._read_stdout(), name="subprocess-reader")
        self._stderr_task = asyncio.create_task(self._read_stderr(), name="subprocess-stderr")
        logger.info(f"Launched subprocess: {' '.join(self.command)} (pid={self._process.pid})")

    def send(self, data: bytes) -> None:
        if self._closed or self._process is None or self._process.stdin is None:
            logger.debug("subprocess: transport closed, dropping frame")
            return
        try:
            self._process.stdin.write(data + NEWLINE)
        except (BrokenPipeError, ConnectionResetError, RuntimeError) as e:
            logger.warning(f"subprocess: stdin closed ({e})")
            self._mark_closed()

    async def close(self) -> None:
        """Terminate the child and mark the transport closed."""
        process = self._process
        for task in (self._reader_task, self._stderr_task):
            if task is not None and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task

        if process is not None and process.returncode is None:
            if process.stdin is not None:
                process.stdin.close()
            process.terminate()
            try:
                await asyncio.wait_for(process.wait(), timeout=self.terminate_timeout)
            except TimeoutError:
                process.kill()
                await process.wait()
            logger.info(f"Subprocess terminated (pid={process.pid})")

        self._mark_closed()

    async def _read_stdout(self) -> None:
        assert self._process is not None and self._process.stdout is not None
        stdout = self._process.stdout
        try:
            while True:
                line = await stdout.readline()
                if not line:
                    logger.info(f"subprocess: output closed (pid={self.pid})")
                    break
                line = normalize_line(line)
                if not line:
                    continue
                # Skip non-JSON lines (e.g., log messages that leaked to stdout)
                if not line.startswith(b"{"):
                    logger.debug(f"subprocess: skipping non-frame line: {line[:50]!r}")
                    continue
                self._deliver(line)
        finally:
            self._mark_closed()

    async def _read_stderr(self) -> None:
        assert self._process is not None and self._process.stderr is not None
        stderr = self._process.stderr
        while True:
            line = await stderr.readline()
            if not line:
                break
            logger.debug(f"[peer stderr] {line.decode('utf-8', errors='replace').rstrip()}")
