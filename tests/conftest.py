"""Pytest configuration and shared fixtures."""

import pytest

from webview_rpc.config import EndpointConfig
from webview_rpc.endpoint import Endpoint
from webview_rpc.transport import MemoryTransport


@pytest.fixture(scope="module")
def anyio_backend():
    """Configure anyio to use asyncio backend."""
    return "asyncio"


@pytest.fixture
def transports():
    """A connected (host, view) pair of in-memory transports."""
    return MemoryTransport.pair()


@pytest.fixture
def host(transports):
    """Host endpoint on the first transport."""
    return Endpoint(transports[0], config=EndpointConfig(name="host"))


@pytest.fixture
def view(transports):
    """View endpoint on the second transport."""
    return Endpoint(transports[1], config=EndpointConfig(name="view"))
