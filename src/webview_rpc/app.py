"""Webview RPC server application.

Creates the Starlette ASGI application.

Routes:
- /health - Health check
- /ws - WebSocket carrier; one Endpoint per connection

Every connection gets its own Endpoint, configured by the `setup`
callable and disposed when the client disconnects. The default setup
serves the UI service from one UiController shared by all connections,
so an event published on `app.state.hub` reaches every subscribed view.
"""

from __future__ import annotations

import itertools
import logging
import os
from collections.abc import Callable

from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route, WebSocketRoute
from starlette.websockets import WebSocket

from .config import EndpointConfig, load_config
from .endpoint import Endpoint
from .hub import EventHub
from .services.ui import UiController
from .transport.websocket import WebSocketTransport

logger = logging.getLogger(__name__)

# Path of a YAML config file for the uvicorn factory entry point
CONFIG_PATH_ENV = "WEBVIEW_RPC_CONFIG"

EndpointSetup = Callable[[Endpoint], None]


def create_app(
    setup: EndpointSetup | None = None,
    *,
    config: EndpointConfig | None = None,
) -> Starlette:
    """Create the webview RPC application.

    Args:
        setup: Called with each new connection's Endpoint to register
            handlers (default: serve the UI service)
        config: Endpoint configuration (default: load_config() with the
            file named by WEBVIEW_RPC_CONFIG, if set)

    Returns:
        Configured Starlette application
    """
    if config is None:
        config = load_config(os.environ.get(CONFIG_PATH_ENV) or None)

    hub = EventHub()
    controller = UiController(hub)
    if setup is None:
        setup = controller.register

    connections: set[Endpoint] = set()
    counter = itertools.count(1)

    async def health_check(request: Request) -> JSONResponse:
        """Health check endpoint."""
        return JSONResponse({"status": "ok", "connections": len(connections)})

    async def websocket_endpoint(websocket: WebSocket) -> None:
        """One RPC channel per WebSocket connection."""
        transport = WebSocketTransport(websocket)
        await transport.start()

        endpoint = Endpoint(transport, config=config, name=f"{config.name}-ws{next(counter)}")
        try:
            setup(endpoint)
        except Exception:
            logger.exception(f"[{endpoint.name}] Endpoint setup failed, closing connection")
            endpoint.dispose()
            await transport.close()
            return

        connections.add(endpoint)
        logger.info(f"[{endpoint.name}] Connected ({len(connections)} active)")
        try:
            await transport.run()
        finally:
            connections.discard(endpoint)
            endpoint.dispose()
            logger.info(f"[{endpoint.name}] Disconnected")

    routes = [
        Route("/health", health_check, methods=["GET"]),
        WebSocketRoute("/ws", websocket_endpoint),
    ]

    # CORS middleware for local development
    middleware = [
        Middleware(
            CORSMiddleware,
            allow_origins=["http://localhost:*", "http://127.0.0.1:*"],
            allow_methods=["*"],
            allow_headers=["*"],
        ),
    ]

    app = Starlette(routes=routes, middleware=middleware)
    app.state.config = config
    app.state.hub = hub
    app.state.controller = controller
    app.state.connections = connections
    return app
