"""Webview RPC CLI.

Default mode serves the UI service over stdio (the host runs as a
subprocess of the view). Use --http to serve WebSocket connections.

Usage:
    webview-rpc                           # Stdio mode (default)
    webview-rpc --http                    # HTTP/WebSocket server mode
    webview-rpc --http --port 8080        # HTTP with custom port
    webview-rpc --config rpc.yaml         # Load endpoint config from YAML

    webview-rpc health                    # Check HTTP server health
    webview-rpc methods                   # List the UI service methods
    webview-rpc call cline.UiService scrollToSettings '{"value": "models"}'
    webview-rpc subscribe cline.UiService subscribeToChatButtonClicked -n 1
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
from typing import Any

import click
import httpx

from .config import EndpointConfig, load_config
from .errors import RpcError

DEFAULT_URL = "http://localhost:4096"
DEFAULT_WS_URL = "ws://localhost:4096/ws"


def _setup_logging(verbose: int) -> None:
    # stdout carries frames in stdio mode, so logs always go to stderr
    level = logging.WARNING
    if verbose == 1:
        level = logging.INFO
    elif verbose > 1:
        level = logging.DEBUG
    logging.basicConfig(
        stream=sys.stderr,
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _load_config(config_path: str | None) -> EndpointConfig:
    try:
        return load_config(config_path)
    except (OSError, ValueError) as e:
        raise click.UsageError(f"Invalid config: {e}") from e


def _parse_payload(payload: str | None) -> Any:
    if payload is None:
        return None
    try:
        return json.loads(payload)
    except ValueError as e:
        raise click.BadParameter(f"Payload must be JSON: {e}", param_hint="PAYLOAD") from e


@click.group(invoke_without_command=True)
@click.option("--http", "http_mode", is_flag=True, help="Run as HTTP server instead of stdio")
@click.option("--host", default="127.0.0.1", help="Host to bind to (HTTP mode)")
@click.option("--port", default=4096, help="Port to bind to (HTTP mode)")
@click.option("--reload", is_flag=True, help="Enable auto-reload for development (HTTP mode)")
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False),
    help="Path to YAML file with endpoint configuration",
)
@click.option("-v", "--verbose", count=True, help="Increase log verbosity (-v, -vv)")
@click.pass_context
def main(
    ctx: click.Context,
    http_mode: bool,
    host: str,
    port: int,
    reload: bool,
    config_path: str | None,
    verbose: int,
) -> None:
    """Webview RPC - bidirectional RPC between an editor host and its webviews.

    By default, serves the UI service over stdio.
    Use --http to serve WebSocket connections instead.
    """
    _setup_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path

    # If a subcommand is invoked, let it handle everything
    if ctx.invoked_subcommand is not None:
        return

    if reload and not http_mode:
        raise click.UsageError(
            "--reload requires --http mode. "
            "Auto-reload is only available when running as an HTTP server."
        )

    if (host != "127.0.0.1" or port != 4096) and not http_mode:
        raise click.UsageError(
            "--host and --port require --http mode. "
            "These options are only available when running as an HTTP server."
        )

    if http_mode:
        _run_http_server(host, port, reload, config_path)
    else:
        _run_stdio_server(_load_config(config_path))


def _run_http_server(host: str, port: int, reload: bool, config_path: str | None) -> None:
    """Run HTTP server mode."""
    import uvicorn

    from .app import CONFIG_PATH_ENV

    # Pass the config path via environment variable for the app factory
    if config_path:
        os.environ[CONFIG_PATH_ENV] = os.path.abspath(config_path)
    else:
        os.environ.pop(CONFIG_PATH_ENV, None)

    click.echo(f"Starting webview RPC server on http://{host}:{port}", err=True)
    click.echo(f"  WebSocket endpoint: ws://{host}:{port}/ws", err=True)
    click.echo("Press Ctrl+C to stop", err=True)

    uvicorn.run(
        "webview_rpc.app:create_app",
        factory=True,
        host=host,
        port=port,
        reload=reload,
    )


def _run_stdio_server(config: EndpointConfig) -> None:
    """Run stdio server mode (default)."""
    from .endpoint import Endpoint
    from .services.ui import UiController
    from .transport import StdioTransport

    click.echo("Starting webview RPC host in stdio mode", err=True)

    async def serve() -> None:
        transport = StdioTransport()
        endpoint = Endpoint(transport, config=config, name="host")
        UiController().register(endpoint)
        await transport.start()
        try:
            await transport.wait_closed()
        finally:
            endpoint.dispose()
            await transport.close()

    try:
        asyncio.run(serve())
    except KeyboardInterrupt:
        click.echo("\nShutting down", err=True)


# =============================================================================
# Client Commands
# =============================================================================


@main.command()
@click.option("--url", default=DEFAULT_URL, help="Server URL")
def health(url: str) -> None:
    """Check server health."""

    async def check() -> None:
        try:
            async with httpx.AsyncClient() as client:
                response = await client.get(f"{url}/health")
                if response.status_code == 200:
                    data = response.json()
                    click.echo(f"Server is healthy: {data}")
                else:
                    click.echo(f"Server returned {response.status_code}", err=True)
                    sys.exit(1)
        except httpx.ConnectError:
            click.echo(f"Cannot connect to server at {url}", err=True)
            sys.exit(1)

    asyncio.run(check())


@main.command()
@click.option("--json", "output_json", is_flag=True, help="Output as JSON")
def methods(output_json: bool) -> None:
    """List the methods of the UI service."""
    from .services.ui import UI_SERVICE

    if output_json:
        data = [
            {
                "service": UI_SERVICE.name,
                "method": method.name,
                "streaming": method.streaming,
                "description": method.description,
            }
            for method in UI_SERVICE
        ]
        click.echo(json.dumps(data, indent=2))
        return

    click.echo(f"{UI_SERVICE.name}")
    for method in UI_SERVICE:
        kind = "stream" if method.streaming else "unary"
        click.echo(f"  {method.name:<34} {kind:<7} {method.description}")


@main.command()
@click.argument("service")
@click.argument("method")
@click.argument("payload", required=False)
@click.option("--url", default=DEFAULT_WS_URL, help="Server WebSocket URL")
@click.option("--timeout", type=float, default=None, help="Call timeout in seconds")
@click.pass_context
def call(
    ctx: click.Context,
    service: str,
    method: str,
    payload: str | None,
    url: str,
    timeout: float | None,
) -> None:
    """Make one unary call and print the result as JSON.

    Examples:

        webview-rpc call cline.UiService scrollToSettings '{"value": "models"}'

        webview-rpc call cline.UiService onDidShowAnnouncement
    """
    config = _load_config(ctx.obj["config_path"])
    request = _parse_payload(payload)

    async def run() -> Any:
        from .endpoint import DEFAULT, Endpoint
        from .transport.websocket import WebSocketClientTransport

        transport = WebSocketClientTransport(url)
        await transport.start()
        endpoint = Endpoint(transport, config=config, name="cli")
        try:
            return await endpoint.call(
                service, method, request, timeout=DEFAULT if timeout is None else timeout
            )
        finally:
            endpoint.dispose()
            await transport.close()

    try:
        result = asyncio.run(run())
    except ConnectionError as e:
        click.echo(str(e), err=True)
        sys.exit(1)
    except RpcError as e:
        click.echo(f"Call failed [{e.code}]: {e.message}", err=True)
        sys.exit(1)

    click.echo(json.dumps(result, indent=2, ensure_ascii=False))


@main.command()
@click.argument("service")
@click.argument("method")
@click.argument("payload", required=False)
@click.option("--url", default=DEFAULT_WS_URL, help="Server WebSocket URL")
@click.option("--count", "-n", type=int, default=None, help="Stop after N events")
@click.pass_context
def subscribe(
    ctx: click.Context,
    service: str,
    method: str,
    payload: str | None,
    url: str,
    count: int | None,
) -> None:
    """Subscribe to a stream and print each event as one JSON line.

    Examples:

        webview-rpc subscribe cline.UiService subscribeToAddToInput

        webview-rpc subscribe cline.UiService subscribeToMcpButtonClicked \\
            '{"providerType": 1}' -n 3
    """
    config = _load_config(ctx.obj["config_path"])
    request = _parse_payload(payload)

    async def run() -> None:
        from .endpoint import Endpoint
        from .transport.websocket import WebSocketClientTransport

        transport = WebSocketClientTransport(url)
        await transport.start()
        endpoint = Endpoint(transport, config=config, name="cli")
        received = 0
        try:
            async with endpoint.subscribe(service, method, request) as events:
                async for event in events:
                    click.echo(json.dumps(event, ensure_ascii=False))
                    received += 1
                    if count is not None and received >= count:
                        break
        finally:
            endpoint.dispose()
            await transport.close()

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        click.echo("\nStopped", err=True)
    except ConnectionError as e:
        click.echo(str(e), err=True)
        sys.exit(1)
    except RpcError as e:
        click.echo(f"Subscription failed [{e.code}]: {e.message}", err=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
