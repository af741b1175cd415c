"""Entry point for running relay-proxy directly."""

import asyncio
import dataclasses

import logfire
import typer
import uvicorn

from .app import create_app
from .config import Settings
from .gateway import Gateway
from .telemetry import configure

cli = typer.Typer(help="HTTP relay, forward proxy and API provider gateway.", no_args_is_help=True)


@cli.command()
def serve(
    host: str = typer.Option(None, "--host", "-h", help="Interface to listen on (default $HOST or 0.0.0.0)"),
    port: int = typer.Option(None, "--port", "-p", help="Port to listen on (default $PORT or 10000)"),
    connect: bool = typer.Option(True, "--connect/--no-connect", help="Accept CONNECT tunnels on the same port"),
):
    """Run the proxy server."""
    settings = Settings.from_env()
    if host is not None:
        settings = dataclasses.replace(settings, host=host)
    if port is not None:
        settings = dataclasses.replace(settings, port=port)

    configure(settings)
    app = create_app(settings)

    logfire.info("Proxy server running on port {port}", port=settings.port)
    logfire.info("  Health: http://localhost:{port}/health", port=settings.port)
    logfire.info("  Proxy:  http://localhost:{port}{prefix}?url=TARGET", port=settings.port, prefix=settings.relay_prefix)
    if settings.auth_enabled:
        logfire.info("  Auth:   API key required (X-API-Key header)")
    else:
        logfire.info("  Auth:   OPEN (set API_KEY env to protect)")

    if connect:
        asyncio.run(Gateway(settings, app).serve())
    else:
        uvicorn.run(app, host=settings.host, port=settings.port, http="h11", log_config=None)


@cli.command()
def routes():
    """Print the provider route table."""
    settings = Settings.from_env()
    for route in settings.providers:
        typer.echo(f"{route.prefix:<16} {route.origin}")


def main():
    """Run the relay-proxy CLI."""
    cli()


if __name__ == "__main__":
    main()
