"""Standalone devserve CLI.

Usage:
    devserve serve DIRECTORY [--port PORT] [--host HOST]
                             [--heartbeat-interval SECONDS] [--ws-path PATH]
                             [--verbose]
"""

from __future__ import annotations

import errno
import logging
import os
from pathlib import Path

import typer
from rich.console import Console

from devserve._types import (
    DEFAULT_HEARTBEAT_INTERVAL,
    DEFAULT_HOST,
    DEFAULT_PORT,
    DEFAULT_WS_PATH,
    DevServerError,
    ServerConfig,
)

app = typer.Typer(
    name="devserve",
    help="Serve build artifacts and push reload notifications to loaders.",
    no_args_is_help=True,
)
console = Console()


def _info(msg: str) -> None:
    console.print(f"[dim]>[/dim] {msg}")


def _success(msg: str) -> None:
    console.print(f"[green]✓[/green] {msg}")


def _error(msg: str) -> None:
    console.print(f"[red]✗[/red] {msg}")


@app.callback()
def main() -> None:
    """Serve build artifacts and push reload notifications to loaders."""


@app.command()
def serve(
    directory: Path = typer.Argument(
        ..., help="Directory containing the manifest and modules.", file_okay=False
    ),
    port: int = typer.Option(
        DEFAULT_PORT, "--port", "-p", envvar="DEVSERVE_PORT", help="Port to bind to."
    ),
    host: str = typer.Option(
        DEFAULT_HOST, "--host", envvar="DEVSERVE_HOST", help="Interface to bind to."
    ),
    heartbeat_interval: float = typer.Option(
        DEFAULT_HEARTBEAT_INTERVAL,
        "--heartbeat-interval",
        envvar="DEVSERVE_HEARTBEAT_INTERVAL",
        help="Seconds between heartbeat messages.",
    ),
    ws_path: str = typer.Option(
        DEFAULT_WS_PATH,
        "--ws-path",
        envvar="DEVSERVE_WS_PATH",
        help="Path of the notification WebSocket.",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Serve DIRECTORY in the foreground until interrupted.

    Send SIGHUP to the process to notify connected clients of a reload.
    """
    from devserve.server import _run_standalone

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        config = ServerConfig(
            directory=directory,
            port=port,
            host=host,
            heartbeat_interval=heartbeat_interval,
            ws_path=ws_path,
        )
    except ValueError as e:
        _error(str(e))
        raise typer.Exit(2)

    if not directory.exists():
        _info(f"Directory does not exist yet, serving 404s until it does: {directory}")

    _info(f"Serving {directory} on port {port} (pid={os.getpid()})...")
    try:
        _run_standalone(config)
    except DevServerError as e:
        _error(f"Could not start server: {e}")
        raise typer.Exit(1)
    except OSError as e:
        if e.errno == errno.EADDRINUSE:
            _error(f"Port {port} is already in use.")
        else:
            _error(f"Could not start server: {e}")
        raise typer.Exit(1)
    _success("Server stopped.")


if __name__ == "__main__":
    app()
