"""devserve: development server for hot-reloadable build artifacts.

Serves a manifest and its modules from a build output directory and pushes
"reload" notifications to connected loaders over a WebSocket, so they can
pick up new code without polling.

Quick Start:
    import devserve

    devserve.start("build/artifacts", port=8080)
    ...  # rebuild
    devserve.trigger_reload()
    devserve.stop()
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any

from devserve._types import (
    DEFAULT_PORT,
    HEARTBEAT_MESSAGE,
    RELOAD_MESSAGE,
    ChannelClosedError,
    Deployment,
    DevServerError,
    LifecycleEvent,
    ServerAlreadyRunningError,
    ServerConfig,
    ServerStartError,
    ServerState,
)
from devserve.server import DevelopmentServer

__all__ = [
    "HEARTBEAT_MESSAGE",
    "RELOAD_MESSAGE",
    "ChannelClosedError",
    "Deployment",
    "DevServerError",
    "DevelopmentServer",
    "LifecycleEvent",
    "ServerAlreadyRunningError",
    "ServerConfig",
    "ServerStartError",
    "ServerState",
    "is_running",
    "server_status",
    "start",
    "stop",
    "trigger_reload",
]

logger = logging.getLogger(__name__)

# Module-level state (thread-safe via _lock)
_lock = threading.Lock()
_server: DevelopmentServer | None = None


def start(
    directory: str | Path,
    port: int = DEFAULT_PORT,
    **options: Any,
) -> DevelopmentServer:
    """Start the process-wide development server.

    Args:
        directory: Artifact directory to serve.
        port: Port to bind (``0`` for an ephemeral port).
        **options: Passed to :class:`DevelopmentServer` (host,
            heartbeat_interval, ws_path).

    Raises:
        ServerAlreadyRunningError: If a server started here is still running.
        OSError: If the port cannot be bound.
    """
    global _server

    with _lock:
        if _server is not None and _server.is_running:
            raise ServerAlreadyRunningError(
                f"Development server already running at {_server.url}"
            )
        server = DevelopmentServer(directory, port, **options)
        server.start()
        _server = server
    return server


def stop() -> None:
    """Stop the process-wide development server. No-op if none is running."""
    global _server

    with _lock:
        server, _server = _server, None
    if server is not None:
        server.stop()


def is_running() -> bool:
    with _lock:
        return _server is not None and _server.is_running


def trigger_reload() -> int:
    """Send "reload" to every connected client. Returns 0 if no server runs."""
    with _lock:
        server = _server
    if server is None:
        logger.debug("trigger_reload() called with no running server")
        return 0
    return server.trigger_reload()


def server_status() -> dict[str, Any] | None:
    """Return info about the running server, or None."""
    with _lock:
        server = _server
    if server is None or not server.is_running:
        return None
    return {
        "url": server.url,
        "port": server.port,
        "host": server.config.host,
        "directory": str(server.config.directory),
        "ws_path": server.config.ws_path,
        "connections": server.connection_count,
    }
