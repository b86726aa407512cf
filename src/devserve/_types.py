"""Type definitions for the devserve development server.

Defines the configuration object, runtime state, lifecycle events,
channel message payloads and the exception hierarchy shared by the
registry, the heartbeat and the server.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Protocol, runtime_checkable

HEARTBEAT_MESSAGE = "heartbeat"
RELOAD_MESSAGE = "reload"

DEFAULT_PORT = 8080
DEFAULT_HOST = "0.0.0.0"
DEFAULT_HEARTBEAT_INTERVAL = 10.0
DEFAULT_WS_PATH = "/ws"


class ServerState(str, Enum):
    """Runtime state of a development server."""

    STOPPED = "stopped"
    RUNNING = "running"


class LifecycleEvent(str, Enum):
    """Events delivered to lifecycle listeners."""

    STARTED = "started"
    STOPPED = "stopped"
    RELOADED = "reloaded"


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class DevServerError(Exception):
    """Base class for development server errors."""


class ServerAlreadyRunningError(DevServerError):
    """Raised when start() is called on a server that is already running."""


class ServerStartError(DevServerError):
    """Raised when the serving thread fails to come up after binding."""


class ChannelClosedError(DevServerError):
    """Raised when sending on a channel whose transport is gone."""


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ServerConfig:
    """Settings for one development server instance.

    Attributes:
        directory: Root directory whose files are served.
        port: TCP port to listen on. ``0`` binds an ephemeral port.
        host: Interface to bind. Defaults to all interfaces so that
            loaders on a device or emulator can reach the server.
        heartbeat_interval: Seconds between keepalive broadcasts.
        ws_path: Path of the notification WebSocket.
    """

    directory: Path
    port: int = DEFAULT_PORT
    host: str = DEFAULT_HOST
    heartbeat_interval: float = DEFAULT_HEARTBEAT_INTERVAL
    ws_path: str = DEFAULT_WS_PATH

    def __post_init__(self) -> None:
        object.__setattr__(self, "directory", Path(self.directory))
        if not 0 <= self.port <= 65535:
            raise ValueError(f"port must be between 0 and 65535, got {self.port}")
        if self.heartbeat_interval <= 0:
            raise ValueError(
                f"heartbeat_interval must be positive, got {self.heartbeat_interval}"
            )
        if not self.ws_path.startswith("/") or self.ws_path == "/":
            raise ValueError(f"ws_path must be a non-root absolute path, got {self.ws_path!r}")


@runtime_checkable
class Deployment(Protocol):
    """Minimal lifecycle surface a deployment supervisor drives."""

    def start(self) -> None: ...

    def stop(self) -> None: ...

    @property
    def is_running(self) -> bool: ...
