"""Development server: Starlette + uvicorn serving build artifacts.

Runs uvicorn on its own event loop in a background thread, serving one
artifact directory and one notification WebSocket on a single port. An
external caller (the build tool) invokes ``trigger_reload()`` whenever the
artifacts changed; connected loaders then re-fetch the manifest.

Endpoints:
    WS   /ws           → notification channel ("heartbeat" / "reload")
    GET  /{path}       → artifact file, Cache-Control: no-cache + ETag
"""

from __future__ import annotations

import asyncio
import logging
import signal
import socket
import sys
import threading
from collections.abc import Callable
from pathlib import Path
from typing import Any

import uvicorn
from starlette.applications import Starlette
from starlette.routing import Mount, WebSocketRoute
from starlette.websockets import WebSocket, WebSocketDisconnect

from devserve._types import (
    DEFAULT_HEARTBEAT_INTERVAL,
    DEFAULT_HOST,
    DEFAULT_PORT,
    DEFAULT_WS_PATH,
    HEARTBEAT_MESSAGE,
    RELOAD_MESSAGE,
    LifecycleEvent,
    ServerAlreadyRunningError,
    ServerConfig,
    ServerStartError,
    ServerState,
)
from devserve._utils import bind_socket, display_host, wait_until
from devserve.heartbeat import HeartbeatScheduler
from devserve.registry import ConnectionRegistry, NotificationChannel
from devserve.static import ArtifactFiles

logger = logging.getLogger(__name__)

_STARTUP_TIMEOUT = 5.0
_SHUTDOWN_TIMEOUT = 5.0

LifecycleListener = Callable[[LifecycleEvent, "DevelopmentServer"], Any]


class DevelopmentServer:
    """Serves artifact files and reload notifications from one directory.

    Manages the Starlette app, the connection registry and the heartbeat.
    Designed to run in a background thread via ``start()``.

    Args:
        directory: Directory whose files are served at ``/``.
        port: Port to bind to. ``0`` picks an ephemeral port.
        host: Interface to bind to (default: all interfaces).
        heartbeat_interval: Seconds between heartbeat broadcasts.
        ws_path: Path of the notification WebSocket.
    """

    def __init__(
        self,
        directory: str | Path,
        port: int = DEFAULT_PORT,
        *,
        host: str = DEFAULT_HOST,
        heartbeat_interval: float = DEFAULT_HEARTBEAT_INTERVAL,
        ws_path: str = DEFAULT_WS_PATH,
    ) -> None:
        self.config = ServerConfig(
            directory=Path(directory),
            port=port,
            host=host,
            heartbeat_interval=heartbeat_interval,
            ws_path=ws_path,
        )
        self.registry = ConnectionRegistry()
        self._lock = threading.Lock()
        self._listeners: list[LifecycleListener] = []
        self._listeners_lock = threading.Lock()
        self._socket: socket.socket | None = None
        self._server: uvicorn.Server | None = None
        self._thread: threading.Thread | None = None
        self._heartbeat: HeartbeatScheduler | None = None
        self._bound_port: int | None = None

        self._app = self._build_app()

    @classmethod
    def from_config(cls, config: ServerConfig) -> DevelopmentServer:
        return cls(
            config.directory,
            config.port,
            host=config.host,
            heartbeat_interval=config.heartbeat_interval,
            ws_path=config.ws_path,
        )

    def _build_app(self) -> Starlette:
        """Build the Starlette application: WebSocket first, files for the rest."""
        routes = [
            WebSocketRoute(self.config.ws_path, self._ws_endpoint),
            Mount("/", app=ArtifactFiles(directory=self.config.directory)),
        ]
        return Starlette(routes=routes)

    # --- WebSocket ---

    async def _ws_endpoint(self, ws: WebSocket) -> None:
        """Handle a notification channel for its whole lifetime."""
        await ws.accept()
        channel = NotificationChannel(ws)
        self.registry.register(channel)
        logger.debug(f"WebSocket client connected ({channel.channel_id})")
        try:
            await channel.serve()
        except WebSocketDisconnect:
            logger.debug("WebSocket client disconnected")
        except Exception:
            logger.debug("WebSocket connection closed", exc_info=True)
        finally:
            # Server shutdown may already have closed this channel.
            if channel.close():
                self.registry.unregister(channel)

    # --- Notifications ---

    def trigger_reload(self) -> int:
        """Tell every connected client to re-check the manifest.

        Returns:
            The number of channels the reload message was sent to.
        """
        count = self.registry.broadcast_text(RELOAD_MESSAGE)
        logger.info(f"Sent reload to {count} client(s)")
        self._notify(LifecycleEvent.RELOADED)
        return count

    def _send_heartbeat(self) -> int:
        return self.registry.broadcast_text(HEARTBEAT_MESSAGE)

    @property
    def connection_count(self) -> int:
        return len(self.registry)

    # --- Lifecycle listeners ---

    def add_listener(self, callback: LifecycleListener) -> None:
        """Register a callback for start, stop and reload events.

        Args:
            callback: Called with ``(LifecycleEvent, server)``.
        """
        with self._listeners_lock:
            self._listeners.append(callback)

    def remove_listener(self, callback: LifecycleListener) -> None:
        with self._listeners_lock:
            if callback in self._listeners:
                self._listeners.remove(callback)

    def _notify(self, event: LifecycleEvent) -> None:
        with self._listeners_lock:
            listeners = list(self._listeners)
        for callback in listeners:
            try:
                callback(event, self)
            except Exception:
                logger.exception(f"Lifecycle listener failed on {event.value}")

    # --- Lifecycle ---

    def start(self) -> None:
        """Bind the port, start serving in a background thread, start the heartbeat.

        Raises:
            ServerAlreadyRunningError: If the server is already running.
            OSError: If the port cannot be bound.
            ServerStartError: If the serving thread does not come up.
        """
        with self._lock:
            if self._server is not None:
                raise ServerAlreadyRunningError(
                    f"Development server already running on port {self._bound_port}"
                )

            sock = bind_socket(self.config.host, self.config.port)
            try:
                self._server, self._thread = self._serve_in_thread(sock)
            except BaseException:
                sock.close()
                raise
            self._socket = sock
            self._bound_port = sock.getsockname()[1]

            self._heartbeat = HeartbeatScheduler(
                self._send_heartbeat,
                interval=self.config.heartbeat_interval,
            )
            self._heartbeat.start()

        logger.info(
            f"Development server listening on {self.url} "
            f"(serving {self.config.directory})"
        )
        self._notify(LifecycleEvent.STARTED)

    def _serve_in_thread(
        self, sock: socket.socket
    ) -> tuple[uvicorn.Server, threading.Thread]:
        config = uvicorn.Config(
            app=self._app,
            lifespan="off",
            log_level="warning",
            access_log=False,
            timeout_graceful_shutdown=3,
        )
        server = uvicorn.Server(config)

        def _run() -> None:
            loop = asyncio.new_event_loop()
            asyncio.set_event_loop(loop)
            try:
                loop.run_until_complete(server.serve(sockets=[sock]))
            except Exception:
                logger.exception("Development server thread crashed")
            finally:
                loop.close()

        thread = threading.Thread(target=_run, name="DevelopmentServer", daemon=True)
        thread.start()

        wait_until(lambda: server.started or not thread.is_alive(), _STARTUP_TIMEOUT)
        if not server.started:
            server.should_exit = True
            thread.join(timeout=_SHUTDOWN_TIMEOUT)
            raise ServerStartError("Development server failed to start")
        return server, thread

    def stop(self) -> None:
        """Cancel the heartbeat, shut the server down and close the socket.

        Every step runs even if an earlier one fails; the first failure is
        re-raised once state has been reset and STOPPED has been announced.
        Stopping a stopped server is a no-op.
        """
        with self._lock:
            heartbeat, self._heartbeat = self._heartbeat, None
            server, self._server = self._server, None
            thread, self._thread = self._thread, None
            sock, self._socket = self._socket, None
            if heartbeat is None and server is None:
                return

            steps: list[Callable[[], Any]] = []
            if heartbeat is not None:
                steps.append(heartbeat.cancel)
            if server is not None and thread is not None:
                steps.append(lambda: self._shutdown_server(server, thread))
            if sock is not None:
                steps.append(sock.close)
            steps.append(self._close_channels)

            first_error: BaseException | None = None
            for step in steps:
                try:
                    step()
                except BaseException as exc:
                    if first_error is None:
                        first_error = exc
                    else:
                        logger.debug("Further teardown failure", exc_info=True)
            self._bound_port = None

        logger.info("Development server stopped")
        self._notify(LifecycleEvent.STOPPED)
        if first_error is not None:
            raise first_error

    def _close_channels(self) -> None:
        closed = self.registry.close_all()
        logger.debug(f"Closed {closed} remaining channel(s)")

    def _shutdown_server(self, server: uvicorn.Server, thread: threading.Thread) -> None:
        server.should_exit = True
        thread.join(timeout=_SHUTDOWN_TIMEOUT)
        if thread.is_alive():
            logger.warning("Development server did not shut down gracefully, forcing exit")
            server.force_exit = True
            thread.join(timeout=_SHUTDOWN_TIMEOUT)

    @property
    def is_running(self) -> bool:
        """True between a successful start() and the matching stop()."""
        return self._server is not None

    @property
    def state(self) -> ServerState:
        return ServerState.RUNNING if self.is_running else ServerState.STOPPED

    @property
    def port(self) -> int:
        """The bound port while running, else the configured port."""
        return self._bound_port if self._bound_port is not None else self.config.port

    @property
    def url(self) -> str:
        return f"http://{display_host(self.config.host)}:{self.port}"

    def __enter__(self) -> DevelopmentServer:
        self.start()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.stop()


def _run_standalone(config: ServerConfig) -> None:
    """Run a development server in the foreground until interrupted.

    SIGINT/SIGTERM stop the server. On POSIX, SIGHUP broadcasts a reload,
    so a build step can signal changed artifacts with ``kill -HUP <pid>``.
    """
    server = DevelopmentServer.from_config(config)
    stop_event = threading.Event()
    reload_requested = threading.Event()

    def _shutdown(signum: int, frame: Any) -> None:
        logger.debug(f"Received signal {signum}, shutting down...")
        stop_event.set()

    def _request_reload(signum: int, frame: Any) -> None:
        reload_requested.set()

    signal.signal(signal.SIGINT, _shutdown)
    if sys.platform == "win32":
        signal.signal(signal.SIGBREAK, _shutdown)  # type: ignore[attr-defined]
    else:
        signal.signal(signal.SIGTERM, _shutdown)
        signal.signal(signal.SIGHUP, _request_reload)

    server.start()
    try:
        while not stop_event.wait(0.2):
            if reload_requested.is_set():
                reload_requested.clear()
                server.trigger_reload()
    finally:
        server.stop()
