"""Periodic keepalive for notification channels.

Idle WebSockets get dropped by proxies, emulators and mobile network stacks.
The heartbeat fires immediately on start and then at a fixed interval,
broadcasting a message clients are expected to ignore.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Any

from devserve._types import DEFAULT_HEARTBEAT_INTERVAL

logger = logging.getLogger(__name__)


class HeartbeatScheduler:
    """Run ``action`` on a daemon thread every ``interval`` seconds.

    Cancellation waits for an in-flight firing to finish; once ``cancel()``
    returns no further firing starts. An exception from one firing is logged
    and does not stop the schedule.

    Args:
        action: Callable invoked on each firing.
        interval: Seconds between firings. The first firing has no delay.
        name: Thread name.
    """

    def __init__(
        self,
        action: Callable[[], Any],
        interval: float = DEFAULT_HEARTBEAT_INTERVAL,
        name: str = "WebsocketHeartbeat",
    ) -> None:
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval}")
        self.action = action
        self.interval = interval
        self.name = name
        self.firings = 0
        self._cancelled = threading.Event()
        self._firing_lock = threading.Lock()
        self._thread: threading.Thread | None = None

    @property
    def is_running(self) -> bool:
        return (
            self._thread is not None
            and self._thread.is_alive()
            and not self._cancelled.is_set()
        )

    def start(self) -> None:
        if self._thread is not None:
            raise RuntimeError("Heartbeat already started")
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()

    def cancel(self, timeout: float = 5.0) -> None:
        """Stop firing. Safe to call more than once, or before start()."""
        self._cancelled.set()
        # Wait out a firing that is already running.
        with self._firing_lock:
            pass
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout)

    def _run(self) -> None:
        while not self._cancelled.is_set():
            with self._firing_lock:
                if self._cancelled.is_set():
                    break
                self._fire()
            if self._cancelled.wait(self.interval):
                break

    def _fire(self) -> None:
        self.firings += 1
        try:
            self.action()
        except Exception:
            logger.exception("Heartbeat firing failed")
