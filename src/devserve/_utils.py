"""Shared helpers for the devserve package: socket binding and polling."""

from __future__ import annotations

import socket
import sys
import time
from collections.abc import Callable

# ---------------------------------------------------------------------------
# Socket binding
# ---------------------------------------------------------------------------


def bind_socket(host: str, port: int, backlog: int = 128) -> socket.socket:
    """Bind and listen on ``host:port``, returning the listening socket.

    Binding happens in the caller's thread so that an unavailable port is
    reported as an ``OSError`` from here rather than from a server thread.
    """
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    sock = socket.socket(family, socket.SOCK_STREAM)
    try:
        # On Windows SO_REUSEADDR lets a second process steal the port.
        if sys.platform != "win32":
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
        sock.listen(backlog)
    except OSError:
        sock.close()
        raise
    return sock


def display_host(host: str) -> str:
    """Return a host name clients can use to reach a server bound to ``host``."""
    if host in ("", "0.0.0.0", "::"):
        return "localhost"
    if ":" in host:
        return f"[{host}]"
    return host


# ---------------------------------------------------------------------------
# Polling
# ---------------------------------------------------------------------------


def wait_until(
    predicate: Callable[[], bool],
    timeout: float,
    interval: float = 0.01,
) -> bool:
    """Poll ``predicate`` until it returns True or ``timeout`` elapses."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()
