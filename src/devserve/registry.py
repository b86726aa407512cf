"""Connection registry for live notification channels.

Each open WebSocket is wrapped in a NotificationChannel. The registry keeps
the set of open channels and fans text messages out to them. Membership is
guarded by a lock that is never held while a message is being sent, so a
slow client cannot block connects, disconnects or other broadcasts.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import uuid

from starlette.websockets import WebSocket, WebSocketState

from devserve._types import ChannelClosedError

logger = logging.getLogger(__name__)


class NotificationChannel:
    """One open notification WebSocket.

    Must be created on the event loop that owns the WebSocket. ``send_text``
    may be called from any thread: messages are queued onto the loop and
    written by a single writer task, so sends to one channel never overlap
    and leave in the order they were issued.

    Args:
        websocket: The accepted Starlette WebSocket (the transport handle).
        loop: Event loop serving the WebSocket. Defaults to the running loop.
    """

    def __init__(
        self,
        websocket: WebSocket,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> None:
        self.channel_id = uuid.uuid4().hex[:12]
        self.websocket: WebSocket | None = websocket
        self._loop = loop or asyncio.get_running_loop()
        self._outbox: asyncio.Queue[str] = asyncio.Queue()
        self._writable = True
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        state = "open" if self.websocket is not None else "closed"
        return f"NotificationChannel({self.channel_id}, {state})"

    @property
    def is_open(self) -> bool:
        return self.websocket is not None

    def send_text(self, message: str) -> None:
        """Queue a text message for delivery. Thread-safe.

        Raises:
            ChannelClosedError: If the channel has already been closed.
            RuntimeError: If the owning event loop is closed.
        """
        with self._lock:
            if self.websocket is None:
                raise ChannelClosedError(f"Channel {self.channel_id} is closed")
            if not self._writable:
                # Writer gave up on a dead peer; drop until the disconnect lands.
                return
            self._loop.call_soon_threadsafe(self._outbox.put_nowait, message)

    def close(self) -> bool:
        """Clear the transport handle.

        Returns True only for the call that actually closed the channel, so
        callers racing to clean up can tell which one should unregister it.
        """
        with self._lock:
            if self.websocket is None:
                return False
            self.websocket = None
            return True

    async def serve(self) -> None:
        """Pump the channel until the peer disconnects.

        Inbound messages are read and discarded; the channel only carries
        server-originated traffic.
        """
        websocket = self.websocket
        if websocket is None:
            return
        writer = asyncio.create_task(self._write_outbox(websocket))
        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
        finally:
            writer.cancel()
            try:
                await writer
            except asyncio.CancelledError:
                pass

    async def _write_outbox(self, websocket: WebSocket) -> None:
        while True:
            message = await self._outbox.get()
            if websocket.application_state != WebSocketState.CONNECTED:
                break
            try:
                await websocket.send_text(message)
            except Exception:
                logger.debug(f"Send failed on channel {self.channel_id}", exc_info=True)
                break
        self._stop_writing()

    def _stop_writing(self) -> None:
        with self._lock:
            self._writable = False
        while not self._outbox.empty():
            self._outbox.get_nowait()


class ConnectionRegistry:
    """Thread-safe set of open notification channels."""

    def __init__(self) -> None:
        self._channels: set[NotificationChannel] = set()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._channels)

    def __contains__(self, channel: object) -> bool:
        with self._lock:
            return channel in self._channels

    def register(self, channel: NotificationChannel) -> None:
        with self._lock:
            self._channels.add(channel)
        logger.debug(f"Registered channel {channel.channel_id}")

    def unregister(self, channel: NotificationChannel) -> bool:
        """Remove a channel. Returns False if it was not registered."""
        with self._lock:
            if channel not in self._channels:
                return False
            self._channels.discard(channel)
        logger.debug(f"Unregistered channel {channel.channel_id}")
        return True

    def snapshot(self) -> list[NotificationChannel]:
        """Return the channels registered right now."""
        with self._lock:
            return list(self._channels)

    def broadcast_text(self, message: str) -> int:
        """Send ``message`` to every open channel.

        Channels without a transport handle are skipped. A failure on one
        channel is logged and does not affect the others; the failing
        channel stays registered until its own close signal removes it.

        Returns:
            The number of channels the message was attempted on.
        """
        attempted = 0
        for channel in self.snapshot():
            if channel.websocket is None:
                continue
            attempted += 1
            try:
                channel.send_text(message)
            except Exception:
                logger.debug(
                    f"Could not send {message!r} to channel {channel.channel_id}",
                    exc_info=True,
                )
        return attempted

    def close_all(self) -> int:
        """Close and unregister every channel. Returns how many were closed."""
        closed = 0
        for channel in self.snapshot():
            if channel.close():
                self.unregister(channel)
                closed += 1
        return closed
