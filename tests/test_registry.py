"""Tests for devserve.registry.

Tests cover:
- register / unregister, including duplicate and absent removal
- broadcast_text counting, skipping closed channels, isolating failures
- close_all closing each channel exactly once
- NotificationChannel close guard, cross-thread queuing and ordered writes
- A failed write stops queueing for that channel
- Concurrent registration during broadcast
"""

import asyncio
import threading

import pytest
from starlette.websockets import WebSocketState

from devserve._types import ChannelClosedError
from devserve.registry import ConnectionRegistry, NotificationChannel


class FakeChannel:
    """Stands in for NotificationChannel: records sends, optionally fails."""

    def __init__(self, name: str, fail: bool = False) -> None:
        self.channel_id = name
        self.websocket = object()
        self.sent: list[str] = []
        self.fail = fail

    def send_text(self, message: str) -> None:
        if self.fail:
            raise ConnectionResetError("peer went away")
        self.sent.append(message)

    def close(self) -> bool:
        if self.websocket is None:
            return False
        self.websocket = None
        return True


class FakeWebSocket:
    """Minimal Starlette WebSocket double for NotificationChannel.serve()."""

    def __init__(self) -> None:
        self.application_state = WebSocketState.CONNECTED
        self.incoming: asyncio.Queue = asyncio.Queue()
        self.sent: list[str] = []

    async def receive(self):
        return await self.incoming.get()

    async def send_text(self, data: str) -> None:
        self.sent.append(data)


@pytest.fixture
def registry():
    return ConnectionRegistry()


class TestMembership:
    def test_register_adds(self, registry):
        channel = FakeChannel("a")
        registry.register(channel)
        assert channel in registry
        assert len(registry) == 1

    def test_unregister_removes(self, registry):
        channel = FakeChannel("a")
        registry.register(channel)
        assert registry.unregister(channel) is True
        assert channel not in registry
        assert len(registry) == 0

    def test_unregister_absent_is_noop(self, registry):
        assert registry.unregister(FakeChannel("ghost")) is False

    def test_double_unregister_is_noop(self, registry):
        channel = FakeChannel("a")
        registry.register(channel)
        assert registry.unregister(channel) is True
        assert registry.unregister(channel) is False

    def test_snapshot_is_a_copy(self, registry):
        channel = FakeChannel("a")
        registry.register(channel)
        snapshot = registry.snapshot()
        registry.unregister(channel)
        assert snapshot == [channel]
        assert registry.snapshot() == []


class TestBroadcast:
    def test_empty_registry_returns_zero(self, registry):
        assert registry.broadcast_text("reload") == 0

    def test_sends_to_every_channel(self, registry):
        channels = [FakeChannel(str(i)) for i in range(3)]
        for channel in channels:
            registry.register(channel)
        assert registry.broadcast_text("reload") == 3
        assert all(channel.sent == ["reload"] for channel in channels)

    def test_skips_channels_without_handle(self, registry):
        open_channel = FakeChannel("open")
        closed_channel = FakeChannel("closed")
        closed_channel.websocket = None
        registry.register(open_channel)
        registry.register(closed_channel)

        assert registry.broadcast_text("heartbeat") == 1
        assert open_channel.sent == ["heartbeat"]
        assert closed_channel.sent == []

    def test_failure_is_isolated(self, registry):
        good = [FakeChannel("a"), FakeChannel("b")]
        bad = FakeChannel("bad", fail=True)
        for channel in [*good, bad]:
            registry.register(channel)

        assert registry.broadcast_text("reload") == 3
        assert all(channel.sent == ["reload"] for channel in good)

    def test_failed_channel_stays_registered(self, registry):
        bad = FakeChannel("bad", fail=True)
        registry.register(bad)
        registry.broadcast_text("reload")
        assert bad in registry

    def test_unregistered_channel_gets_nothing(self, registry):
        channel = FakeChannel("a")
        registry.register(channel)
        registry.unregister(channel)
        registry.broadcast_text("reload")
        assert channel.sent == []

    def test_register_during_broadcast_does_not_deadlock(self, registry):
        late = FakeChannel("late")

        class RegisteringChannel(FakeChannel):
            def send_text(self, message: str) -> None:
                # Runs while the broadcast loop is sending.
                registry.register(late)
                super().send_text(message)

        registry.register(RegisteringChannel("first"))
        assert registry.broadcast_text("reload") == 1
        assert late in registry

    def test_concurrent_mutation(self, registry):
        stop = threading.Event()

        def churn() -> None:
            while not stop.is_set():
                channel = FakeChannel("churn")
                registry.register(channel)
                registry.unregister(channel)

        threads = [threading.Thread(target=churn) for _ in range(4)]
        for t in threads:
            t.start()
        try:
            stable = FakeChannel("stable")
            registry.register(stable)
            for _ in range(200):
                registry.broadcast_text("heartbeat")
        finally:
            stop.set()
            for t in threads:
                t.join()
        assert stable.sent == ["heartbeat"] * 200


class TestCloseAll:
    def test_closes_and_unregisters(self, registry):
        channels = [FakeChannel("a"), FakeChannel("b")]
        for channel in channels:
            registry.register(channel)
        assert registry.close_all() == 2
        assert len(registry) == 0
        assert all(channel.websocket is None for channel in channels)

    def test_skips_already_closed(self, registry):
        channel = FakeChannel("a")
        registry.register(channel)
        channel.close()
        assert registry.close_all() == 0


class TestNotificationChannel:
    def test_close_returns_true_once(self):
        async def scenario():
            channel = NotificationChannel(FakeWebSocket())
            return channel.close(), channel.close(), channel.is_open

        first, second, is_open = asyncio.run(scenario())
        assert first is True
        assert second is False
        assert is_open is False

    def test_send_after_close_raises(self):
        async def scenario():
            channel = NotificationChannel(FakeWebSocket())
            channel.close()
            channel.send_text("reload")

        with pytest.raises(ChannelClosedError):
            asyncio.run(scenario())

    def test_unique_ids(self):
        async def scenario():
            return {NotificationChannel(FakeWebSocket()).channel_id for _ in range(10)}

        assert len(asyncio.run(scenario())) == 10

    def test_serve_writes_in_order_until_disconnect(self):
        async def scenario():
            ws = FakeWebSocket()
            channel = NotificationChannel(ws)
            task = asyncio.create_task(channel.serve())
            channel.send_text("heartbeat")
            channel.send_text("reload")
            channel.send_text("heartbeat")
            for _ in range(10):
                await asyncio.sleep(0.01)
                if len(ws.sent) == 3:
                    break
            ws.incoming.put_nowait({"type": "websocket.receive", "text": "ignored"})
            ws.incoming.put_nowait({"type": "websocket.disconnect", "code": 1000})
            await asyncio.wait_for(task, timeout=2)
            return ws.sent

        assert asyncio.run(scenario()) == ["heartbeat", "reload", "heartbeat"]

    def test_send_from_other_thread(self):
        async def scenario():
            ws = FakeWebSocket()
            channel = NotificationChannel(ws)
            task = asyncio.create_task(channel.serve())
            sender = threading.Thread(target=channel.send_text, args=("reload",))
            sender.start()
            await asyncio.to_thread(sender.join)
            for _ in range(50):
                await asyncio.sleep(0.01)
                if ws.sent:
                    break
            ws.incoming.put_nowait({"type": "websocket.disconnect", "code": 1000})
            await asyncio.wait_for(task, timeout=2)
            return ws.sent

        assert asyncio.run(scenario()) == ["reload"]

    def test_failed_send_stops_queueing(self):
        class BrokenWebSocket(FakeWebSocket):
            async def send_text(self, data: str) -> None:
                raise ConnectionResetError("half-open peer")

        async def scenario():
            ws = BrokenWebSocket()
            channel = NotificationChannel(ws)
            task = asyncio.create_task(channel.serve())
            channel.send_text("heartbeat")
            for _ in range(50):
                await asyncio.sleep(0.01)
                if not channel._writable:
                    break
            for _ in range(100):
                channel.send_text("heartbeat")
            await asyncio.sleep(0.01)
            pending = channel._outbox.qsize()
            ws.incoming.put_nowait({"type": "websocket.disconnect", "code": 1000})
            await asyncio.wait_for(task, timeout=2)
            return pending, channel.is_open

        pending, is_open = asyncio.run(scenario())
        assert pending == 0
        assert is_open is True
