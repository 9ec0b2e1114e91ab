from __future__ import annotations

import asyncio
import json

import aiohttp

from conftest import BrokenCloseSocket, FakeSocket, StalledSocket, wait_for
from slack_signal.clients.device.broadcaster import DeviceBroadcaster
from slack_signal.events.bus import EventBus
from slack_signal.events.models import MessageReceived


async def test_broadcast_before_start_is_a_noop(bus: EventBus) -> None:
    broadcaster = DeviceBroadcaster(bus, host="127.0.0.1", port=0)
    ws = FakeSocket()
    broadcaster.attach(ws)
    try:
        assert broadcaster.broadcast({"type": "dm_received"}) == 0
        await asyncio.sleep(0)
        assert ws.sent == []
    finally:
        await broadcaster.stop()


async def test_broadcast_with_no_connections(bus: EventBus) -> None:
    broadcaster = DeviceBroadcaster(bus, host="127.0.0.1", port=0)
    assert await broadcaster.start()
    try:
        assert broadcaster.broadcast({"type": "dm_received"}) == 0
    finally:
        await broadcaster.stop()


async def test_closed_and_failing_connections_are_isolated(bus: EventBus) -> None:
    broadcaster = DeviceBroadcaster(bus, host="127.0.0.1", port=0)
    assert await broadcaster.start()
    try:
        healthy = [FakeSocket(), FakeSocket()]
        closed = FakeSocket(closed=True)
        failing = FakeSocket(fail=True)
        for ws in [*healthy, closed, failing]:
            broadcaster.attach(ws)
        assert broadcaster.broadcast({"type": "dm_read", "messageId": "1.0"}) == 3
        await wait_for(lambda: all(ws.sent for ws in healthy))
        for ws in healthy:
            assert [json.loads(s) for s in ws.sent] == [{"type": "dm_read", "messageId": "1.0"}]
        assert closed.sent == []
        await wait_for(lambda: broadcaster.open_connections == 2)
        assert broadcaster.broadcast({"type": "dm_read", "messageId": "2.0"}) == 2
    finally:
        await broadcaster.stop()
    assert all(ws.closed for ws in healthy)
    assert broadcaster.connections == set()


async def test_stalled_device_does_not_block_publish(bus: EventBus) -> None:
    broadcaster = DeviceBroadcaster(bus, host="127.0.0.1", port=0, queue_size=2)
    stored: list[str] = []
    bus.on_dm_received(lambda event: stored.append(event.text))
    assert await broadcaster.start()
    try:
        stalled = StalledSocket()
        healthy = FakeSocket()
        stalled_channel = broadcaster.attach(stalled, "stalled")
        broadcaster.attach(healthy, "healthy")
        for n in range(5):
            await asyncio.wait_for(
                bus.publish(MessageReceived(sender_id="U1", text=f"m{n}", timestamp=f"{n}.0")), 1.0
            )
            await wait_for(lambda: len(healthy.sent) == n + 1)
        assert stored == ["m0", "m1", "m2", "m3", "m4"]
        assert stalled.pending == 1
        assert stalled_channel.dropped == 2
    finally:
        await asyncio.wait_for(broadcaster.stop(), 2.0)
    assert stalled.closed


async def test_stop_survives_a_connection_that_fails_to_close(bus: EventBus) -> None:
    broadcaster = DeviceBroadcaster(bus, host="127.0.0.1", port=0)
    assert await broadcaster.start()
    broken = BrokenCloseSocket()
    healthy = FakeSocket()
    broadcaster.attach(broken)
    broadcaster.attach(healthy)
    await broadcaster.stop()
    assert healthy.closed
    assert not broadcaster.started


async def test_published_event_reaches_connected_device(bus: EventBus) -> None:
    read_requests: list[str] = []

    async def on_read(message_id: str) -> None:
        read_requests.append(message_id)

    broadcaster = DeviceBroadcaster(bus, host="127.0.0.1", port=0, on_device_read=on_read)
    assert await broadcaster.start()
    try:
        url = f"ws://127.0.0.1:{broadcaster.bound_port}/"
        async with aiohttp.ClientSession() as session, session.ws_connect(url) as ws:
            await wait_for(lambda: broadcaster.open_connections == 1)
            await bus.publish(
                MessageReceived(
                    sender_id="U123", text="hello", conversation_id="C456", timestamp="1234.5678"
                )
            )
            frame = await asyncio.wait_for(ws.receive_json(), 2)
            assert frame == {
                "type": "dm_received",
                "messageId": "1234.5678",
                "fromUserId": "U123",
                "text": "hello",
                "channel": "C456",
                "ts": "1234.5678",
            }
            await ws.send_str("not json")
            await ws.send_json({"type": "mark_read", "messageId": "1234.5678"})
            await wait_for(lambda: read_requests == ["1234.5678"])
    finally:
        await broadcaster.stop()
    assert not broadcaster.started
    assert broadcaster.broadcast({"type": "dm_received"}) == 0


async def test_start_fails_cleanly_when_port_is_taken(bus: EventBus) -> None:
    first = DeviceBroadcaster(bus, host="127.0.0.1", port=0)
    assert await first.start()
    try:
        second = DeviceBroadcaster(EventBus(), host="127.0.0.1", port=first.bound_port)
        assert await second.start() is False
        assert not second.started
    finally:
        await first.stop()
