"""
Tests for the live-update connection registry and broadcasters.
"""

import json

import pytest
from structlog.testing import capture_logs

from realtime.broadcast import MemoryBroadcaster, envelope, safe_publish
from realtime.connections import ConnectionRegistry
from realtime.websocket import envelope_machine_id, send_heartbeats


class FakeSocket:
    def __init__(self, fail: bool = False):
        self.sent: list[str] = []
        self.fail = fail

    async def send_text(self, data: str) -> None:
        if self.fail:
            raise ConnectionError("socket closed")
        self.sent.append(data)


@pytest.mark.asyncio
class TestConnectionRegistry:
    async def test_fan_out_respects_machine_filter(self):
        registry = ConnectionRegistry()
        everything = FakeSocket()
        only_one = FakeSocket()
        await registry.register(everything, user_id="a")
        await registry.register(only_one, user_id="b", machine_ids=["m-1"])

        delivered = await registry.fan_out("hello", machine_id="m-2")
        assert delivered == 1
        assert everything.sent == ["hello"]
        assert only_one.sent == []

        await registry.fan_out("again", machine_id="m-1")
        assert only_one.sent == ["again"]

    async def test_dead_socket_is_dropped(self):
        registry = ConnectionRegistry()
        await registry.register(FakeSocket(fail=True), user_id="gone")
        alive = FakeSocket()
        await registry.register(alive, user_id="here")

        delivered = await registry.fan_out("tick")
        assert delivered == 1
        assert len(registry) == 1
        assert registry.snapshot() == [{"user_id": "here", "machine_ids": []}]

    async def test_unregister_is_idempotent(self):
        registry = ConnectionRegistry()
        socket = FakeSocket()
        await registry.register(socket)
        await registry.unregister(socket)
        await registry.unregister(socket)
        assert len(registry) == 0


@pytest.mark.asyncio
class TestBroadcast:
    async def test_memory_broadcaster_records_envelopes(self):
        broadcaster = MemoryBroadcaster()
        await broadcaster.publish("production:update", {"machine_id": "m-1", "total_production": 3})
        assert broadcaster.messages == [
            {"type": "production:update", "payload": {"machine_id": "m-1", "total_production": 3}}
        ]
        assert broadcaster.of_type("production:update")[0]["total_production"] == 3

    async def test_safe_publish_swallows_outages(self):
        class Down(MemoryBroadcaster):
            async def publish(self, event_type, payload):
                raise ConnectionError("redis down")

        assert await safe_publish(Down(), "production:update", {}) == 0
        assert await safe_publish(None, "production:update", {}) == 0

    def test_envelope_machine_id(self):
        message = envelope("machine:status_changed", {"machine_id": "m-9", "status": "STOPPED"})
        assert json.loads(message)["type"] == "machine:status_changed"
        assert envelope_machine_id(message) == "m-9"
        assert envelope_machine_id("not json") is None


@pytest.mark.asyncio
class TestHeartbeat:
    async def test_failed_heartbeat_is_logged_and_stops(self):
        class ClosedSocket:
            attempts = 0

            async def send_json(self, data):
                self.attempts += 1
                raise RuntimeError("socket closed")

        socket = ClosedSocket()
        with capture_logs() as logs:
            await send_heartbeats(socket, user_id="gone", interval=0)

        assert socket.attempts == 1
        failures = [entry for entry in logs if entry["event"] == "realtime.heartbeat_failed"]
        assert failures[0]["user_id"] == "gone"
        assert failures[0]["error_type"] == "RuntimeError"

    async def test_heartbeat_frames_are_sent(self):
        class CountingSocket:
            def __init__(self):
                self.frames = []

            async def send_json(self, data):
                self.frames.append(data)
                if len(self.frames) == 2:
                    raise ConnectionError("client went away")

        socket = CountingSocket()
        await send_heartbeats(socket, interval=0)
        assert socket.frames == [{"type": "heartbeat", "payload": {}}] * 2
