"""Tests for the reconnecting WebSocket client."""

import asyncio
import json

import pytest

from fiberline_monitor.client import DISCONNECTED, MAX_RECONNECT_ATTEMPTS_REACHED, MonitorClient
from fiberline_monitor.protocol import encode_event


class FakeSocket:
    """Scripted server side of one client session."""

    def __init__(self, incoming=(), hold=0.0):
        self.incoming = list(incoming)
        self.hold = hold
        self.sent = []
        self.closed = False

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        self.closed = True
        return False

    async def send(self, frame):
        self.sent.append(json.loads(frame))

    async def close(self):
        self.closed = True

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for frame in self.incoming:
            yield frame
        if self.hold:
            await asyncio.sleep(self.hold)


class FakeConnector:
    """Hands out scripted sockets, then refuses connections."""

    def __init__(self, *sockets):
        self.sockets = list(sockets)
        self.calls = 0

    def __call__(self, url):
        self.calls += 1
        if not self.sockets:
            raise OSError("Connection refused")
        return self.sockets.pop(0)


def accepted():
    return encode_event("authenticated", {"success": True, "role": "operator"})


def commands(socket, name=None):
    return [(f["command"], f["data"]) for f in socket.sent if name is None or f["command"] == name]


def make_client(connector, attempts=0, **kwargs):
    return MonitorClient(
        "ws://test",
        token="tok",
        reconnect_delay_ms=0,
        reconnect_attempts=attempts,
        connector=connector,
        **kwargs,
    )


class TestSession:
    @pytest.mark.asyncio
    async def test_authenticates_then_default_subscribes(self):
        socket = FakeSocket([accepted()])
        client = make_client(FakeConnector(socket))

        await client.run()

        assert commands(socket) == [
            ("authenticate", "tok"),
            ("subscribeToProcess", "pan"),
            ("subscribeToProcess", "carbon_fiber"),
            ("subscribeToProcess", "prepreg"),
            ("subscribeToProcess", "composite"),
            ("subscribeToAlerts", "all"),
        ]
        assert client.sessions == 1

    @pytest.mark.asyncio
    async def test_rejected_authentication_sends_nothing_else(self):
        socket = FakeSocket([encode_event("authenticated", {"success": False})])
        client = make_client(FakeConnector(socket))

        await client.run()

        assert commands(socket) == [("authenticate", "tok")]
        assert client.subscriptions == []

    @pytest.mark.asyncio
    async def test_held_subscription_replaces_defaults(self):
        socket = FakeSocket([accepted()])
        client = make_client(FakeConnector(socket))

        assert await client.subscribe_to_equipment("EQ-004") is False
        await client.run()

        assert commands(socket) == [("authenticate", "tok"), ("subscribeToEquipment", "EQ-004")]

    @pytest.mark.asyncio
    async def test_subscriptions_restored_after_reconnect(self):
        first = FakeSocket([accepted()])
        second = FakeSocket([accepted()])
        client = make_client(FakeConnector(first, second), attempts=1)

        await client.run()

        assert client.sessions == 2
        restored = commands(second, "subscribeToProcess") + commands(second, "subscribeToAlerts")
        assert len(restored) == 5
        assert commands(second)[0] == ("authenticate", "tok")

    @pytest.mark.asyncio
    async def test_malformed_frames_ignored(self):
        received = []
        socket = FakeSocket(["not json", json.dumps({"data": 1}), encode_event("pong")])
        client = make_client(FakeConnector(socket))
        client.on("pong", received.append)

        await client.run()

        assert received == [None]

    @pytest.mark.asyncio
    async def test_heartbeat_pings(self):
        socket = FakeSocket([accepted()], hold=0.05)
        client = make_client(FakeConnector(socket), heartbeat_interval_ms=1)

        await client.run()

        assert len(commands(socket, "ping")) >= 1

    @pytest.mark.asyncio
    async def test_no_heartbeat_after_rejected_authentication(self):
        socket = FakeSocket([encode_event("authenticated", {"success": False})], hold=0.05)
        client = make_client(FakeConnector(socket), heartbeat_interval_ms=1)

        await client.run()

        assert commands(socket, "ping") == []

    @pytest.mark.asyncio
    async def test_no_heartbeat_while_awaiting_authentication(self):
        socket = FakeSocket([encode_event("pong")], hold=0.05)
        client = make_client(FakeConnector(socket), heartbeat_interval_ms=1)

        await client.run()

        assert commands(socket) == [("authenticate", "tok")]


class TestReconnect:
    @pytest.mark.asyncio
    async def test_gives_up_after_attempts(self):
        connector = FakeConnector()
        client = make_client(connector, attempts=3)
        events = []
        client.on(DISCONNECTED, lambda data: events.append(DISCONNECTED))
        client.on(MAX_RECONNECT_ATTEMPTS_REACHED, lambda data: events.append("max"))

        await client.run()

        assert connector.calls == 4
        assert events == [DISCONNECTED] * 4 + ["max"]
        assert client.connected is False

    @pytest.mark.asyncio
    async def test_connection_error_emitted(self):
        client = make_client(FakeConnector())
        errors = []
        client.on("error", errors.append)

        await client.run()

        assert errors == [{"error": "Connection refused"}]


class TestListeners:
    @pytest.fixture
    def client(self):
        return make_client(FakeConnector())

    def test_off_specific_listener(self, client):
        calls = []
        keep, drop = calls.append, lambda data: calls.append("dropped")
        client.on("kpiUpdate", keep)
        client.on("kpiUpdate", drop)
        client.off("kpiUpdate", drop)

        client._emit("kpiUpdate", 1)

        assert calls == [1]

    def test_off_all_listeners(self, client):
        calls = []
        client.on("kpiUpdate", calls.append)
        client.off("kpiUpdate")

        client._emit("kpiUpdate", 1)

        assert calls == []

    def test_failing_listener_does_not_stop_others(self, client):
        calls = []

        def broken(data):
            raise RuntimeError("boom")

        client.on("newAlert", broken)
        client.on("newAlert", calls.append)

        client._emit("newAlert", {"id": "a"})

        assert calls == [{"id": "a"}]

    @pytest.mark.asyncio
    async def test_send_while_disconnected(self, client):
        assert await client.send("ping") is False
