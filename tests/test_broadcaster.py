"""Tests for the topic registry and tick fan-out."""

import random
from datetime import datetime, timezone

import pytest

from fiberline_monitor.auth import Identity, Role
from fiberline_monitor.broadcaster import Broadcaster, TopicRegistry
from fiberline_monitor.config import SimulationConfig
from fiberline_monitor.connection import Connection, ConnectionState
from fiberline_monitor.generators import TelemetrySynthesizer
from fiberline_monitor.kpi import compute_kpis
from fiberline_monitor.models import (
    AcknowledgmentNotice,
    Alert,
    AlertSeverity,
    AlertType,
    ProcessType,
    Topic,
)

from conftest import FakeTransport, drain, events_named

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def make_connection(registry, authenticated=True, queue_size=64):
    connection = Connection(FakeTransport(), queue_size=queue_size)
    if authenticated:
        connection.state = ConnectionState.AUTHENTICATED
        connection.identity = Identity("operator1", Role.OPERATOR)
    registry.register(connection)
    return connection


@pytest.fixture
def registry():
    return TopicRegistry()


@pytest.fixture
def broadcaster(registry):
    return Broadcaster(registry)


@pytest.fixture
def synthesizer():
    return TelemetrySynthesizer(SimulationConfig(), random.Random(21))


class TestTopicRegistry:
    """Tests for TopicRegistry."""

    def test_subscribe_idempotent(self, registry):
        connection = make_connection(registry)

        assert registry.subscribe(connection, Topic.process(ProcessType.PAN)) is True
        assert registry.subscribe(connection, Topic.process(ProcessType.PAN)) is False
        assert registry.subscribers(Topic.process(ProcessType.PAN)) == [connection]

    def test_unsubscribe_not_held_is_noop(self, registry):
        connection = make_connection(registry)

        assert registry.unsubscribe(connection, Topic.process(ProcessType.PAN)) is False

    def test_unregister_releases_memberships(self, registry):
        connection = make_connection(registry)
        registry.subscribe(connection, Topic.process(ProcessType.PAN))
        registry.subscribe(connection, Topic.alerts())

        released = registry.unregister(connection)

        assert released == {Topic.process(ProcessType.PAN), Topic.alerts()}
        assert registry.subscribers(Topic.alerts()) == []
        assert registry.topics_of(connection) == set()
        assert len(registry) == 0

    def test_subscribe_after_unregister_is_rejected(self, registry):
        connection = make_connection(registry)
        registry.unregister(connection)

        assert registry.subscribe(connection, Topic.alerts()) is False
        assert registry.subscribers(Topic.alerts()) == []

    def test_authenticated_filter(self, registry):
        authed = make_connection(registry)
        make_connection(registry, authenticated=False)

        assert registry.authenticated() == [authed]


class TestProcessFanOut:
    """Tests for per-subscriber process batch filtering."""

    def test_only_subscribed_types_delivered(self, registry, broadcaster, synthesizer):
        pan = make_connection(registry)
        carbon = make_connection(registry)
        idle = make_connection(registry)
        registry.subscribe(pan, Topic.process(ProcessType.PAN))
        registry.subscribe(carbon, Topic.process(ProcessType.CARBON_FIBER))

        broadcaster.publish_process_batch(synthesizer.generate_batch(NOW))

        pan_events = events_named(drain(pan), "processData")
        assert len(pan_events) == 1
        assert {r["processType"] for r in pan_events[0]} == {"pan"}
        assert len(pan_events[0]) == 2

        carbon_events = events_named(drain(carbon), "processData")
        assert {r["stage"] for r in carbon_events[0]} == {"stabilization", "carbonization"}

        assert drain(idle) == []

    def test_multi_type_subscriber_gets_one_event(self, registry, broadcaster, synthesizer):
        connection = make_connection(registry)
        registry.subscribe(connection, Topic.process(ProcessType.PAN))
        registry.subscribe(connection, Topic.process(ProcessType.COMPOSITE))
        batch = synthesizer.generate_batch(NOW)

        broadcaster.publish_process_batch(batch)

        events = events_named(drain(connection), "processData")
        assert len(events) == 1
        expected = [
            r.id for r in batch if r.process_type in (ProcessType.PAN, ProcessType.COMPOSITE)
        ]
        assert [r["id"] for r in events[0]] == expected

    def test_unsubscribed_type_stops(self, registry, broadcaster, synthesizer):
        connection = make_connection(registry)
        registry.subscribe(connection, Topic.process(ProcessType.PAN))
        registry.unsubscribe(connection, Topic.process(ProcessType.PAN))

        broadcaster.publish_process_batch(synthesizer.generate_batch(NOW))

        assert drain(connection) == []


class TestAlertFanOut:
    def make_alert(self, severity):
        return Alert(AlertType.EQUIPMENT, severity, "msg", "EQ-001", timestamp=NOW)

    def test_severity_and_wildcard(self, registry, broadcaster):
        high = make_connection(registry)
        everything = make_connection(registry)
        low = make_connection(registry)
        registry.subscribe(high, Topic.alerts(AlertSeverity.HIGH))
        registry.subscribe(everything, Topic.alerts())
        registry.subscribe(low, Topic.alerts(AlertSeverity.LOW))

        delivered = broadcaster.publish_alert(self.make_alert(AlertSeverity.HIGH))

        assert delivered == 2
        assert len(events_named(drain(high), "newAlert")) == 1
        assert len(events_named(drain(everything), "newAlert")) == 1
        assert drain(low) == []

    def test_no_duplicate_for_double_subscription(self, registry, broadcaster):
        connection = make_connection(registry)
        registry.subscribe(connection, Topic.alerts())
        registry.subscribe(connection, Topic.alerts(AlertSeverity.CRITICAL))

        broadcaster.publish_alert(self.make_alert(AlertSeverity.CRITICAL))

        assert len(events_named(drain(connection), "newAlert")) == 1


class TestGlobalFanOut:
    def test_equipment_and_kpis_to_authenticated_only(self, registry, broadcaster, synthesizer):
        authed = make_connection(registry)
        anonymous = make_connection(registry, authenticated=False)
        roster = synthesizer.create_roster(NOW)

        stats = broadcaster.publish_tick(
            synthesizer.generate_batch(NOW), roster, None, compute_kpis([], roster, 0)
        )

        events = drain(authed)
        assert len(events_named(events, "equipmentStatus")[0]) == 20
        assert len(events_named(events, "kpiUpdate")) == 1
        assert drain(anonymous) == []
        assert stats["newAlert"] == 0
        assert stats["equipmentStatus"] == 1

    def test_acknowledgment_reaches_everyone(self, registry, broadcaster):
        authed = make_connection(registry)
        anonymous = make_connection(registry, authenticated=False)

        broadcaster.publish_acknowledgment(AcknowledgmentNotice("a-1", "operator1", NOW))

        assert events_named(drain(authed), "alertAcknowledged")[0]["alertId"] == "a-1"
        assert len(events_named(drain(anonymous), "alertAcknowledged")) == 1


class TestBackpressure:
    def test_full_queue_drops_oldest(self, registry, broadcaster):
        slow = make_connection(registry, queue_size=3)
        fast = make_connection(registry, queue_size=64)

        for i in range(5):
            broadcaster.to_authenticated("pong", {"n": i})

        assert [e["data"]["n"] for e in drain(slow)] == [2, 3, 4]
        assert slow.frames_dropped == 2
        assert [e["data"]["n"] for e in drain(fast)] == [0, 1, 2, 3, 4]
        assert fast.frames_dropped == 0

    def test_closed_connection_not_counted(self, registry, broadcaster):
        connection = make_connection(registry)
        connection.state = ConnectionState.DISCONNECTED

        assert broadcaster.to_all("pong") == 0
