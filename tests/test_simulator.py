"""Tests for the Simulator service."""

import asyncio
import random
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from fiberline_monitor.config import Config
from fiberline_monitor.connection import Connection, ConnectionState
from fiberline_monitor.errors import AlreadyAcknowledged, NotFoundError, ValidationError
from fiberline_monitor.models import (
    Alert,
    AlertSeverity,
    AlertType,
    EquipmentStatus,
    Topic,
    utcnow,
)
from fiberline_monitor.simulator import Simulator

from conftest import FakeTransport, command, drain, events_named


class TestSimulator:
    """Tests for Simulator class."""

    @pytest.fixture
    def mock_mirror(self):
        mirror = MagicMock()
        mirror.publish_tick.return_value = 0
        return mirror

    @pytest.fixture
    def simulator(self, config, mock_mirror):
        return Simulator(config, rng=random.Random(1), mirror=mock_mirror)

    def test_init_creates_roster(self, simulator):
        assert len(simulator.store.equipment) == 20
        assert simulator.tick_count == 0
        assert simulator.last_kpis is None

    def test_tick_appends_batch(self, simulator):
        result = simulator.tick()

        assert len(result.batch) == 7
        assert len(simulator.store.process) == 7
        assert simulator.tick_count == 1
        assert simulator.last_kpis is result.kpis

    def test_tick_swaps_roster(self, simulator):
        before = simulator.store.equipment.get()
        result = simulator.tick()
        after = simulator.store.equipment.get()

        assert [u.efficiency for u in after] == [u.efficiency for u in result.roster]
        assert [u.id for u in after] == [u.id for u in before]

    def test_tick_mirrors(self, simulator, mock_mirror):
        result = simulator.tick()

        mock_mirror.publish_tick.assert_called_once_with(
            result.batch, result.roster, result.alert, result.kpis
        )

    def test_tick_alerts_recorded(self, config):
        config.simulation.alert_probability = 1.0
        simulator = Simulator(config, rng=random.Random(1))

        result = simulator.tick()

        assert result.alert is not None
        assert simulator.store.alerts.get(result.alert.id).acknowledged is False
        assert result.kpis.active_alerts == 1

    def test_kpis_use_recent_window(self, config):
        config.history.kpi_window = 7
        simulator = Simulator(config, rng=random.Random(1))
        for _ in range(3):
            result = simulator.tick()

        assert result.kpis.quality_rate <= 100
        assert result.kpis.equipment_uptime <= 100

    @pytest.mark.asyncio
    async def test_run_survives_tick_errors(self, config):
        config.simulation.tick_interval_ms = 1
        simulator = Simulator(config, rng=random.Random(1))
        calls = []

        def flaky_tick():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("boom")

        simulator.tick = MagicMock(side_effect=flaky_tick)

        simulator.start()
        await asyncio.sleep(0.05)
        await simulator.stop()

        assert simulator.tick.call_count >= 2
        assert simulator.running is False

    @pytest.mark.asyncio
    async def test_start_twice_returns_same_task(self, config):
        config.simulation.tick_interval_ms = 1000
        simulator = Simulator(config, rng=random.Random(1))

        first = simulator.start()
        second = simulator.start()
        await simulator.stop()

        assert first is second

    @pytest.mark.asyncio
    async def test_report_loop_runs_alongside_ticks(self, config):
        config.simulation.tick_interval_ms = 1000
        config.simulation.report_interval_ms = 1
        simulator = Simulator(config, rng=random.Random(1))
        anonymous = Connection(FakeTransport())
        simulator.registry.register(anonymous)

        simulator.start()
        await asyncio.sleep(0.05)
        await simulator.stop()

        assert len(events_named(drain(anonymous), "periodicReport")) >= 1
        assert simulator._report_task is None


class TestAcknowledgment:
    @pytest.fixture
    def alert(self, simulator):
        alert = Alert(AlertType.QUALITY, AlertSeverity.MEDIUM, "msg", "EQ-003")
        simulator.store.append_alert(alert)
        return alert

    def test_acknowledge(self, simulator, alert):
        notice = simulator.acknowledge_alert(alert.id, "operator1")

        assert notice.alert_id == alert.id
        assert notice.acknowledged_by == "operator1"
        assert simulator.store.alerts.active_count() == 0

    def test_second_acknowledge_no_broadcast(self, simulator, alert):
        simulator.acknowledge_alert(alert.id, "operator1")
        sent = simulator.broadcaster.frames_enqueued

        with pytest.raises(AlreadyAcknowledged):
            simulator.acknowledge_alert(alert.id, "operator2")
        assert simulator.broadcaster.frames_enqueued == sent

    def test_unknown(self, simulator):
        with pytest.raises(NotFoundError):
            simulator.acknowledge_alert("missing", "operator1")

    def test_bulk_skips_unknown_and_repeated(self, simulator, alert):
        other = Alert(AlertType.SAFETY, AlertSeverity.LOW, "msg", "EQ-004")
        simulator.store.append_alert(other)
        simulator.acknowledge_alert(alert.id, "operator1")

        notices = simulator.acknowledge_alerts([alert.id, other.id, "missing"], "operator1")

        assert [n.alert_id for n in notices] == [other.id]


class TestManualAlerts:
    def test_create_alert_stored_and_fanned_out(self, simulator):
        watcher = Connection(FakeTransport())
        watcher.state = ConnectionState.AUTHENTICATED
        simulator.registry.register(watcher)
        simulator.registry.subscribe(watcher, Topic.alerts(AlertSeverity.CRITICAL))

        alert = simulator.create_alert(
            AlertType.SAFETY, AlertSeverity.CRITICAL, "Gas leak", "EQ-010", "operator1"
        )

        assert simulator.store.alerts.get(alert.id).message == "Gas leak"
        assert events_named(drain(watcher), "newAlert") == [alert.to_dict()]

    def test_create_alert_counts_as_active(self, simulator):
        simulator.create_alert(AlertType.QUALITY, AlertSeverity.LOW, "Fiber fuzz", "EQ-002")

        assert simulator.store.alerts.active_count() == 1


class TestAlertStatistics:
    @pytest.fixture
    def now(self):
        return utcnow()

    @pytest.fixture
    def seeded(self, simulator, now):
        alerts = [
            Alert(AlertType.EQUIPMENT, AlertSeverity.HIGH, "Overheat", "EQ-001"),
            Alert(AlertType.QUALITY, AlertSeverity.LOW, "Diameter drift", "EQ-001"),
            Alert(AlertType.SAFETY, AlertSeverity.CRITICAL, "Gas leak", "EQ-007"),
        ]
        ages = (timedelta(minutes=30), timedelta(minutes=90), timedelta(hours=30))
        for alert, age in zip(alerts, ages):
            alert.timestamp = now - age
        for alert in alerts:
            simulator.store.append_alert(alert)
        for alert, minutes in ((alerts[0], 10), (alerts[1], 40)):
            simulator.store.alerts.acknowledge(
                alert.id, when=alert.timestamp + timedelta(minutes=minutes)
            )
        return alerts

    def test_counts_within_period(self, simulator, seeded, now):
        stats = simulator.alert_statistics(24, now=now)

        assert stats["period"] == "24 hours"
        assert stats["total"] == 2
        assert stats["acknowledged"] == 2
        assert stats["unacknowledged"] == 0
        assert stats["severityBreakdown"] == {"low": 1, "medium": 0, "high": 1, "critical": 0}
        assert stats["typeBreakdown"]["safety"] == 0
        assert stats["topSources"] == [{"source": "EQ-001", "count": 2}]

    def test_resolution_times(self, simulator, seeded, now):
        resolution = simulator.alert_statistics(24, now=now)["resolutionTime"]

        assert resolution == {"average": 25, "fastest": 10, "slowest": 40}

    def test_hourly_trend(self, simulator, seeded, now):
        trends = simulator.alert_statistics(3, now=now)["trends"]

        assert len(trends) == 3
        assert [bucket["total"] for bucket in trends] == [0, 1, 1]
        assert trends[-1]["high"] == 1
        assert trends[1]["low"] == 1

    def test_trend_is_capped_at_one_week(self, simulator, seeded, now):
        stats = simulator.alert_statistics(1e8, now=now)

        assert stats["total"] == 3
        assert len(stats["trends"]) == 168

    def test_empty_log(self, simulator):
        stats = simulator.alert_statistics()

        assert stats["total"] == 0
        assert stats["resolutionTime"] == {"average": 0, "fastest": 0, "slowest": 0}
        assert stats["topSources"] == []


class TestPeriodicReport:
    def test_report_shape(self, simulator):
        report = simulator.generate_report()

        summary = report["summary"]
        assert 1000 <= summary["totalProduction"] < 1500
        assert set(summary["qualityMetrics"]) == {"averageStrength", "defectRate", "yieldRate"}
        assert set(summary["environmental"]) == {"totalCO2", "energyConsumption", "waterUsage"}
        assert 0 <= summary["equipment"]["averageUptime"] <= 100

    def test_equipment_figures_follow_roster(self, simulator):
        simulator.update_equipment_status("EQ-001", EquipmentStatus.MAINTENANCE)
        roster = simulator.store.equipment.get()
        operational = sum(1 for unit in roster if unit.status == EquipmentStatus.OPERATIONAL)
        in_maintenance = sum(1 for unit in roster if unit.status == EquipmentStatus.MAINTENANCE)

        equipment = simulator.generate_report()["summary"]["equipment"]

        assert equipment["maintenanceEvents"] == in_maintenance
        assert equipment["averageUptime"] == round(operational / 20 * 100, 2)

    def test_publish_reaches_every_connection(self, simulator, manager, operator_token):
        anonymous = manager.open(FakeTransport())
        authed = manager.open(FakeTransport())
        manager.handle_frame(authed, command("authenticate", operator_token))
        drain(anonymous)
        drain(authed)

        report = simulator.publish_report()

        assert events_named(drain(anonymous), "periodicReport") == [report]
        assert events_named(drain(authed), "periodicReport") == [report]


class TestEquipmentOperations:
    def test_update_status_notifies_subscribers(self, simulator, manager):
        watcher = manager.open(FakeTransport())
        manager.registry.subscribe(watcher, Topic.equipment("EQ-005"))
        drain(watcher)

        update = simulator.update_equipment_status(
            "EQ-005", EquipmentStatus.OFFLINE, "Power loss", "operator1"
        )

        assert update["newStatus"] == "offline"
        assert simulator.store.equipment.find("EQ-005").status == EquipmentStatus.OFFLINE
        event = events_named(drain(watcher), "equipmentUpdate")[0]
        assert event["equipment"]["status"] == "offline"
        assert event["update"]["reason"] == "Power loss"

    def test_update_status_unknown(self, simulator):
        with pytest.raises(NotFoundError):
            simulator.update_equipment_status("EQ-999", EquipmentStatus.OFFLINE)

    def test_schedule_maintenance(self, simulator):
        schedule = simulator.schedule_maintenance("EQ-004", "2030-05-01T08:00:00Z")

        assert schedule["status"] == "scheduled"
        assert schedule["estimatedDuration"] == 12
        unit = simulator.store.equipment.find("EQ-004")
        assert unit.next_maintenance.year == 2030

    def test_schedule_maintenance_bad_date(self, simulator):
        with pytest.raises(ValidationError):
            simulator.schedule_maintenance("EQ-004", "next tuesday")

    def test_request_maintenance_unknown_equipment(self, simulator):
        with pytest.raises(NotFoundError):
            simulator.request_maintenance(
                "EQ-999", "2030-05-01T08:00:00Z", "preventive", "normal", "", "operator1"
            )


class TestReadModels:
    def test_process_status_covers_all_types(self, simulator):
        simulator.tick()
        status = simulator.process_status()

        assert [s["processType"] for s in status] == ["pan", "carbon_fiber", "prepreg", "composite"]
        assert all(s["dataPoints"] > 0 for s in status)

    def test_process_status_before_first_tick(self, simulator):
        assert all(s["status"] == "offline" for s in simulator.process_status())

    def test_equipment_summary(self, simulator):
        summary = simulator.equipment_summary()

        assert summary["total"] == 20
        assert sum(summary[s.value] for s in EquipmentStatus) == 20


def test_default_config_constructs():
    simulator = Simulator(Config.default())
    assert len(simulator.store.equipment) == 20
