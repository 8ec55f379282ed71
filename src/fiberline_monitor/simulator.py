"""Simulation service owning the synthesizer, the history store and the fan-out.

One ``Simulator`` is created at process start and handed to the connection
manager and the REST layer. A single periodic task drives every write to
the history store and every per-tick broadcast:

    synthesize batch/alert -> append to history -> perturb roster
    -> recompute KPIs -> fan out to subscribers (-> optional MQTT mirror)
"""

import asyncio
import logging
import math
import random
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from .broadcaster import Broadcaster, TopicRegistry
from .config import Config
from .errors import AlreadyAcknowledged, NotFoundError, ValidationError
from .generators import TelemetrySynthesizer
from .history import HistoryStore
from .kpi import compute_kpis
from .models import (
    AcknowledgmentNotice,
    Alert,
    AlertSeverity,
    AlertType,
    Equipment,
    EquipmentStatus,
    KPISnapshot,
    ProcessRecord,
    ProcessType,
    Topic,
    format_instant,
    parse_instant,
    utcnow,
)
from .mqtt_client import TelemetryMirror
from .protocol import Event

logger = logging.getLogger(__name__)

# Hourly trend buckets in alert statistics
MAX_TREND_HOURS = 168

MAINTENANCE_PROFILES = {
    "polymerization_reactor": ("Chemical cleaning and catalyst replacement", 8),
    "spinning_machine": ("Spindle maintenance and tension calibration", 4),
    "stabilization_oven": ("Temperature profile calibration", 6),
    "carbonization_furnace": ("Heating element inspection", 12),
    "autoclave": ("Pressure system check and seal replacement", 10),
}


def maintenance_profile(equipment_type: str):
    """(description, estimated hours) for an equipment type."""
    return MAINTENANCE_PROFILES.get(equipment_type, ("General maintenance", 6))


@dataclass
class TickResult:
    """Everything one tick produced."""

    batch: List[ProcessRecord]
    alert: Optional[Alert]
    roster: List[Equipment]
    kpis: KPISnapshot
    fan_out: Dict[str, int]


class Simulator:
    """Explicitly owned simulation service (one instance per server)."""

    def __init__(
        self,
        config: Config,
        rng: Optional[random.Random] = None,
        mirror: Optional[TelemetryMirror] = None,
    ):
        self.config = config
        self.rng = rng or random.Random(config.simulation.random_seed)
        self.synthesizer = TelemetrySynthesizer(config.simulation, self.rng)
        self.store = HistoryStore(
            process_capacity=config.history.process_capacity,
            alert_capacity=config.history.alert_capacity,
        )
        self.registry = TopicRegistry()
        self.broadcaster = Broadcaster(self.registry)
        self.mirror = mirror

        self.store.equipment.replace(self.synthesizer.create_roster())
        logger.info(f"Initialized {len(self.store.equipment)} pieces of equipment")

        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._report_task: Optional[asyncio.Task] = None
        self._tick_count = 0
        self.last_kpis: Optional[KPISnapshot] = None

    @property
    def running(self) -> bool:
        return self._running

    @property
    def tick_count(self) -> int:
        return self._tick_count

    # -------------------------------------------------------------------------
    # Tick
    # -------------------------------------------------------------------------

    def tick(self, now: Optional[datetime] = None) -> TickResult:
        """Execute one simulation tick."""
        now = now or utcnow()
        self._tick_count += 1

        batch = self.synthesizer.generate_batch(now)
        alert = self.synthesizer.generate_alert(self.store.equipment.get(), now)

        self.store.append_process_records(batch)
        if alert:
            self.store.append_alert(alert)

        roster = self.synthesizer.perturb_equipment(self.store.equipment.get())
        self.store.equipment.replace(roster)

        kpis = compute_kpis(
            self.store.process.recent(self.config.history.kpi_window),
            roster,
            self.store.alerts.active_count(),
            self.rng,
        )
        self.last_kpis = kpis

        fan_out = self.broadcaster.publish_tick(batch, roster, alert, kpis)
        if self.mirror is not None:
            self.mirror.publish_tick(batch, roster, alert, kpis)

        return TickResult(batch=batch, alert=alert, roster=roster, kpis=kpis, fan_out=fan_out)

    async def run(self) -> None:
        """Tick loop; unexpected errors are logged and the loop carries on."""
        interval = self.config.simulation.tick_interval_ms / 1000.0
        while self._running:
            try:
                self.tick()
            except Exception as e:
                logger.error(f"Error in tick loop: {e}", exc_info=True)
            await asyncio.sleep(interval)

    async def run_reports(self) -> None:
        """Send a periodic report to every connection once per report interval."""
        interval = self.config.simulation.report_interval_ms / 1000.0
        while self._running:
            await asyncio.sleep(interval)
            try:
                self.publish_report()
            except Exception as e:
                logger.error(f"Error generating periodic report: {e}", exc_info=True)

    def start(self) -> asyncio.Task:
        """Start the tick loop (and the report loop) on the running event loop."""
        if self._running and self._task is not None:
            logger.warning("Simulator is already running")
            return self._task
        self._running = True
        self._task = asyncio.create_task(self.run())
        self._report_task = asyncio.create_task(self.run_reports())
        logger.info(
            f"Simulator started with {self.config.simulation.tick_interval_ms}ms interval"
        )
        return self._task

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        for task in (self._task, self._report_task):
            if task is None:
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._task = None
        self._report_task = None
        logger.info("Simulator stopped")

    # -------------------------------------------------------------------------
    # Periodic report
    # -------------------------------------------------------------------------

    def generate_report(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Production summary for the last report period.

        Production, quality and environmental totals are placeholder figures
        drawn from the simulator's RNG; equipment figures come from the roster.
        """
        roster = self.store.equipment.get()
        operational = sum(1 for unit in roster if unit.status == EquipmentStatus.OPERATIONAL)
        in_maintenance = sum(1 for unit in roster if unit.status == EquipmentStatus.MAINTENANCE)
        rng = self.rng
        return {
            "timestamp": format_instant(now or utcnow()),
            "summary": {
                "totalProduction": rng.randint(1000, 1499),
                "qualityMetrics": {
                    "averageStrength": round(rng.uniform(2800, 3200), 2),
                    "defectRate": round(rng.uniform(0, 2), 3),
                    "yieldRate": round(rng.uniform(92, 97), 2),
                },
                "environmental": {
                    "totalCO2": round(rng.uniform(500, 600), 2),
                    "energyConsumption": round(rng.uniform(2000, 2400), 2),
                    "waterUsage": round(rng.uniform(800, 1000), 2),
                },
                "equipment": {
                    "averageUptime": round(operational / len(roster) * 100, 2) if roster else 0.0,
                    "maintenanceEvents": in_maintenance,
                },
            },
        }

    def publish_report(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        report = self.generate_report(now)
        delivered = self.broadcaster.to_all(Event.PERIODIC_REPORT, report)
        logger.info(f"Periodic report generated and sent to {delivered} connections")
        return report

    # -------------------------------------------------------------------------
    # Alerts
    # -------------------------------------------------------------------------

    def acknowledge_alert(self, alert_id: str, acknowledged_by: str) -> AcknowledgmentNotice:
        """Acknowledge once and tell every connection about it.

        Raises ``NotFoundError`` or ``AlreadyAcknowledged``; neither has any
        side effect.
        """
        alert = self.store.alerts.acknowledge(alert_id)
        notice = AcknowledgmentNotice(
            alert_id=alert.id, acknowledged_by=acknowledged_by, timestamp=alert.resolved_at
        )
        self.broadcaster.publish_acknowledgment(notice)
        logger.info(f"Alert {alert_id} acknowledged by {acknowledged_by}")
        return notice

    def acknowledge_alerts(
        self, alert_ids: Iterable[str], acknowledged_by: str
    ) -> List[AcknowledgmentNotice]:
        """Bulk acknowledgment; unknown or already-acknowledged ids are skipped."""
        notices = []
        for alert_id in alert_ids:
            try:
                notices.append(self.acknowledge_alert(alert_id, acknowledged_by))
            except (NotFoundError, AlreadyAcknowledged) as e:
                logger.debug(f"Skipping {alert_id} in bulk acknowledgment: {e.message}")
        logger.info(f"{len(notices)} alerts acknowledged by {acknowledged_by}")
        return notices

    def create_alert(
        self,
        alert_type: AlertType,
        severity: AlertSeverity,
        message: str,
        source: str,
        created_by: str = "system",
    ) -> Alert:
        """Raise an alert by hand; it is stored and fanned out like a synthesized one."""
        alert = Alert(type=alert_type, severity=severity, message=message, source=source)
        self.store.append_alert(alert)
        self.broadcaster.publish_alert(alert)
        if self.mirror is not None:
            self.mirror.publish(f"alerts/{severity.value}", alert.to_dict())
        logger.warning(f"Alert {alert.id} raised by {created_by}: [{severity.value}] {message}")
        return alert

    def alert_statistics(
        self, period_hours: float = 24, now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """Counts, resolution times, top sources and hourly trend for a period."""
        now = now or utcnow()
        try:
            cutoff: Optional[datetime] = now - timedelta(hours=period_hours)
        except OverflowError:
            cutoff = None
        alerts = self.store.alerts.snapshot()
        in_period = [a for a in alerts if cutoff is None or a.timestamp >= cutoff]

        resolution_minutes = [
            (a.resolved_at - a.timestamp).total_seconds() / 60
            for a in in_period
            if a.resolved_at is not None
        ]
        sources = Counter(a.source for a in in_period)

        trends = []
        for hours_back in range(min(math.ceil(period_hours), MAX_TREND_HOURS), 0, -1):
            start = now - timedelta(hours=hours_back)
            end = start + timedelta(hours=1)
            bucket = [a for a in alerts if start <= a.timestamp < end]
            trends.append(
                {
                    "hour": format_instant(start),
                    "total": len(bucket),
                    **{
                        level.value: sum(1 for a in bucket if a.severity == level)
                        for level in AlertSeverity
                    },
                }
            )

        return {
            "period": f"{period_hours:g} hours",
            "total": len(in_period),
            "acknowledged": sum(1 for a in in_period if a.acknowledged),
            "unacknowledged": sum(1 for a in in_period if not a.acknowledged),
            "severityBreakdown": {
                level.value: sum(1 for a in in_period if a.severity == level)
                for level in AlertSeverity
            },
            "typeBreakdown": {
                kind.value: sum(1 for a in in_period if a.type == kind) for kind in AlertType
            },
            "resolutionTime": {
                "average": (
                    round(sum(resolution_minutes) / len(resolution_minutes))
                    if resolution_minutes
                    else 0
                ),
                "fastest": round(min(resolution_minutes)) if resolution_minutes else 0,
                "slowest": round(max(resolution_minutes)) if resolution_minutes else 0,
            },
            "topSources": [
                {"source": source, "count": count} for source, count in sources.most_common(5)
            ],
            "trends": trends,
        }

    # -------------------------------------------------------------------------
    # Equipment
    # -------------------------------------------------------------------------

    def update_equipment_status(
        self,
        equipment_id: str,
        status: EquipmentStatus,
        reason: str = "Manual update",
        updated_by: str = "system",
    ) -> Dict[str, Any]:
        previous, updated = self.store.equipment.set_status(equipment_id, status)
        update = {
            "equipmentId": equipment_id,
            "previousStatus": previous.status.value,
            "newStatus": updated.status.value,
            "reason": reason,
            "timestamp": format_instant(utcnow()),
            "updatedBy": updated_by,
        }
        self.broadcaster.to_topic(
            Topic.equipment(equipment_id),
            Event.EQUIPMENT_UPDATE,
            {"equipment": updated.to_dict(), "update": update},
        )
        logger.info(f"Equipment {equipment_id} status updated: {update}")
        return update

    def schedule_maintenance(
        self,
        equipment_id: str,
        scheduled_date: str,
        maintenance_type: str = "preventive",
        duration: Optional[float] = None,
        technician: str = "TBD",
        notes: str = "",
        created_by: str = "system",
    ) -> Dict[str, Any]:
        unit = self.store.equipment.find(equipment_id)
        when = _parse_date(scheduled_date)
        _, estimated_hours = maintenance_profile(unit.type)
        updated = self.store.equipment.set_next_maintenance(equipment_id, when)

        schedule = {
            "id": f"MAINT-{equipment_id}-{int(utcnow().timestamp() * 1000)}",
            "equipmentId": equipment_id,
            "scheduledDate": format_instant(when),
            "maintenanceType": maintenance_type,
            "estimatedDuration": duration or estimated_hours,
            "technician": technician,
            "notes": notes,
            "status": "scheduled",
            "createdAt": format_instant(utcnow()),
            "createdBy": created_by,
        }
        self.broadcaster.to_topic(
            Topic.equipment(equipment_id),
            Event.EQUIPMENT_UPDATE,
            {"equipment": updated.to_dict(), "maintenance": schedule},
        )
        logger.info(f"Maintenance scheduled for equipment {equipment_id}: {schedule['id']}")
        return schedule

    def request_maintenance(
        self,
        equipment_id: str,
        scheduled_date: str,
        maintenance_type: str,
        priority: str,
        notes: str,
        requested_by: str,
    ) -> Dict[str, Any]:
        """Relay a maintenance request to the maintenance team's role topic."""
        self.store.equipment.find(equipment_id)
        _parse_date(scheduled_date)
        request = {
            "requestId": f"{equipment_id}_{int(utcnow().timestamp() * 1000)}",
            "equipmentId": equipment_id,
            "scheduledDate": scheduled_date,
            "maintenanceType": maintenance_type,
            "priority": priority,
            "notes": notes,
            "requestedBy": requested_by,
            "timestamp": format_instant(utcnow()),
        }
        self.broadcaster.to_topic(
            Topic.role("maintenance"), Event.MAINTENANCE_REQUEST_RECEIVED, request
        )
        logger.info(f"Maintenance request from {requested_by} for {equipment_id}")
        return request

    # -------------------------------------------------------------------------
    # Read models
    # -------------------------------------------------------------------------

    def process_status(self) -> List[Dict[str, Any]]:
        """Latest status per process type over the last hour."""
        recent = self.store.read_process_history(1)
        status = []
        for process_type in ProcessType:
            records = [r for r in recent if r.process_type == process_type]
            latest = records[-1] if records else None
            status.append(
                {
                    "processType": process_type.value,
                    "status": latest.status.value if latest else "offline",
                    "lastUpdate": format_instant(latest.timestamp) if latest else None,
                    "activeStages": sorted({r.stage for r in records}),
                    "dataPoints": len(records),
                }
            )
        return status

    def equipment_summary(self) -> Dict[str, int]:
        roster = self.store.equipment.get()
        summary = {"total": len(roster)}
        for status in EquipmentStatus:
            summary[status.value] = sum(1 for unit in roster if unit.status == status)
        return summary


def _parse_date(value: str) -> datetime:
    try:
        return parse_instant(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid date: {value}") from None
