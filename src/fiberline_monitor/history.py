"""Bounded in-memory history for process records, alerts and the equipment roster.

Process records and alerts live in append-only ring buffers that evict the
oldest entry once capacity is exceeded. The equipment roster is a snapshot
entity: it is replaced as a whole and always read in full.

Writers (the tick loop, acknowledgment handlers) and readers (REST handlers,
the MQTT publish thread) may run concurrently, so every buffer is guarded by
a lock and readers always receive a copy taken under that lock. A batch is
therefore either fully visible or not visible at all.
"""

import logging
import math
import threading
from collections import deque
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Deque, Dict, Iterable, List, Optional, Tuple

from .errors import AlreadyAcknowledged, NotFoundError
from .models import (
    Alert,
    AlertSeverity,
    AlertType,
    Equipment,
    EquipmentStatus,
    ProcessRecord,
    ProcessType,
    utcnow,
)

logger = logging.getLogger(__name__)


class ProcessHistory:
    """Ring buffer of process records, oldest evicted first."""

    def __init__(self, capacity: int = 1000):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._records: Deque[ProcessRecord] = deque(maxlen=capacity)
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def append(self, batch: Iterable[ProcessRecord]) -> None:
        batch = list(batch)
        with self._lock:
            self._records.extend(batch)

    def snapshot(self) -> List[ProcessRecord]:
        with self._lock:
            return list(self._records)

    def recent(self, count: int) -> List[ProcessRecord]:
        """The ``count`` most recently appended records, oldest first."""
        if count <= 0:
            return []
        with self._lock:
            records = list(self._records)
        return records[-count:]

    def read(
        self,
        since_hours: float = 24,
        process_type: Optional[ProcessType] = None,
        stage: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> List[ProcessRecord]:
        """Records newer than ``now - since_hours`` sorted by ascending timestamp.

        A window reaching past the earliest representable instant covers the
        whole buffer.
        """
        if not math.isfinite(since_hours):
            raise ValueError("since_hours must be finite")
        try:
            cutoff: Optional[datetime] = (now or utcnow()) - timedelta(hours=since_hours)
        except OverflowError:
            cutoff = None
        records = [
            record
            for record in self.snapshot()
            if (cutoff is None or record.timestamp >= cutoff)
            and (process_type is None or record.process_type == process_type)
            and (stage is None or record.stage == stage)
        ]
        records.sort(key=lambda record: record.timestamp)
        return records


class AlertLog:
    """Ring buffer of alerts with linearizable acknowledgment."""

    def __init__(self, capacity: int = 100):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._alerts: Deque[Alert] = deque()
        self._by_id: Dict[str, Alert] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._alerts)

    def append(self, alert: Alert) -> None:
        with self._lock:
            self._alerts.append(alert)
            self._by_id[alert.id] = alert
            while len(self._alerts) > self.capacity:
                evicted = self._alerts.popleft()
                self._by_id.pop(evicted.id, None)

    def get(self, alert_id: str) -> Alert:
        with self._lock:
            alert = self._by_id.get(alert_id)
            if alert is None:
                raise NotFoundError(f"Alert {alert_id} not found")
            return replace(alert)

    def snapshot(self) -> List[Alert]:
        with self._lock:
            return [replace(alert) for alert in self._alerts]

    def acknowledge(self, alert_id: str, when: Optional[datetime] = None) -> Alert:
        """Compare-and-set ``acknowledged`` from False to True.

        Exactly one caller per alert succeeds; every later caller gets
        ``AlreadyAcknowledged``. Unknown ids raise ``NotFoundError`` without
        touching any state.
        """
        with self._lock:
            alert = self._by_id.get(alert_id)
            if alert is None:
                raise NotFoundError(f"Alert {alert_id} not found")
            if alert.acknowledged:
                raise AlreadyAcknowledged(f"Alert {alert_id} already acknowledged")
            alert.acknowledged = True
            alert.resolved_at = when or utcnow()
            return replace(alert)

    def active_count(self) -> int:
        with self._lock:
            return sum(1 for alert in self._alerts if not alert.acknowledged)

    def read(
        self,
        severity: Optional[AlertSeverity] = None,
        alert_type: Optional[AlertType] = None,
        acknowledged: Optional[bool] = None,
        limit: int = 50,
        since: Optional[datetime] = None,
    ) -> List[Alert]:
        """Filtered alerts, newest first, truncated to ``limit``."""
        alerts = [
            alert
            for alert in self.snapshot()
            if (severity is None or alert.severity == severity)
            and (alert_type is None or alert.type == alert_type)
            and (acknowledged is None or alert.acknowledged == acknowledged)
            and (since is None or alert.timestamp >= since)
        ]
        alerts.sort(key=lambda alert: alert.timestamp, reverse=True)
        return alerts[:limit]


class EquipmentRoster:
    """Current equipment snapshot; no append, no eviction."""

    def __init__(self, equipment: Iterable[Equipment] = ()):
        self._equipment: Tuple[Equipment, ...] = tuple(equipment)
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._equipment)

    def replace(self, equipment: Iterable[Equipment]) -> None:
        new_roster = tuple(equipment)
        with self._lock:
            self._equipment = new_roster

    def get(self) -> List[Equipment]:
        with self._lock:
            return [replace(unit) for unit in self._equipment]

    def find(self, equipment_id: str) -> Equipment:
        with self._lock:
            for unit in self._equipment:
                if unit.id == equipment_id:
                    return replace(unit)
        raise NotFoundError(f"Equipment {equipment_id} not found")

    def _update(self, equipment_id: str, **changes) -> Tuple[Equipment, Equipment]:
        with self._lock:
            for index, unit in enumerate(self._equipment):
                if unit.id == equipment_id:
                    updated = replace(unit, **changes)
                    roster = list(self._equipment)
                    roster[index] = updated
                    self._equipment = tuple(roster)
                    return replace(unit), replace(updated)
        raise NotFoundError(f"Equipment {equipment_id} not found")

    def set_status(self, equipment_id: str, status: EquipmentStatus) -> Tuple[Equipment, Equipment]:
        """Returns (previous, updated)."""
        return self._update(equipment_id, status=status)

    def set_next_maintenance(self, equipment_id: str, when: datetime) -> Equipment:
        return self._update(equipment_id, next_maintenance=when)[1]


class HistoryStore:
    """Owns the three in-memory buffers for one running simulator."""

    def __init__(self, process_capacity: int = 1000, alert_capacity: int = 100):
        self.process = ProcessHistory(process_capacity)
        self.alerts = AlertLog(alert_capacity)
        self.equipment = EquipmentRoster()

    def append_process_records(self, batch: Iterable[ProcessRecord]) -> None:
        self.process.append(batch)

    def append_alert(self, alert: Alert) -> None:
        self.alerts.append(alert)
        logger.warning(f"New alert generated: {alert.message} ({alert.severity.value})")

    def read_process_history(
        self,
        since_hours: float = 24,
        process_type: Optional[ProcessType] = None,
        stage: Optional[str] = None,
    ) -> List[ProcessRecord]:
        return self.process.read(since_hours, process_type=process_type, stage=stage)

    def read_alerts(
        self,
        severity: Optional[AlertSeverity] = None,
        alert_type: Optional[AlertType] = None,
        acknowledged: Optional[bool] = None,
        limit: int = 50,
    ) -> List[Alert]:
        return self.alerts.read(
            severity=severity, alert_type=alert_type, acknowledged=acknowledged, limit=limit
        )
