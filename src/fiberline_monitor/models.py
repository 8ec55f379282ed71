"""Domain records shared by the synthesizer, the history store and the push channel.

All records serialize to the camelCase wire shape consumed by the dashboard
client. Instants are kept as timezone-aware UTC datetimes internally and
rendered as ISO-8601 strings on the wire.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Union


ParameterValue = Union[float, int, str, bool]


class ProcessType(Enum):
    """Manufacturing process families."""

    PAN = "pan"
    CARBON_FIBER = "carbon_fiber"
    PREPREG = "prepreg"
    COMPOSITE = "composite"


class ProcessStatus(Enum):
    """Simulation label attached to every process record."""

    NORMAL = "normal"
    WARNING = "warning"
    CRITICAL = "critical"
    OFFLINE = "offline"


class EquipmentStatus(Enum):
    """Equipment operating states."""

    OPERATIONAL = "operational"
    MAINTENANCE = "maintenance"
    OFFLINE = "offline"
    ERROR = "error"


class AlertType(Enum):
    QUALITY = "quality"
    ENVIRONMENTAL = "environmental"
    EQUIPMENT = "equipment"
    SAFETY = "safety"


class AlertSeverity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class TopicKind(Enum):
    """Subscription topic families."""

    PROCESS_TYPE = "process"
    EQUIPMENT_ID = "equipment"
    ALERT_SEVERITY = "alerts"
    ROLE = "role"


ALL_ALERTS = "all"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def format_instant(value: Optional[datetime]) -> Optional[str]:
    """Render an instant as ISO-8601 with a trailing Z."""
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_instant(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class Topic:
    """A (kind, key) subscription unit used for broadcast filtering."""

    kind: TopicKind
    key: str

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.key}"

    @classmethod
    def process(cls, process_type: ProcessType) -> "Topic":
        return cls(TopicKind.PROCESS_TYPE, process_type.value)

    @classmethod
    def equipment(cls, equipment_id: str) -> "Topic":
        return cls(TopicKind.EQUIPMENT_ID, equipment_id)

    @classmethod
    def alerts(cls, severity: Optional[AlertSeverity] = None) -> "Topic":
        return cls(TopicKind.ALERT_SEVERITY, severity.value if severity else ALL_ALERTS)

    @classmethod
    def role(cls, role: str) -> "Topic":
        return cls(TopicKind.ROLE, role)


# =============================================================================
# Process data
# =============================================================================


_QUALITY_FIELDS = (
    ("tensile_strength", "tensileStrength"),
    ("elastic_modulus", "elasticModulus"),
    ("diameter", "diameter"),
    ("circularity", "circularity"),
    ("void_content", "voidContent"),
    ("fiber_volume_ratio", "fiberVolumeRatio"),
    ("defect_count", "defectCount"),
)

_ENVIRONMENTAL_OPTIONAL = (
    ("nox_emission", "noxEmission"),
    ("sox_emission", "soxEmission"),
    ("particulates", "particulates"),
    ("voc_emission", "vocEmission"),
)


@dataclass(frozen=True)
class QualityMetrics:
    """Partial quality record; stages fill only what they measure."""

    tensile_strength: Optional[float] = None
    elastic_modulus: Optional[float] = None
    diameter: Optional[float] = None
    circularity: Optional[float] = None
    void_content: Optional[float] = None
    fiber_volume_ratio: Optional[float] = None
    defect_count: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {}
        for attr, key in _QUALITY_FIELDS:
            value = getattr(self, attr)
            if value is not None:
                data[key] = value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QualityMetrics":
        return cls(**{attr: data.get(key) for attr, key in _QUALITY_FIELDS})


@dataclass(frozen=True)
class EnvironmentalData:
    temperature: float
    pressure: float
    humidity: float
    co2_emission: float
    energy_consumption: float
    nox_emission: Optional[float] = None
    sox_emission: Optional[float] = None
    particulates: Optional[float] = None
    voc_emission: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "temperature": self.temperature,
            "pressure": self.pressure,
            "humidity": self.humidity,
            "co2Emission": self.co2_emission,
            "energyConsumption": self.energy_consumption,
        }
        for attr, key in _ENVIRONMENTAL_OPTIONAL:
            value = getattr(self, attr)
            if value is not None:
                data[key] = value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EnvironmentalData":
        return cls(
            temperature=data["temperature"],
            pressure=data["pressure"],
            humidity=data["humidity"],
            co2_emission=data["co2Emission"],
            energy_consumption=data["energyConsumption"],
            **{attr: data.get(key) for attr, key in _ENVIRONMENTAL_OPTIONAL},
        )


@dataclass(frozen=True)
class ProcessRecord:
    """One observation of a manufacturing stage.

    ``status`` is an injected simulation label drawn independently of the
    parameters, quality and environmental readings. It is never recomputed
    from them, neither here nor on deserialization.
    """

    process_type: ProcessType
    stage: str
    parameters: Dict[str, ParameterValue]
    quality: QualityMetrics
    environmental: EnvironmentalData
    status: ProcessStatus
    id: str = field(default_factory=new_id)
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": format_instant(self.timestamp),
            "processType": self.process_type.value,
            "stage": self.stage,
            "parameters": dict(self.parameters),
            "quality": self.quality.to_dict(),
            "environmental": self.environmental.to_dict(),
            "status": self.status.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProcessRecord":
        return cls(
            id=data["id"],
            timestamp=parse_instant(data["timestamp"]),
            process_type=ProcessType(data["processType"]),
            stage=data["stage"],
            parameters=dict(data.get("parameters", {})),
            quality=QualityMetrics.from_dict(data.get("quality", {})),
            environmental=EnvironmentalData.from_dict(data["environmental"]),
            status=ProcessStatus(data["status"]),
        )


# =============================================================================
# Equipment
# =============================================================================


@dataclass
class Equipment:
    """A physical unit on the roster. Only status and efficiency mutate."""

    id: str
    name: str
    type: str
    location: str
    status: EquipmentStatus
    efficiency: float
    last_maintenance: datetime
    next_maintenance: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type,
            "location": self.location,
            "status": self.status.value,
            "efficiency": round(self.efficiency, 2),
            "lastMaintenance": format_instant(self.last_maintenance),
            "nextMaintenance": format_instant(self.next_maintenance),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Equipment":
        return cls(
            id=data["id"],
            name=data["name"],
            type=data["type"],
            location=data["location"],
            status=EquipmentStatus(data["status"]),
            efficiency=float(data["efficiency"]),
            last_maintenance=parse_instant(data["lastMaintenance"]),
            next_maintenance=parse_instant(data["nextMaintenance"]),
        )


# =============================================================================
# Alerts and KPIs
# =============================================================================


@dataclass
class Alert:
    """An anomaly notice. ``acknowledged``/``resolved_at`` flip exactly once."""

    type: AlertType
    severity: AlertSeverity
    message: str
    source: str
    id: str = field(default_factory=new_id)
    timestamp: datetime = field(default_factory=utcnow)
    acknowledged: bool = False
    resolved_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "type": self.type.value,
            "severity": self.severity.value,
            "message": self.message,
            "source": self.source,
            "timestamp": format_instant(self.timestamp),
            "acknowledged": self.acknowledged,
        }
        if self.resolved_at is not None:
            data["resolvedAt"] = format_instant(self.resolved_at)
        return data


@dataclass(frozen=True)
class KPISnapshot:
    overall_efficiency: float
    equipment_uptime: float
    quality_rate: float
    energy_efficiency: float
    yield_rate: float
    co2_emission: float
    active_alerts: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "overallEfficiency": round(self.overall_efficiency, 2),
            "equipmentUptime": round(self.equipment_uptime, 2),
            "qualityRate": round(self.quality_rate, 2),
            "energyEfficiency": round(self.energy_efficiency, 2),
            "yieldRate": round(self.yield_rate, 2),
            "co2Emission": round(self.co2_emission, 2),
            "activeAlerts": self.active_alerts,
        }


@dataclass(frozen=True)
class AcknowledgmentNotice:
    alert_id: str
    acknowledged_by: str
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "alertId": self.alert_id,
            "acknowledgedBy": self.acknowledged_by,
            "timestamp": format_instant(self.timestamp),
        }
