"""Push-channel wire protocol.

Every WebSocket text frame carries one JSON object. Client commands look like
``{"command": "subscribeToProcess", "data": "pan"}`` and server events like
``{"event": "processData", "data": [...]}``.

Commands are parsed into a closed set of dataclasses; anything that does not
match one of them (unknown name, missing field, unknown enum value) raises
``ValidationError`` before it reaches the connection manager.
"""

import json
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Dict, Optional, Type, TypeVar

from .errors import ValidationError
from .models import AlertSeverity, ProcessType, ALL_ALERTS

E = TypeVar("E", bound=Enum)


class Event:
    """Server-to-client event names."""

    CONNECTED = "connected"
    AUTHENTICATED = "authenticated"
    PROCESS_DATA = "processData"
    EQUIPMENT_STATUS = "equipmentStatus"
    NEW_ALERT = "newAlert"
    KPI_UPDATE = "kpiUpdate"
    ALERT_ACKNOWLEDGED = "alertAcknowledged"
    ERROR = "error"
    PONG = "pong"
    SUBSCRIPTION_CONFIRMED = "subscriptionConfirmed"
    PROCESS_CONTROL_RESULT = "processControlResult"
    PROCESS_CONTROL_UPDATE = "processControlUpdate"
    MAINTENANCE_REQUEST_CONFIRMED = "maintenanceRequestConfirmed"
    MAINTENANCE_REQUEST_RECEIVED = "maintenanceRequestReceived"
    QUALITY_DATA_RECEIVED = "qualityDataReceived"
    EQUIPMENT_UPDATE = "equipmentUpdate"
    HISTORICAL_DATA = "historicalData"
    USER_STATUS_UPDATE = "userStatusUpdate"
    USER_DISCONNECTED = "userDisconnected"
    PERIODIC_REPORT = "periodicReport"


def encode_event(event: str, data: Any = None) -> str:
    return json.dumps({"event": event, "data": data})


def encode_command(command: str, data: Any = None) -> str:
    return json.dumps({"command": command, "data": data})


def decode_event(raw: str) -> Dict[str, Any]:
    message = json.loads(raw)
    if not isinstance(message, dict) or "event" not in message:
        raise ValidationError("Malformed event frame")
    return message


# =============================================================================
# Field helpers
# =============================================================================


def _object(data: Any, command: str) -> Dict[str, Any]:
    if not isinstance(data, dict):
        raise ValidationError(f"{command} expects an object payload")
    return data


def _text(data: Dict[str, Any], key: str, command: str, required: bool = True) -> Optional[str]:
    value = data.get(key)
    if value is None or value == "":
        if required:
            raise ValidationError(f"{command}: '{key}' is required")
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{command}: '{key}' must be a string")
    return value


def _enum(enum_cls: Type[E], value: Any, label: str) -> E:
    try:
        return enum_cls(value)
    except ValueError:
        valid = ", ".join(member.value for member in enum_cls)
        raise ValidationError(f"Invalid {label} '{value}'. Must be one of: {valid}") from None


def _scalar_id(data: Any, key: str, command: str) -> str:
    """Accept either a bare string payload or ``{key: "..."}``."""
    if isinstance(data, dict):
        data = data.get(key)
    if not isinstance(data, str) or not data:
        raise ValidationError(f"{command}: '{key}' is required")
    return data


# =============================================================================
# Commands
# =============================================================================


class Command:
    """Base for all client commands."""

    name: ClassVar[str] = ""
    requires_auth: ClassVar[bool] = True

    @classmethod
    def from_data(cls, data: Any) -> "Command":
        raise NotImplementedError


@dataclass(frozen=True)
class Authenticate(Command):
    name: ClassVar[str] = "authenticate"
    requires_auth: ClassVar[bool] = False

    token: str = ""

    @classmethod
    def from_data(cls, data: Any) -> "Authenticate":
        if isinstance(data, dict):
            data = data.get("token")
        return cls(token=data if isinstance(data, str) else "")


@dataclass(frozen=True)
class Ping(Command):
    name: ClassVar[str] = "ping"
    requires_auth: ClassVar[bool] = False

    @classmethod
    def from_data(cls, data: Any) -> "Ping":
        return cls()


@dataclass(frozen=True)
class SubscribeToProcess(Command):
    name: ClassVar[str] = "subscribeToProcess"

    process_type: ProcessType

    @classmethod
    def from_data(cls, data: Any) -> "SubscribeToProcess":
        value = _scalar_id(data, "processType", cls.name)
        return cls(process_type=_enum(ProcessType, value, "process type"))


@dataclass(frozen=True)
class UnsubscribeFromProcess(Command):
    name: ClassVar[str] = "unsubscribeFromProcess"

    process_type: ProcessType

    @classmethod
    def from_data(cls, data: Any) -> "UnsubscribeFromProcess":
        value = _scalar_id(data, "processType", cls.name)
        return cls(process_type=_enum(ProcessType, value, "process type"))


@dataclass(frozen=True)
class SubscribeToEquipment(Command):
    name: ClassVar[str] = "subscribeToEquipment"

    equipment_id: str

    @classmethod
    def from_data(cls, data: Any) -> "SubscribeToEquipment":
        return cls(equipment_id=_scalar_id(data, "equipmentId", cls.name))


@dataclass(frozen=True)
class SubscribeToAlerts(Command):
    """``severity`` of None subscribes to the wildcard topic."""

    name: ClassVar[str] = "subscribeToAlerts"

    severity: Optional[AlertSeverity] = None

    @classmethod
    def from_data(cls, data: Any) -> "SubscribeToAlerts":
        if isinstance(data, dict):
            data = data.get("severity")
        if data is None or data == "" or data == ALL_ALERTS:
            return cls()
        return cls(severity=_enum(AlertSeverity, data, "severity"))


@dataclass(frozen=True)
class AcknowledgeAlert(Command):
    name: ClassVar[str] = "acknowledgeAlert"

    alert_id: str

    @classmethod
    def from_data(cls, data: Any) -> "AcknowledgeAlert":
        return cls(alert_id=_scalar_id(data, "alertId", cls.name))


@dataclass(frozen=True)
class ProcessControl(Command):
    name: ClassVar[str] = "processControl"

    process_type: ProcessType
    action: str
    stage: Optional[str] = None
    parameters: Dict[str, Any] = field(default_factory=dict)
    reason: Optional[str] = None

    @classmethod
    def from_data(cls, data: Any) -> "ProcessControl":
        data = _object(data, cls.name)
        parameters = data.get("parameters") or {}
        if not isinstance(parameters, dict):
            raise ValidationError(f"{cls.name}: 'parameters' must be an object")
        return cls(
            process_type=_enum(
                ProcessType, _text(data, "processType", cls.name), "process type"
            ),
            action=_text(data, "action", cls.name),
            stage=_text(data, "stage", cls.name, required=False),
            parameters=parameters,
            reason=_text(data, "reason", cls.name, required=False),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processType": self.process_type.value,
            "stage": self.stage,
            "action": self.action,
            "parameters": self.parameters,
            "reason": self.reason or "Manual adjustment",
        }


@dataclass(frozen=True)
class ScheduleMaintenanceRequest(Command):
    name: ClassVar[str] = "scheduleMaintenanceRequest"

    equipment_id: str
    scheduled_date: str
    maintenance_type: str = "preventive"
    priority: str = "normal"
    notes: str = ""

    @classmethod
    def from_data(cls, data: Any) -> "ScheduleMaintenanceRequest":
        data = _object(data, cls.name)
        return cls(
            equipment_id=_text(data, "equipmentId", cls.name),
            scheduled_date=_text(data, "scheduledDate", cls.name),
            maintenance_type=_text(data, "maintenanceType", cls.name, required=False)
            or "preventive",
            priority=_text(data, "priority", cls.name, required=False) or "normal",
            notes=_text(data, "notes", cls.name, required=False) or "",
        )


@dataclass(frozen=True)
class QualityInspectionResult(Command):
    name: ClassVar[str] = "qualityInspectionResult"

    process_type: ProcessType
    stage: str
    batch_id: str
    measurements: Dict[str, Any]

    @classmethod
    def from_data(cls, data: Any) -> "QualityInspectionResult":
        data = _object(data, cls.name)
        measurements = data.get("measurements")
        if not isinstance(measurements, dict) or not measurements:
            raise ValidationError(f"{cls.name}: 'measurements' must be a non-empty object")
        return cls(
            process_type=_enum(
                ProcessType, _text(data, "processType", cls.name), "process type"
            ),
            stage=_text(data, "stage", cls.name),
            batch_id=_text(data, "batchId", cls.name),
            measurements=measurements,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processType": self.process_type.value,
            "stage": self.stage,
            "batchId": self.batch_id,
            "measurements": self.measurements,
        }


@dataclass(frozen=True)
class RequestHistoricalData(Command):
    name: ClassVar[str] = "requestHistoricalData"

    request_id: str
    hours: float = 24
    process_type: Optional[ProcessType] = None
    stage: Optional[str] = None

    @classmethod
    def from_data(cls, data: Any) -> "RequestHistoricalData":
        data = _object(data, cls.name)
        hours = data.get("hours", 24)
        if (
            isinstance(hours, bool)
            or not isinstance(hours, (int, float))
            or not math.isfinite(hours)
            or hours <= 0
        ):
            raise ValidationError(f"{cls.name}: 'hours' must be a positive finite number")
        process_type = _text(data, "processType", cls.name, required=False)
        return cls(
            request_id=_text(data, "requestId", cls.name),
            hours=hours,
            process_type=(
                _enum(ProcessType, process_type, "process type") if process_type else None
            ),
            stage=_text(data, "stage", cls.name, required=False),
        )


@dataclass(frozen=True)
class UpdateUserStatus(Command):
    name: ClassVar[str] = "updateUserStatus"

    status: str

    @classmethod
    def from_data(cls, data: Any) -> "UpdateUserStatus":
        return cls(status=_scalar_id(data, "status", cls.name))


COMMANDS: Dict[str, Type[Command]] = {
    command.name: command
    for command in (
        Authenticate,
        Ping,
        SubscribeToProcess,
        UnsubscribeFromProcess,
        SubscribeToEquipment,
        SubscribeToAlerts,
        AcknowledgeAlert,
        ProcessControl,
        ScheduleMaintenanceRequest,
        QualityInspectionResult,
        RequestHistoricalData,
        UpdateUserStatus,
    )
}


def parse_command(raw: str) -> Command:
    """Decode and validate one client frame."""
    try:
        message = json.loads(raw)
    except (TypeError, ValueError):
        raise ValidationError("Frame is not valid JSON") from None

    if not isinstance(message, dict):
        raise ValidationError("Frame must be a JSON object")
    name = message.get("command")
    command_cls = COMMANDS.get(name) if isinstance(name, str) else None
    if command_cls is None:
        raise ValidationError(f"Unknown command: {name}")
    return command_cls.from_data(message.get("data"))
