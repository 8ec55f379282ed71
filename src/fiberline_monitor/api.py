"""REST API served next to the push channel."""

import logging
import math
from typing import Any, Dict, Optional

from aiohttp import web

from .auth import Identity, TokenIssuer, parse_role
from .errors import AuthenticationError, MonitorError, ValidationError
from .models import (
    AlertSeverity,
    AlertType,
    EquipmentStatus,
    ProcessType,
    format_instant,
    utcnow,
)
from .simulator import Simulator, maintenance_profile

logger = logging.getLogger(__name__)

API_VERSION = "1.0.0"

SIMULATOR_KEY = web.AppKey("simulator", Simulator)
ISSUER_KEY = web.AppKey("issuer", TokenIssuer)

PUBLIC_PATHS = frozenset({"/health", "/api/auth/login"})


@web.middleware
async def error_middleware(request: web.Request, handler) -> web.StreamResponse:
    """Render domain errors as ``{"error", "code"}`` with their HTTP status."""
    try:
        return await handler(request)
    except MonitorError as e:
        if e.http_status >= 500:
            logger.error(f"{request.method} {request.path} failed: {e.message}")
        return web.json_response({"error": e.message, "code": e.code}, status=e.http_status)


@web.middleware
async def auth_middleware(request: web.Request, handler) -> web.StreamResponse:
    if request.path in PUBLIC_PATHS:
        return await handler(request)
    header = request.headers.get("Authorization", "")
    token = header[len("Bearer "):] if header.startswith("Bearer ") else None
    request["identity"] = request.app[ISSUER_KEY].verify(token)
    return await handler(request)


def _identity(request: web.Request) -> Identity:
    return request["identity"]


async def _json_body(request: web.Request) -> Dict[str, Any]:
    if not request.can_read_body:
        return {}
    try:
        body = await request.json()
    except ValueError:
        raise ValidationError("Request body must be valid JSON") from None
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


def _enum_param(request: web.Request, name: str, enum_cls, label: str):
    value = request.query.get(name)
    if not value:
        return None
    try:
        return enum_cls(value)
    except ValueError:
        valid = ", ".join(member.value for member in enum_cls)
        raise ValidationError(f"Invalid {label}. Must be one of: {valid}") from None


def _number_param(request: web.Request, name: str, default: float, cast=float):
    value = request.query.get(name)
    if value is None:
        return default
    try:
        number = cast(value)
    except ValueError:
        raise ValidationError(f"'{name}' must be a number") from None
    if not math.isfinite(number) or number <= 0:
        raise ValidationError(f"'{name}' must be a positive finite number")
    return number


# =============================================================================
# Handlers
# =============================================================================


async def health(request: web.Request) -> web.Response:
    simulator = request.app[SIMULATOR_KEY]
    return web.json_response(
        {
            "status": "healthy",
            "version": API_VERSION,
            "timestamp": format_instant(utcnow()),
            "simulation": {
                "running": simulator.running,
                "ticks": simulator.tick_count,
                "connections": len(simulator.registry),
            },
        }
    )


async def login(request: web.Request) -> web.Response:
    """Accept any credential and issue a session token."""
    body = await _json_body(request)
    username = body.get("username")
    if not username or not isinstance(username, str):
        raise ValidationError("Username is required")
    role = parse_role(body["role"]) if body.get("role") else None

    issuer = request.app[ISSUER_KEY]
    token = issuer.issue(username, role)
    identity = issuer.verify(token)
    logger.info(f"User {username} logged in successfully")
    return web.json_response(
        {
            "success": True,
            "token": token,
            "user": {
                "username": identity.user_id,
                "role": identity.role.value,
                "permissions": identity.permissions,
            },
        }
    )


async def process_status(request: web.Request) -> web.Response:
    simulator = request.app[SIMULATOR_KEY]
    return web.json_response(
        {
            "success": True,
            "timestamp": format_instant(utcnow()),
            "processes": simulator.process_status(),
        }
    )


async def process_history(request: web.Request) -> web.Response:
    simulator = request.app[SIMULATOR_KEY]
    hours = _number_param(request, "hours", 24)
    process_type = _enum_param(request, "processType", ProcessType, "process type")
    stage = request.query.get("stage") or None
    records = simulator.store.read_process_history(hours, process_type=process_type, stage=stage)
    return web.json_response(
        {
            "success": True,
            "data": [record.to_dict() for record in records],
            "count": len(records),
            "filters": {
                "hours": hours,
                "processType": process_type.value if process_type else None,
                "stage": stage,
            },
        }
    )


async def equipment_status(request: web.Request) -> web.Response:
    simulator = request.app[SIMULATOR_KEY]
    return web.json_response(
        {
            "success": True,
            "timestamp": format_instant(utcnow()),
            "summary": simulator.equipment_summary(),
            "equipment": [unit.to_dict() for unit in simulator.store.equipment.get()],
        }
    )


async def equipment_detail(request: web.Request) -> web.Response:
    simulator = request.app[SIMULATOR_KEY]
    unit = simulator.store.equipment.find(request.match_info["equipment_id"])
    maintenance_type, duration = maintenance_profile(unit.type)
    return web.json_response(
        {
            "success": True,
            "equipment": unit.to_dict(),
            "maintenanceSchedule": {
                "lastMaintenance": format_instant(unit.last_maintenance),
                "nextMaintenance": format_instant(unit.next_maintenance),
                "maintenanceType": maintenance_type,
                "estimatedDuration": duration,
            },
        }
    )


async def schedule_maintenance(request: web.Request) -> web.Response:
    simulator = request.app[SIMULATOR_KEY]
    body = await _json_body(request)
    scheduled_date = body.get("scheduledDate")
    if not scheduled_date or not isinstance(scheduled_date, str):
        raise ValidationError("scheduledDate is required")
    schedule = simulator.schedule_maintenance(
        request.match_info["equipment_id"],
        scheduled_date,
        maintenance_type=body.get("maintenanceType") or "preventive",
        duration=body.get("duration"),
        technician=body.get("technician") or "TBD",
        notes=body.get("notes") or "",
        created_by=_identity(request).user_id,
    )
    return web.json_response(
        {"success": True, "message": "Maintenance scheduled successfully", "schedule": schedule},
        status=201,
    )


async def update_equipment_status(request: web.Request) -> web.Response:
    simulator = request.app[SIMULATOR_KEY]
    body = await _json_body(request)
    if not body.get("status"):
        raise ValidationError("Status is required")
    try:
        status = EquipmentStatus(body["status"])
    except ValueError:
        valid = ", ".join(member.value for member in EquipmentStatus)
        raise ValidationError(f"Invalid status. Must be one of: {valid}") from None
    update = simulator.update_equipment_status(
        request.match_info["equipment_id"],
        status,
        reason=body.get("reason") or "Manual update",
        updated_by=_identity(request).user_id,
    )
    return web.json_response(
        {"success": True, "message": "Equipment status updated successfully", "update": update}
    )


async def list_alerts(request: web.Request) -> web.Response:
    simulator = request.app[SIMULATOR_KEY]
    severity = _enum_param(request, "severity", AlertSeverity, "severity")
    alert_type = _enum_param(request, "type", AlertType, "alert type")
    acknowledged: Optional[bool] = None
    if "acknowledged" in request.query:
        acknowledged = request.query["acknowledged"] == "true"
    limit = _number_param(request, "limit", 50, cast=int)

    alerts = simulator.store.read_alerts(
        severity=severity, alert_type=alert_type, acknowledged=acknowledged, limit=limit
    )
    summary = {
        "total": len(alerts),
        "unacknowledged": sum(1 for alert in alerts if not alert.acknowledged),
        "bySeverity": {
            level.value: sum(1 for alert in alerts if alert.severity == level)
            for level in AlertSeverity
        },
        "byType": {
            kind.value: sum(1 for alert in alerts if alert.type == kind) for kind in AlertType
        },
    }
    return web.json_response(
        {"success": True, "summary": summary, "alerts": [alert.to_dict() for alert in alerts]}
    )


async def alert_statistics(request: web.Request) -> web.Response:
    simulator = request.app[SIMULATOR_KEY]
    period = _number_param(request, "period", 24)
    return web.json_response(
        {
            "success": True,
            "timestamp": format_instant(utcnow()),
            "statistics": simulator.alert_statistics(period),
        }
    )


async def create_alert(request: web.Request) -> web.Response:
    """Raise an alert by hand; subscribers get it as ``newAlert``."""
    simulator = request.app[SIMULATOR_KEY]
    body = await _json_body(request)
    fields = {key: body.get(key) for key in ("type", "severity", "message", "source")}
    if not all(isinstance(value, str) and value for value in fields.values()):
        raise ValidationError("type, severity, message, and source are required")
    try:
        alert_type = AlertType(fields["type"])
    except ValueError:
        valid = ", ".join(member.value for member in AlertType)
        raise ValidationError(f"Invalid type. Must be one of: {valid}") from None
    try:
        severity = AlertSeverity(fields["severity"])
    except ValueError:
        valid = ", ".join(member.value for member in AlertSeverity)
        raise ValidationError(f"Invalid severity. Must be one of: {valid}") from None

    alert = simulator.create_alert(
        alert_type,
        severity,
        fields["message"],
        fields["source"],
        created_by=_identity(request).user_id,
    )
    return web.json_response(
        {"success": True, "message": "Alert created", "alert": alert.to_dict()}, status=201
    )


async def alert_detail(request: web.Request) -> web.Response:
    simulator = request.app[SIMULATOR_KEY]
    alert = simulator.store.alerts.get(request.match_info["alert_id"])
    return web.json_response({"success": True, "alert": alert.to_dict()})


async def acknowledge_alert(request: web.Request) -> web.Response:
    simulator = request.app[SIMULATOR_KEY]
    notice = simulator.acknowledge_alert(
        request.match_info["alert_id"], _identity(request).user_id
    )
    return web.json_response(
        {"success": True, "message": "Alert acknowledged", "acknowledgment": notice.to_dict()}
    )


async def acknowledge_bulk(request: web.Request) -> web.Response:
    simulator = request.app[SIMULATOR_KEY]
    body = await _json_body(request)
    alert_ids = body.get("alertIds")
    if not isinstance(alert_ids, list):
        raise ValidationError("alertIds array is required")
    notices = simulator.acknowledge_alerts(
        [str(alert_id) for alert_id in alert_ids], _identity(request).user_id
    )
    return web.json_response(
        {
            "success": True,
            "message": f"{len(notices)} alerts acknowledged",
            "acknowledgments": [notice.to_dict() for notice in notices],
        }
    )


def create_app(simulator: Simulator, issuer: TokenIssuer) -> web.Application:
    """Build the REST application."""
    app = web.Application(middlewares=[error_middleware, auth_middleware])
    app[SIMULATOR_KEY] = simulator
    app[ISSUER_KEY] = issuer

    app.router.add_get("/health", health)
    app.router.add_post("/api/auth/login", login)
    app.router.add_get("/api/process/status", process_status)
    app.router.add_get("/api/process/history", process_history)
    app.router.add_get("/api/equipment/status", equipment_status)
    app.router.add_get("/api/equipment/{equipment_id}", equipment_detail)
    app.router.add_post("/api/equipment/{equipment_id}/maintenance", schedule_maintenance)
    app.router.add_patch("/api/equipment/{equipment_id}/status", update_equipment_status)
    app.router.add_get("/api/alerts", list_alerts)
    app.router.add_post("/api/alerts", create_alert)
    app.router.add_get("/api/alerts/statistics", alert_statistics)
    app.router.add_post("/api/alerts/acknowledge-bulk", acknowledge_bulk)
    app.router.add_get("/api/alerts/{alert_id}", alert_detail)
    app.router.add_post("/api/alerts/{alert_id}/acknowledge", acknowledge_alert)

    return app
