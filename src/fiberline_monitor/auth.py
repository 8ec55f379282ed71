"""Session tokens and role permissions.

Login accepts any credential and issues a signed JWT. The token only carries
the session identity and role; it is not a real security boundary.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional

import jwt

from .errors import AuthenticationError, PermissionDenied, ValidationError

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"


class Role(Enum):
    OPERATOR = "operator"
    QUALITY_MANAGER = "quality_manager"
    PRODUCTION_MANAGER = "production_manager"
    ENVIRONMENTAL_OFFICER = "environmental_officer"
    EXECUTIVE = "executive"
    MAINTENANCE = "maintenance"


class Action(Enum):
    PROCESS_CONTROL = "process_control"
    QUALITY_SUBMISSION = "quality_submission"


AUTHORIZED_ROLES: Dict[Action, FrozenSet[Role]] = {
    Action.PROCESS_CONTROL: frozenset({Role.OPERATOR, Role.PRODUCTION_MANAGER}),
    Action.QUALITY_SUBMISSION: frozenset({Role.QUALITY_MANAGER, Role.OPERATOR}),
}

ROLE_PERMISSIONS: Dict[Role, List[str]] = {
    Role.OPERATOR: ["view_process", "control_process", "quality_input"],
    Role.QUALITY_MANAGER: ["view_process", "quality_input", "quality_reports", "view_analytics"],
    Role.PRODUCTION_MANAGER: [
        "view_process",
        "control_process",
        "view_analytics",
        "manage_schedules",
        "view_reports",
    ],
    Role.ENVIRONMENTAL_OFFICER: [
        "view_environmental",
        "environmental_reports",
        "compliance_reports",
    ],
    Role.EXECUTIVE: ["view_all", "executive_dashboard", "strategic_reports"],
    Role.MAINTENANCE: ["view_process", "view_equipment", "manage_maintenance"],
}

DEMO_USERS: Dict[str, Role] = {
    "operator1": Role.OPERATOR,
    "quality_mgr": Role.QUALITY_MANAGER,
    "prod_mgr": Role.PRODUCTION_MANAGER,
    "env_officer": Role.ENVIRONMENTAL_OFFICER,
    "executive": Role.EXECUTIVE,
    "maint_tech": Role.MAINTENANCE,
}


@dataclass(frozen=True)
class Identity:
    """The authenticated principal behind a connection or request."""

    user_id: str
    role: Role
    permissions: List[str] = field(default_factory=list)

    def can(self, action: Action) -> bool:
        return self.role in AUTHORIZED_ROLES[action]

    def require(self, action: Action) -> None:
        if not self.can(action):
            label = {
                Action.PROCESS_CONTROL: "process control",
                Action.QUALITY_SUBMISSION: "quality data submission",
            }[action]
            raise PermissionDenied(f"Insufficient permissions for {label}")


def parse_role(value: str) -> Role:
    try:
        return Role(value)
    except ValueError:
        valid = ", ".join(role.value for role in Role)
        raise ValidationError(f"Invalid role. Must be one of: {valid}") from None


class TokenIssuer:
    """Signs and verifies session tokens with a shared secret."""

    def __init__(self, secret: str, ttl_hours: int = 24):
        self.secret = secret
        self.ttl = timedelta(hours=ttl_hours)

    def issue(self, username: str, role: Optional[Role] = None) -> str:
        if not username:
            raise ValidationError("Username is required")
        role = role or DEMO_USERS.get(username, Role.OPERATOR)
        now = datetime.now(timezone.utc)
        payload: Dict[str, Any] = {
            "sub": username,
            "role": role.value,
            "permissions": ROLE_PERMISSIONS[role],
            "jti": str(uuid.uuid4()),
            "iat": now,
            "exp": now + self.ttl,
        }
        logger.info(f"Issued session token for {username} ({role.value})")
        return jwt.encode(payload, self.secret, algorithm=ALGORITHM)

    def verify(self, token: Optional[str]) -> Identity:
        if not token or not isinstance(token, str):
            raise AuthenticationError("Access token required")
        try:
            payload = jwt.decode(token, self.secret, algorithms=[ALGORITHM])
        except jwt.ExpiredSignatureError:
            raise AuthenticationError("Token expired") from None
        except jwt.InvalidTokenError:
            raise AuthenticationError("Invalid token") from None

        try:
            role = Role(payload.get("role"))
        except ValueError:
            raise AuthenticationError("Invalid token role") from None
        return Identity(
            user_id=str(payload.get("sub", "")),
            role=role,
            permissions=list(payload.get("permissions", [])),
        )
