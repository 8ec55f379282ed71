"""Tests for session tokens and role permissions."""

from datetime import datetime, timedelta, timezone

import jwt
import pytest

from fiberline_monitor.auth import (
    ALGORITHM,
    Action,
    Identity,
    Role,
    TokenIssuer,
    parse_role,
)
from fiberline_monitor.errors import AuthenticationError, PermissionDenied, ValidationError


class TestTokenIssuer:
    """Tests for TokenIssuer."""

    @pytest.fixture
    def issuer(self):
        return TokenIssuer("secret")

    def test_issue_and_verify(self, issuer):
        identity = issuer.verify(issuer.issue("quality_mgr"))

        assert identity.user_id == "quality_mgr"
        assert identity.role == Role.QUALITY_MANAGER
        assert "quality_input" in identity.permissions

    def test_unknown_user_defaults_to_operator(self, issuer):
        assert issuer.verify(issuer.issue("someone")).role == Role.OPERATOR

    def test_explicit_role(self, issuer):
        identity = issuer.verify(issuer.issue("someone", Role.MAINTENANCE))
        assert identity.role == Role.MAINTENANCE

    def test_empty_username(self, issuer):
        with pytest.raises(ValidationError):
            issuer.issue("")

    @pytest.mark.parametrize("token", [None, "", "not-a-jwt"])
    def test_rejects_missing_or_malformed(self, issuer, token):
        with pytest.raises(AuthenticationError):
            issuer.verify(token)

    def test_rejects_wrong_secret(self, issuer):
        token = TokenIssuer("other").issue("operator1")
        with pytest.raises(AuthenticationError):
            issuer.verify(token)

    def test_rejects_expired(self, issuer):
        past = datetime.now(timezone.utc) - timedelta(hours=2)
        token = jwt.encode(
            {"sub": "operator1", "role": "operator", "iat": past, "exp": past + timedelta(hours=1)},
            "secret",
            algorithm=ALGORITHM,
        )
        with pytest.raises(AuthenticationError, match="expired"):
            issuer.verify(token)

    def test_rejects_unknown_role(self, issuer):
        token = jwt.encode({"sub": "x", "role": "janitor"}, "secret", algorithm=ALGORITHM)
        with pytest.raises(AuthenticationError):
            issuer.verify(token)


class TestPermissions:
    @pytest.mark.parametrize(
        "role,allowed",
        [
            (Role.OPERATOR, True),
            (Role.PRODUCTION_MANAGER, True),
            (Role.QUALITY_MANAGER, False),
            (Role.EXECUTIVE, False),
            (Role.MAINTENANCE, False),
            (Role.ENVIRONMENTAL_OFFICER, False),
        ],
    )
    def test_process_control(self, role, allowed):
        assert Identity("u", role).can(Action.PROCESS_CONTROL) is allowed

    @pytest.mark.parametrize(
        "role,allowed",
        [
            (Role.QUALITY_MANAGER, True),
            (Role.OPERATOR, True),
            (Role.PRODUCTION_MANAGER, False),
            (Role.EXECUTIVE, False),
        ],
    )
    def test_quality_submission(self, role, allowed):
        assert Identity("u", role).can(Action.QUALITY_SUBMISSION) is allowed

    def test_require_raises(self):
        with pytest.raises(PermissionDenied) as exc:
            Identity("u", Role.EXECUTIVE).require(Action.PROCESS_CONTROL)
        assert exc.value.code == "forbidden"
        assert exc.value.http_status == 403

    def test_parse_role(self):
        assert parse_role("executive") == Role.EXECUTIVE
        with pytest.raises(ValidationError):
            parse_role("janitor")
