"""Exception hierarchy for the monitoring server."""


class MonitorError(Exception):
    """Base class for errors surfaced to clients."""

    code = "error"
    http_status = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self):
        return {"message": self.message, "code": self.code}


class ValidationError(MonitorError):
    """Malformed command payload, unknown enum value or bad filter."""

    code = "validation"
    http_status = 400


class AuthenticationError(MonitorError):
    code = "unauthenticated"
    http_status = 401


class PermissionDenied(MonitorError):
    """The caller's role is not allowed to run the command."""

    code = "forbidden"
    http_status = 403


class NotFoundError(MonitorError):
    code = "not_found"
    http_status = 404


class AlreadyAcknowledged(MonitorError):
    """Second acknowledgment of an alert; distinct from not-found."""

    code = "already_acknowledged"
    http_status = 400
