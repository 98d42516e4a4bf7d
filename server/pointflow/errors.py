"""Pointflow — Error taxonomy

Every failure raised by the permission guards and the closure workflow is a
PointflowError. The HTTP layer maps `status_code` and `code` straight into
the response body; the core never imports FastAPI.
"""

from typing import Optional


class PointflowError(Exception):
    code = "ERROR"
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"error": True, "code": self.code, "message": self.message}


class AuthenticationRequired(PointflowError):
    code = "AUTHENTICATION_REQUIRED"
    status_code = 401

    def __init__(self, message: str = "Authentication required"):
        super().__init__(message)


class Forbidden(PointflowError):
    """A permission or ownership check failed.

    Carries the denied action and, where relevant, the project and point so
    callers can log or display exactly what was refused.
    """
    code = "FORBIDDEN"
    status_code = 403

    def __init__(
        self,
        message: str = "Insufficient permissions for this action",
        action: Optional[str] = None,
        project_id: Optional[str] = None,
        point_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.action = action
        self.project_id = project_id
        self.point_id = point_id

    def to_dict(self) -> dict:
        body = super().to_dict()
        if self.action:
            body["action"] = self.action
        if self.project_id:
            body["project_id"] = self.project_id
        if self.point_id:
            body["point_id"] = self.point_id
        return body


class NotFound(PointflowError):
    code = "NOT_FOUND"
    status_code = 404


class ValidationError(PointflowError):
    code = "VALIDATION_ERROR"
    status_code = 400


class ContainerAlreadyClosed(PointflowError):
    """The container was not open when the close tried to claim it."""
    code = "ALREADY_CLOSED"
    status_code = 409


class RepositoryUnavailable(PointflowError):
    code = "DATABASE_UNAVAILABLE"
    status_code = 503

    def __init__(self, message: str = "Database temporarily unavailable. Please try again in a moment."):
        super().__init__(message)


class InvariantViolation(PointflowError):
    """Internal bug: policy tables or stored data broke an invariant."""
    code = "INVARIANT_VIOLATION"
    status_code = 500
