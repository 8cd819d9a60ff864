"""Service-level error taxonomy.

Services raise these exceptions; the HTTP layer translates them into a
structured `{status, message, code}` body. Each subclass fixes the HTTP
status and the machine-readable `code`.
"""

from typing import Any, Optional


class ServiceError(Exception):
    """Base class for errors surfaced to API callers."""
    status_code = 500
    code = "internal_error"

    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        body = {"status": self.status_code, "message": self.message, "code": self.code}
        if self.details is not None:
            body["details"] = self.details
        return body


class ValidationError(ServiceError):
    """Malformed input or a reference that does not resolve."""
    status_code = 400
    code = "validation_error"


class Unauthorized(ServiceError):
    status_code = 401
    code = "unauthorized"


class Forbidden(ServiceError):
    status_code = 403
    code = "forbidden"


class NotFound(ServiceError):
    status_code = 404
    code = "not_found"


class PolicyViolation(ServiceError):
    """Retake limits or cooldown prevent a new attempt."""
    status_code = 409
    code = "policy_violation"


class InvalidState(ServiceError):
    """Mutation attempted on a record in a terminal state."""
    status_code = 409
    code = "invalid_state"


class Conflict(ServiceError):
    """Duplicate unique key or a lost compare-and-set race."""
    status_code = 409
    code = "conflict"
