"""Error taxonomy shared by services and the API layer."""

from typing import Any


class CreditflowError(Exception):
    """Base error with a stable code and an HTTP status for the API layer."""

    code = "ERROR"
    status_code = 500

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class InsufficientCreditsError(CreditflowError):
    """Raised when user has insufficient credits."""

    code = "INSUFFICIENT_CREDITS"
    status_code = 402

    def __init__(self, required: int, available: int):
        self.required = required
        self.available = available
        super().__init__(
            f"Insufficient credits: required {required}, available {available}",
            details={"required": required, "available": available},
        )


class NotFoundError(CreditflowError):
    code = "NOT_FOUND"
    status_code = 404


class PreconditionFailedError(CreditflowError):
    """Invitation expired, already used, or issued for another email."""

    code = "PRECONDITION_FAILED"
    status_code = 412


class ConflictError(CreditflowError):
    code = "CONFLICT"
    status_code = 409


class ForbiddenError(CreditflowError):
    code = "FORBIDDEN"
    status_code = 403
