"""Domain error kinds raised by the engine services."""

from __future__ import annotations

from typing import Any


class TimesheetBillingError(Exception):
    """Base class for all domain errors."""

    code = "ERROR"

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class ValidationError(TimesheetBillingError):
    """Malformed input: hours out of range, missing entry fields, etc."""

    code = "VALIDATION_ERROR"

    def __init__(
        self,
        message: str,
        errors: list[str] | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.errors = errors or [message]
        super().__init__(message, details)


class AuthorizationError(TimesheetBillingError):
    """Actor lacks the role, tier or assignment for the action."""

    code = "AUTHORIZATION_ERROR"


class PreconditionError(TimesheetBillingError):
    """Operation is not possible yet (e.g. project-week incomplete)."""

    code = "PRECONDITION_FAILED"


class InvalidStateError(TimesheetBillingError):
    """Raised when a status transition is not legal from the current status."""

    code = "INVALID_STATE"

    def __init__(self, from_status: str, to_status: str, reason: str | None = None):
        self.from_status = from_status
        self.to_status = to_status
        self.reason = reason
        msg = f"Invalid transition from '{from_status}' to '{to_status}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg, {"from_status": from_status, "to_status": to_status})


class NoRateFoundError(TimesheetBillingError):
    """No billing rate applies, not even a global default."""

    code = "NO_RATE_FOUND"


class NotFoundError(TimesheetBillingError):
    """Referenced entity is absent or soft-deleted."""

    code = "NOT_FOUND"

    def __init__(self, entity_type: str, entity_id: Any):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(
            f"{entity_type} {entity_id} not found",
            {"entity_type": entity_type, "entity_id": str(entity_id)},
        )
