"""Timesheet state machine with transition validation."""

from __future__ import annotations

from enum import Enum

from timesheet_billing.errors import InvalidStateError


class TimesheetStatus(str, Enum):
    """Timesheet status values."""

    DRAFT = "draft"
    SUBMITTED = "submitted"
    LEAD_APPROVED = "lead_approved"
    LEAD_REJECTED = "lead_rejected"
    MANAGER_APPROVED = "manager_approved"
    MANAGER_REJECTED = "manager_rejected"
    MANAGEMENT_REJECTED = "management_rejected"
    FROZEN = "frozen"
    BILLED = "billed"


class EntryStatus(str, Enum):
    """Time entry status values."""

    DRAFT = "draft"
    SUBMITTED = "submitted"
    APPROVED = "approved"
    REJECTED = "rejected"
    FROZEN = "frozen"
    BILLED = "billed"


class Tier(str, Enum):
    """Approval stages."""

    LEAD = "lead"
    MANAGER = "manager"
    MANAGEMENT = "management"


class ApprovalStatus(str, Enum):
    """Per-project approval state of one tier."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class TimesheetStateMachine:
    """State machine for timesheet status transitions.

    Allowed transitions:
    - draft → submitted
    - submitted → lead_approved | lead_rejected
    - lead_approved → manager_approved | manager_rejected
    - manager_approved → frozen | management_rejected
    - lead_rejected | manager_rejected | management_rejected → submitted
    - frozen → billed
    """

    VALID_TRANSITIONS: dict[str, list[str]] = {
        TimesheetStatus.DRAFT: [TimesheetStatus.SUBMITTED],
        TimesheetStatus.SUBMITTED: [
            TimesheetStatus.LEAD_APPROVED,
            TimesheetStatus.LEAD_REJECTED,
        ],
        TimesheetStatus.LEAD_REJECTED: [TimesheetStatus.SUBMITTED],
        TimesheetStatus.LEAD_APPROVED: [
            TimesheetStatus.MANAGER_APPROVED,
            TimesheetStatus.MANAGER_REJECTED,
        ],
        TimesheetStatus.MANAGER_REJECTED: [TimesheetStatus.SUBMITTED],
        TimesheetStatus.MANAGER_APPROVED: [
            TimesheetStatus.FROZEN,
            TimesheetStatus.MANAGEMENT_REJECTED,
        ],
        TimesheetStatus.MANAGEMENT_REJECTED: [TimesheetStatus.SUBMITTED],
        TimesheetStatus.FROZEN: [TimesheetStatus.BILLED],
        TimesheetStatus.BILLED: [],  # Terminal state
    }

    # Tier that reviews a timesheet sitting in a given status
    REVIEW_TIER: dict[str, Tier] = {
        TimesheetStatus.SUBMITTED: Tier.LEAD,
        TimesheetStatus.LEAD_APPROVED: Tier.MANAGER,
        TimesheetStatus.MANAGER_APPROVED: Tier.MANAGEMENT,
    }

    APPROVED_STATUS: dict[Tier, TimesheetStatus] = {
        Tier.LEAD: TimesheetStatus.LEAD_APPROVED,
        Tier.MANAGER: TimesheetStatus.MANAGER_APPROVED,
        Tier.MANAGEMENT: TimesheetStatus.FROZEN,
    }

    REJECTED_STATUS: dict[Tier, TimesheetStatus] = {
        Tier.LEAD: TimesheetStatus.LEAD_REJECTED,
        Tier.MANAGER: TimesheetStatus.MANAGER_REJECTED,
        Tier.MANAGEMENT: TimesheetStatus.MANAGEMENT_REJECTED,
    }

    # Statuses in which the owner may edit entries
    EDITABLE = {
        TimesheetStatus.DRAFT,
        TimesheetStatus.LEAD_REJECTED,
        TimesheetStatus.MANAGER_REJECTED,
        TimesheetStatus.MANAGEMENT_REJECTED,
    }

    REJECTED = {
        TimesheetStatus.LEAD_REJECTED,
        TimesheetStatus.MANAGER_REJECTED,
        TimesheetStatus.MANAGEMENT_REJECTED,
    }

    # Statuses where entries are immutable for everyone
    IMMUTABLE = {
        TimesheetStatus.FROZEN,
        TimesheetStatus.BILLED,
    }

    # Entry statuses the owner may still change inside a rejected timesheet
    ENTRY_EDITABLE = {EntryStatus.DRAFT, EntryStatus.REJECTED}

    @classmethod
    def can_transition(cls, from_status: str, to_status: str) -> bool:
        """Check if a transition is valid."""
        allowed = cls.VALID_TRANSITIONS.get(from_status, [])
        return to_status in allowed

    @classmethod
    def validate_transition(
        cls, from_status: str, to_status: str, reason: str | None = None
    ) -> None:
        """Validate a transition, raising InvalidStateError if invalid."""
        if not cls.can_transition(from_status, to_status):
            raise InvalidStateError(from_status, to_status, reason)

    @classmethod
    def get_next_statuses(cls, current_status: str) -> list[str]:
        """Get list of valid next statuses from current status."""
        return [str(s.value) for s in cls.VALID_TRANSITIONS.get(current_status, [])]

    @classmethod
    def is_editable(cls, status: str) -> bool:
        return status in cls.EDITABLE

    @classmethod
    def is_rejected(cls, status: str) -> bool:
        return status in cls.REJECTED

    @classmethod
    def is_immutable(cls, status: str) -> bool:
        return status in cls.IMMUTABLE

    @classmethod
    def can_edit_entry(cls, timesheet_status: str, entry_status: str) -> bool:
        """Check if the owner may change an entry.

        Draft timesheets are fully editable; rejected timesheets only expose
        their rejected (and newly added) entries.
        """
        if timesheet_status == TimesheetStatus.DRAFT:
            return True
        if timesheet_status in cls.REJECTED:
            return entry_status in cls.ENTRY_EDITABLE
        return False

    @classmethod
    def review_tier(cls, status: str) -> Tier | None:
        """Tier that may act on a timesheet in this status, if any."""
        return cls.REVIEW_TIER.get(status)
