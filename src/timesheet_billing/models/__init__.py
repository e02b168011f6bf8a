"""ORM models."""

from timesheet_billing.models.base import Base, SoftDeleteMixin, TimestampMixin, utcnow
from timesheet_billing.models.billing import (
    BillingAdjustment,
    BillingRate,
    BillingSnapshot,
    adjustment_key,
)
from timesheet_billing.models.directory import (
    Client,
    Holiday,
    Project,
    ProjectMember,
    Task,
    User,
)
from timesheet_billing.models.timesheet import (
    ApprovalHistory,
    ProjectWeekAggregate,
    TimeEntry,
    Timesheet,
    TimesheetProjectApproval,
    week_end_for,
    week_start_for,
)

__all__ = [
    "Base",
    "SoftDeleteMixin",
    "TimestampMixin",
    "utcnow",
    "BillingAdjustment",
    "BillingRate",
    "BillingSnapshot",
    "adjustment_key",
    "Client",
    "Holiday",
    "Project",
    "ProjectMember",
    "Task",
    "User",
    "ApprovalHistory",
    "ProjectWeekAggregate",
    "TimeEntry",
    "Timesheet",
    "TimesheetProjectApproval",
    "week_end_for",
    "week_start_for",
]
