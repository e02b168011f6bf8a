"""Timesheet and billing services."""

from timesheet_billing.services.adjustment_service import AdjustmentService
from timesheet_billing.services.approval_service import ApprovalService, BulkItemResult, BulkResult
from timesheet_billing.services.audit import AuditTrail, MemoryAuditSink
from timesheet_billing.services.billing_service import BillingFilter, BillingService
from timesheet_billing.services.coordinator import ProjectWeekCoordinator, ProjectWeekStatus
from timesheet_billing.services.rate_service import RateInput, RateService
from timesheet_billing.services.state_machine import (
    EntryStatus,
    Tier,
    TimesheetStateMachine,
    TimesheetStatus,
)
from timesheet_billing.services.timesheet_service import TimesheetService

__all__ = [
    "AdjustmentService",
    "ApprovalService",
    "AuditTrail",
    "BillingFilter",
    "BillingService",
    "BulkItemResult",
    "BulkResult",
    "EntryStatus",
    "MemoryAuditSink",
    "ProjectWeekCoordinator",
    "ProjectWeekStatus",
    "RateInput",
    "RateService",
    "Tier",
    "TimesheetService",
    "TimesheetStateMachine",
    "TimesheetStatus",
]
