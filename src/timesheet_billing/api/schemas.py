"""Pydantic schemas for API request/response models."""

from datetime import date, datetime
from decimal import Decimal
from typing import Annotated, Any, Literal, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from timesheet_billing.services.entry_types import CustomTaskEntry, ProjectTaskEntry


# ============================================================================
# Common
# ============================================================================


class ErrorResponse(BaseModel):
    """Schema for error response."""

    detail: str
    code: str | None = None
    context: dict[str, Any] | None = None


# ============================================================================
# Timesheet schemas
# ============================================================================


class TimesheetCreate(BaseModel):
    """Schema for opening the caller's timesheet for a week."""

    week_start: date


class TimesheetResponse(BaseModel):
    """Schema for timesheet response."""

    model_config = ConfigDict(from_attributes=True)

    timesheet_id: UUID
    user_id: UUID
    week_start_date: date
    week_end_date: date
    status: str
    total_hours: Decimal
    submitted_at: datetime | None = None
    is_frozen: bool
    frozen_at: datetime | None = None
    billed_at: datetime | None = None
    billing_snapshot_id: UUID | None = None
    lead_rejection_reason: str | None = None
    manager_rejection_reason: str | None = None
    management_rejection_reason: str | None = None


class TimeEntryResponse(BaseModel):
    """Schema for time entry response."""

    model_config = ConfigDict(from_attributes=True)

    time_entry_id: UUID
    timesheet_id: UUID
    project_id: UUID
    task_id: UUID | None = None
    entry_kind: str
    custom_task_description: str | None = None
    work_date: date
    hours: Decimal
    is_billable: bool
    billable_override: bool
    notes: str | None = None
    status: str
    rejection_reason: str | None = None


class TimesheetDetailResponse(BaseModel):
    """Schema for a timesheet with its live entries."""

    timesheet: TimesheetResponse
    entries: list[TimeEntryResponse]


class ProjectTaskEntryCreate(BaseModel):
    """Hours against a project task."""

    kind: Literal["project_task"]
    project_id: UUID
    task_id: UUID
    work_date: date
    hours: Decimal = Field(gt=0)
    is_billable: bool = True
    notes: str | None = None

    def to_domain(self) -> ProjectTaskEntry:
        return ProjectTaskEntry(
            project_id=self.project_id,
            task_id=self.task_id,
            work_date=self.work_date,
            hours=self.hours,
            is_billable=self.is_billable,
            notes=self.notes,
        )


class CustomTaskEntryCreate(BaseModel):
    """Hours against a free-text task."""

    kind: Literal["custom_task"]
    project_id: UUID
    description: str = Field(min_length=1)
    work_date: date
    hours: Decimal = Field(gt=0)
    billable_override: bool = False
    notes: str | None = None

    def to_domain(self) -> CustomTaskEntry:
        return CustomTaskEntry(
            project_id=self.project_id,
            description=self.description,
            work_date=self.work_date,
            hours=self.hours,
            billable_override=self.billable_override,
            notes=self.notes,
        )


EntryCreate = Annotated[
    Union[ProjectTaskEntryCreate, CustomTaskEntryCreate],
    Field(discriminator="kind"),
]


class EntryUpdate(BaseModel):
    """Schema for changing an entry; omitted fields are kept."""

    hours: Decimal | None = Field(default=None, gt=0)
    work_date: date | None = None
    is_billable: bool | None = None
    notes: str | None = None


class EntryResultResponse(BaseModel):
    """Schema for an added or updated entry."""

    entry: TimeEntryResponse
    warnings: list[str] = []


class SubmitResponse(BaseModel):
    """Schema for a submitted timesheet."""

    timesheet: TimesheetResponse
    warnings: list[str] = []


class TimesheetDelete(BaseModel):
    reason: str | None = None


class ApprovalHistoryResponse(BaseModel):
    """Schema for one approval history row."""

    model_config = ConfigDict(from_attributes=True)

    history_id: UUID
    project_id: UUID | None = None
    approver_id: UUID
    tier: str
    action: str
    status_before: str
    status_after: str
    reason: str | None = None
    notes: str | None = None
    created_at: datetime


# ============================================================================
# Approval schemas
# ============================================================================


class ApproveRequest(BaseModel):
    """Schema for approving one timesheet."""

    project_id: UUID | None = None
    notes: str | None = None


class RejectRequest(BaseModel):
    """Schema for rejecting one timesheet."""

    reason: str = Field(min_length=1)
    project_id: UUID | None = None
    entry_ids: list[UUID] | None = None


class ApprovalResponse(BaseModel):
    """Schema for an approve/reject outcome."""

    timesheet: TimesheetResponse
    tier: str
    action: str
    status_before: str
    status_after: str
    project_ids: list[UUID]


class BulkApproveRequest(BaseModel):
    tier: str | None = None


class BulkRejectRequest(BaseModel):
    reason: str = Field(min_length=1)
    tier: str | None = None


class ProjectWeekStatusResponse(BaseModel):
    """Schema for project-week coordination status."""

    model_config = ConfigDict(from_attributes=True)

    project_id: UUID
    week_start: date
    required_count: int
    submitted_count: int
    lead_approved_count: int
    manager_approved_count: int
    frozen_count: int
    rejected_count: int
    submission_complete: bool
    lead_complete: bool
    manager_complete: bool
    management_complete: bool
    reopened: bool
    reopened_at: datetime | None = None
    version: int
    outstanding: dict[str, list[UUID]] = Field(default_factory=dict)


class DefaulterResponse(BaseModel):
    """Schema for a required user who has not submitted."""

    model_config = ConfigDict(from_attributes=True)

    user_id: UUID
    user_name: str
    email: str
    project_role: str | None = None
    timesheet_status: str | None = None
    days_overdue: int


class ReviewQueueItemResponse(BaseModel):
    """Schema for a project-week waiting on the caller."""

    model_config = ConfigDict(from_attributes=True)

    tier: str
    status: ProjectWeekStatusResponse


class BulkItemResponse(BaseModel):
    """Schema for one item of a bulk operation."""

    model_config = ConfigDict(from_attributes=True)

    timesheet_id: UUID
    user_id: UUID | None = None
    success: bool
    status: str
    error_code: str | None = None
    error: str | None = None


class BulkResponse(BaseModel):
    """Schema for a bulk project-week outcome."""

    project_id: UUID
    week_start: date
    tier: str
    action: str
    succeeded: int
    failed: int
    items: list[BulkItemResponse]
    status: ProjectWeekStatusResponse | None = None


# ============================================================================
# Adjustment schemas
# ============================================================================


class AdjustmentRequest(BaseModel):
    """Schema for creating or replacing an adjustment."""

    adjustment_hours: Decimal
    project_id: UUID | None = None
    task_id: UUID | None = None
    reason: str | None = None


class BillableTargetRequest(BaseModel):
    """Schema for setting the billable hours of a scope directly."""

    target_hours: Decimal = Field(ge=0)
    project_id: UUID | None = None
    reason: str | None = None


class AdjustmentResponse(BaseModel):
    """Schema for adjustment response."""

    model_config = ConfigDict(from_attributes=True)

    adjustment_id: UUID
    timesheet_id: UUID
    user_id: UUID
    adjustment_scope: str
    project_id: UUID | None = None
    task_id: UUID | None = None
    total_worked_hours: Decimal
    adjustment_hours: Decimal
    total_billable_hours: Decimal
    reason: str | None = None
    adjusted_by_id: UUID
    adjusted_at: datetime


class BillableHoursResponse(BaseModel):
    worked_hours: Decimal
    adjustment_hours: Decimal
    billable_hours: Decimal


# ============================================================================
# Rate schemas
# ============================================================================


class RateCreate(BaseModel):
    """Schema for creating a billing rate rule."""

    entity_type: Literal["global", "role", "client", "project", "user"]
    hourly_rate: Decimal = Field(gt=0)
    effective_from: date
    entity_id: UUID | None = None
    role: str | None = None
    effective_until: date | None = None
    overtime_multiplier: Decimal = Decimal("1.5")
    holiday_multiplier: Decimal = Decimal("2.0")
    weekend_multiplier: Decimal = Decimal("1.5")
    minimum_increment_minutes: int = Field(default=15, gt=0)


class RateResponse(BaseModel):
    """Schema for billing rate response."""

    model_config = ConfigDict(from_attributes=True)

    rate_id: UUID
    entity_type: str
    entity_id: UUID | None = None
    role: str | None = None
    hourly_rate: Decimal
    overtime_multiplier: Decimal
    holiday_multiplier: Decimal
    weekend_multiplier: Decimal
    minimum_increment_minutes: int
    effective_from: date
    effective_until: date | None = None
    is_active: bool


# ============================================================================
# Billing schemas
# ============================================================================


class SnapshotResponse(BaseModel):
    """Schema for billing snapshot response."""

    model_config = ConfigDict(from_attributes=True)

    snapshot_id: UUID
    timesheet_id: UUID
    user_id: UUID
    week_start_date: date
    week_end_date: date
    total_hours: Decimal
    billable_hours: Decimal
    non_billable_hours: Decimal
    adjustment_hours: Decimal
    effective_rate: Decimal
    billable_amount: Decimal
    snapshot_data: dict[str, Any]
    created_by_id: UUID
    created_at: datetime
    supersedes_id: UUID | None = None


class BillRequest(BaseModel):
    timesheet_ids: list[UUID] = Field(min_length=1)


class BillMonthRequest(BaseModel):
    year: int = Field(ge=2000, le=2100)
    month: int = Field(ge=1, le=12)


class BillResponse(BaseModel):
    succeeded: int
    failed: int
    items: list[BulkItemResponse]
