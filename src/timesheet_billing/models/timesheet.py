"""Timesheet, time entry, approval and project-week models."""

from __future__ import annotations

from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from timesheet_billing.models.base import Base, SoftDeleteMixin, TimestampMixin, utcnow

TIERS = ("lead", "manager", "management")


def week_start_for(day: date) -> date:
    """Monday of the week containing day."""
    return day - timedelta(days=day.weekday())


def week_end_for(week_start: date) -> date:
    return week_start + timedelta(days=6)


# ===== Timesheets =====


class Timesheet(Base, TimestampMixin, SoftDeleteMixin):
    """Weekly (Monday to Sunday) timesheet owned by one user."""

    __tablename__ = "timesheet"

    timesheet_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(
        ForeignKey("app_user.user_id", ondelete="CASCADE"), nullable=False
    )
    week_start_date: Mapped[date] = mapped_column(Date, nullable=False)
    week_end_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False, default="draft")
    total_hours: Mapped[Decimal] = mapped_column(
        Numeric(12, 4), nullable=False, default=Decimal("0")
    )
    submitted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # One approval/rejection slot per tier
    lead_approved_by_id: Mapped[UUID | None] = mapped_column(nullable=True)
    lead_approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    lead_rejected_by_id: Mapped[UUID | None] = mapped_column(nullable=True)
    lead_rejected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    lead_rejection_reason: Mapped[str | None] = mapped_column(Text)

    manager_approved_by_id: Mapped[UUID | None] = mapped_column(nullable=True)
    manager_approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    manager_rejected_by_id: Mapped[UUID | None] = mapped_column(nullable=True)
    manager_rejected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    manager_rejection_reason: Mapped[str | None] = mapped_column(Text)

    management_approved_by_id: Mapped[UUID | None] = mapped_column(nullable=True)
    management_approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    management_rejected_by_id: Mapped[UUID | None] = mapped_column(nullable=True)
    management_rejected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    management_rejection_reason: Mapped[str | None] = mapped_column(Text)

    is_frozen: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    frozen_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    billed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    billing_snapshot_id: Mapped[UUID | None] = mapped_column(nullable=True)

    deleted_by_id: Mapped[UUID | None] = mapped_column(nullable=True)
    deleted_reason: Mapped[str | None] = mapped_column(Text)

    __table_args__ = (
        UniqueConstraint("user_id", "week_start_date", name="timesheet_user_week_unique"),
        CheckConstraint(
            "status IN ('draft', 'submitted', 'lead_approved', 'lead_rejected', "
            "'manager_approved', 'manager_rejected', 'management_rejected', "
            "'frozen', 'billed')",
            name="timesheet_status_check",
        ),
        CheckConstraint("week_end_date >= week_start_date", name="timesheet_week_check"),
    )

    def stamp_approval(self, tier: str, actor_id: UUID) -> None:
        """Record the approver of a tier."""
        setattr(self, f"{tier}_approved_by_id", actor_id)
        setattr(self, f"{tier}_approved_at", utcnow())

    def stamp_rejection(self, tier: str, actor_id: UUID, reason: str) -> None:
        """Record the rejecting reviewer and reason of a tier."""
        setattr(self, f"{tier}_rejected_by_id", actor_id)
        setattr(self, f"{tier}_rejected_at", utcnow())
        setattr(self, f"{tier}_rejection_reason", reason)

    def contains_date(self, work_date: date) -> bool:
        return self.week_start_date <= work_date <= self.week_end_date


class TimeEntry(Base, TimestampMixin, SoftDeleteMixin):
    """Atomic work record inside a timesheet."""

    __tablename__ = "time_entry"

    time_entry_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    timesheet_id: Mapped[UUID] = mapped_column(
        ForeignKey("timesheet.timesheet_id", ondelete="CASCADE"), nullable=False
    )
    project_id: Mapped[UUID] = mapped_column(ForeignKey("project.project_id"), nullable=False)
    task_id: Mapped[UUID | None] = mapped_column(ForeignKey("task.task_id"), nullable=True)
    entry_kind: Mapped[str] = mapped_column(String, nullable=False, default="project_task")
    custom_task_description: Mapped[str | None] = mapped_column(Text)
    work_date: Mapped[date] = mapped_column(Date, nullable=False)
    hours: Mapped[Decimal] = mapped_column(Numeric(6, 2), nullable=False)
    is_billable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    billable_override: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    notes: Mapped[str | None] = mapped_column(Text)
    status: Mapped[str] = mapped_column(String, nullable=False, default="draft")
    rejection_reason: Mapped[str | None] = mapped_column(Text)

    __table_args__ = (
        CheckConstraint("hours > 0 AND hours <= 24", name="time_entry_hours_check"),
        CheckConstraint(
            "entry_kind IN ('project_task', 'custom_task')",
            name="time_entry_kind_check",
        ),
        CheckConstraint(
            "status IN ('draft', 'submitted', 'approved', 'rejected', 'frozen', 'billed')",
            name="time_entry_status_check",
        ),
    )

    @property
    def task_label(self) -> str | None:
        """Free-text description for custom tasks, None for project tasks."""
        if self.entry_kind == "custom_task":
            return self.custom_task_description
        return None


# ===== Approvals =====


class TimesheetProjectApproval(Base, TimestampMixin):
    """Per-project, per-tier approval state for one timesheet."""

    __tablename__ = "timesheet_project_approval"

    approval_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    timesheet_id: Mapped[UUID] = mapped_column(
        ForeignKey("timesheet.timesheet_id", ondelete="CASCADE"), nullable=False
    )
    project_id: Mapped[UUID] = mapped_column(ForeignKey("project.project_id"), nullable=False)

    lead_status: Mapped[str] = mapped_column(String, nullable=False, default="pending")
    lead_actor_id: Mapped[UUID | None] = mapped_column(nullable=True)
    lead_acted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    lead_rejection_reason: Mapped[str | None] = mapped_column(Text)

    manager_status: Mapped[str] = mapped_column(String, nullable=False, default="pending")
    manager_actor_id: Mapped[UUID | None] = mapped_column(nullable=True)
    manager_acted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    manager_rejection_reason: Mapped[str | None] = mapped_column(Text)

    management_status: Mapped[str] = mapped_column(String, nullable=False, default="pending")
    management_actor_id: Mapped[UUID | None] = mapped_column(nullable=True)
    management_acted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    management_rejection_reason: Mapped[str | None] = mapped_column(Text)

    __table_args__ = (
        UniqueConstraint("timesheet_id", "project_id", name="tpa_timesheet_project_unique"),
    )

    def tier_status(self, tier: str) -> str:
        return getattr(self, f"{tier}_status")

    def mark(self, tier: str, status: str, actor_id: UUID, reason: str | None = None) -> None:
        setattr(self, f"{tier}_status", status)
        setattr(self, f"{tier}_actor_id", actor_id)
        setattr(self, f"{tier}_acted_at", utcnow())
        setattr(self, f"{tier}_rejection_reason", reason)

    def reset(self) -> None:
        """Return every tier to pending."""
        for tier in TIERS:
            setattr(self, f"{tier}_status", "pending")
            setattr(self, f"{tier}_actor_id", None)
            setattr(self, f"{tier}_acted_at", None)
            setattr(self, f"{tier}_rejection_reason", None)


class ApprovalHistory(Base):
    """Append-only approval trail."""

    __tablename__ = "approval_history"

    history_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    timesheet_id: Mapped[UUID] = mapped_column(
        ForeignKey("timesheet.timesheet_id", ondelete="CASCADE"), nullable=False
    )
    project_id: Mapped[UUID | None] = mapped_column(nullable=True)
    user_id: Mapped[UUID] = mapped_column(nullable=False)
    approver_id: Mapped[UUID] = mapped_column(nullable=False)
    tier: Mapped[str] = mapped_column(String, nullable=False)
    action: Mapped[str] = mapped_column(String, nullable=False)
    status_before: Mapped[str] = mapped_column(String, nullable=False)
    status_after: Mapped[str] = mapped_column(String, nullable=False)
    reason: Mapped[str | None] = mapped_column(Text)
    notes: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )


# ===== Project-week coordination =====


class ProjectWeekAggregate(Base):
    """Materialized coordination counters for one (project, week).

    Derived from timesheet and approval rows; recomputed on every change,
    never used as the source of truth.
    """

    __tablename__ = "project_week_aggregate"

    aggregate_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    project_id: Mapped[UUID] = mapped_column(ForeignKey("project.project_id"), nullable=False)
    week_start_date: Mapped[date] = mapped_column(Date, nullable=False)

    required_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    submitted_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    lead_approved_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    manager_approved_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    frozen_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    rejected_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    submission_complete: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    lead_complete: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    manager_complete: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    management_complete: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    reopened: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    reopened_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    billable_ledger: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    # Stage name -> ids of required users who have not reached it
    outstanding: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    __table_args__ = (
        UniqueConstraint("project_id", "week_start_date", name="pwa_project_week_unique"),
    )
