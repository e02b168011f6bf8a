"""Billing adjustment, rate and snapshot models."""

from __future__ import annotations

from datetime import date, datetime
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
    Index,
    Integer,
    Numeric,
    String,
    Text,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from timesheet_billing.models.base import Base, SoftDeleteMixin, TimestampMixin, utcnow

TIMESHEET_SCOPE_KEY = "timesheet"


def adjustment_key(
    scope: str, project_id: UUID | None, timesheet_id: UUID, user_id: UUID
) -> str:
    """Natural key of a live adjustment: (scope, project-or-none, timesheet, user)."""
    project_part = str(project_id) if project_id is not None else "-"
    return f"{scope}:{project_part}:{timesheet_id}:{user_id}"


class BillingAdjustment(Base, TimestampMixin, SoftDeleteMixin):
    """Signed billable-hour delta that persists as worked hours change.

    total_billable_hours = total_worked_hours + adjustment_hours at the time
    the adjustment was made; readers always recompute from current entries.
    """

    __tablename__ = "billing_adjustment"

    adjustment_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    adjustment_key: Mapped[str] = mapped_column(String, nullable=False)
    timesheet_id: Mapped[UUID] = mapped_column(
        ForeignKey("timesheet.timesheet_id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[UUID] = mapped_column(ForeignKey("app_user.user_id"), nullable=False)
    adjustment_scope: Mapped[str] = mapped_column(String, nullable=False, default="project")
    project_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("project.project_id"), nullable=True
    )
    task_id: Mapped[UUID | None] = mapped_column(ForeignKey("task.task_id"), nullable=True)

    billing_period_start: Mapped[date] = mapped_column(Date, nullable=False)
    billing_period_end: Mapped[date] = mapped_column(Date, nullable=False)

    total_worked_hours: Mapped[Decimal] = mapped_column(Numeric(12, 4), nullable=False)
    adjustment_hours: Mapped[Decimal] = mapped_column(Numeric(12, 4), nullable=False)
    total_billable_hours: Mapped[Decimal] = mapped_column(Numeric(12, 4), nullable=False)

    reason: Mapped[str | None] = mapped_column(Text)
    adjusted_by_id: Mapped[UUID] = mapped_column(nullable=False)
    adjusted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    deleted_by_id: Mapped[UUID | None] = mapped_column(nullable=True)

    __table_args__ = (
        CheckConstraint(
            "adjustment_scope IN ('project', 'timesheet')",
            name="billing_adjustment_scope_check",
        ),
        CheckConstraint(
            "(adjustment_scope = 'project' AND project_id IS NOT NULL) OR "
            "(adjustment_scope = 'timesheet' AND project_id IS NULL)",
            name="billing_adjustment_scope_project_check",
        ),
        CheckConstraint("total_worked_hours >= 0", name="billing_adjustment_worked_check"),
        CheckConstraint("total_billable_hours >= 0", name="billing_adjustment_billable_check"),
        Index(
            "billing_adjustment_live_key_unique",
            "adjustment_key",
            unique=True,
            sqlite_where=text("deleted_at IS NULL"),
            postgresql_where=text("deleted_at IS NULL"),
        ),
        Index("billing_adjustment_timesheet_idx", "timesheet_id", "project_id"),
    )


class BillingRate(Base, TimestampMixin, SoftDeleteMixin):
    """Hourly billing rate rule scoped to global, role, client, project or user."""

    __tablename__ = "billing_rate"

    rate_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    entity_type: Mapped[str] = mapped_column(String, nullable=False)
    entity_id: Mapped[UUID | None] = mapped_column(nullable=True)
    role: Mapped[str | None] = mapped_column(String, nullable=True)
    hourly_rate: Mapped[Decimal] = mapped_column(Numeric(12, 4), nullable=False)
    overtime_multiplier: Mapped[Decimal] = mapped_column(
        Numeric(6, 4), nullable=False, default=Decimal("1.5")
    )
    holiday_multiplier: Mapped[Decimal] = mapped_column(
        Numeric(6, 4), nullable=False, default=Decimal("2.0")
    )
    weekend_multiplier: Mapped[Decimal] = mapped_column(
        Numeric(6, 4), nullable=False, default=Decimal("1.5")
    )
    minimum_increment_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=15)
    effective_from: Mapped[date] = mapped_column(Date, nullable=False)
    effective_until: Mapped[date | None] = mapped_column(Date, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_by_id: Mapped[UUID | None] = mapped_column(nullable=True)

    __table_args__ = (
        CheckConstraint(
            "entity_type IN ('global', 'role', 'client', 'project', 'user')",
            name="billing_rate_entity_type_check",
        ),
        CheckConstraint("hourly_rate > 0", name="billing_rate_positive_check"),
        CheckConstraint("minimum_increment_minutes > 0", name="billing_rate_increment_check"),
        CheckConstraint(
            "effective_until IS NULL OR effective_until >= effective_from",
            name="billing_rate_dates_check",
        ),
    )

    def is_active_on(self, as_of_date: date) -> bool:
        """Check if rate is effective on a given date."""
        if not self.is_active or self.deleted_at is not None:
            return False
        if self.effective_from > as_of_date:
            return False
        if self.effective_until is not None and self.effective_until < as_of_date:
            return False
        return True


class BillingSnapshot(Base):
    """Immutable point-in-time billing computation for one frozen timesheet."""

    __tablename__ = "billing_snapshot"

    snapshot_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    timesheet_id: Mapped[UUID] = mapped_column(
        ForeignKey("timesheet.timesheet_id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[UUID] = mapped_column(ForeignKey("app_user.user_id"), nullable=False)
    week_start_date: Mapped[date] = mapped_column(Date, nullable=False)
    week_end_date: Mapped[date] = mapped_column(Date, nullable=False)

    total_hours: Mapped[Decimal] = mapped_column(Numeric(12, 4), nullable=False)
    billable_hours: Mapped[Decimal] = mapped_column(Numeric(12, 4), nullable=False)
    non_billable_hours: Mapped[Decimal] = mapped_column(Numeric(12, 4), nullable=False)
    adjustment_hours: Mapped[Decimal] = mapped_column(Numeric(12, 4), nullable=False)
    effective_rate: Mapped[Decimal] = mapped_column(Numeric(12, 4), nullable=False)
    billable_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    snapshot_data: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    created_by_id: Mapped[UUID] = mapped_column(nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    # Earlier snapshot of the same timesheet that this one replaces
    supersedes_id: Mapped[UUID | None] = mapped_column(nullable=True)
