"""User, client, project, membership, task and holiday directory models.

These tables are owned by the surrounding application; the engine only reads
them (membership rows are also written by directory administration flows).
"""

from __future__ import annotations

from datetime import date
from uuid import UUID, uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    ForeignKey,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from timesheet_billing.models.base import Base, SoftDeleteMixin, TimestampMixin


class User(Base, TimestampMixin):
    """Directory user."""

    __tablename__ = "app_user"

    user_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    full_name: Mapped[str] = mapped_column(String, nullable=False)
    email: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    role: Mapped[str] = mapped_column(String, nullable=False, default="employee")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    __table_args__ = (
        CheckConstraint(
            "role IN ('employee', 'lead', 'manager', 'management', 'super_admin')",
            name="app_user_role_check",
        ),
    )


class Client(Base, TimestampMixin):
    """Billing client owning projects."""

    __tablename__ = "client"

    client_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String, nullable=False)


class Project(Base, TimestampMixin):
    """Project that time is logged against."""

    __tablename__ = "project"

    project_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String, nullable=False)
    client_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("client.client_id"), nullable=True
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class ProjectMember(Base, TimestampMixin, SoftDeleteMixin):
    """Assignment of a user to a project for a date range."""

    __tablename__ = "project_member"

    project_member_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    project_id: Mapped[UUID] = mapped_column(
        ForeignKey("project.project_id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[UUID] = mapped_column(
        ForeignKey("app_user.user_id", ondelete="CASCADE"), nullable=False
    )
    project_role: Mapped[str] = mapped_column(String, nullable=False, default="employee")
    joined_on: Mapped[date] = mapped_column(Date, nullable=False)
    left_on: Mapped[date | None] = mapped_column(Date, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "project_role IN ('employee', 'lead', 'manager')",
            name="project_member_role_check",
        ),
        CheckConstraint(
            "left_on IS NULL OR left_on >= joined_on",
            name="project_member_dates_check",
        ),
    )

    def is_active_between(self, start: date, end: date) -> bool:
        """Check if the membership overlaps [start, end]."""
        if self.deleted_at is not None:
            return False
        if self.joined_on > end:
            return False
        if self.left_on is not None and self.left_on < start:
            return False
        return True


class Task(Base, TimestampMixin, SoftDeleteMixin):
    """Project task; unassigned tasks are open to every project member."""

    __tablename__ = "task"

    task_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    project_id: Mapped[UUID] = mapped_column(
        ForeignKey("project.project_id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String, nullable=False)
    assigned_user_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("app_user.user_id"), nullable=True
    )
    is_billable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    def is_assigned_to(self, user_id: UUID) -> bool:
        return self.assigned_user_id is None or self.assigned_user_id == user_id


class Holiday(Base, TimestampMixin):
    """Company holiday used for billing multiplier selection."""

    __tablename__ = "holiday"

    holiday_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    holiday_date: Mapped[date] = mapped_column(Date, nullable=False)
    name: Mapped[str] = mapped_column(String, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    __table_args__ = (UniqueConstraint("holiday_date", name="holiday_date_unique"),)
