"""Type definitions for the billing computation pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any
from uuid import UUID

ZERO = Decimal("0")
OUTPUT_PRECISION = Decimal("0.01")
HOURS_PRECISION = Decimal("0.0001")


def to_output(value: Decimal) -> Decimal:
    """Round to 2 places for presentation; never applied mid-computation."""
    return value.quantize(OUTPUT_PRECISION, rounding=ROUND_HALF_UP)


def jsonable(value: Any) -> Any:
    """Decimals and ids as strings, dates as ISO text, containers recursively."""
    if isinstance(value, dict):
        return {str(k): jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [jsonable(v) for v in value]
    if isinstance(value, (Decimal, UUID)):
        return str(value)
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return value


class RateScope(str, Enum):
    """Billing rate rule scopes, most specific first."""

    USER = "user"
    PROJECT = "project"
    CLIENT = "client"
    ROLE = "role"
    GLOBAL = "global"


# Lower value wins
SCOPE_PRECEDENCE: dict[str, int] = {
    RateScope.USER: 0,
    RateScope.PROJECT: 1,
    RateScope.CLIENT: 2,
    RateScope.ROLE: 3,
    RateScope.GLOBAL: 4,
}


class MultiplierKind(str, Enum):
    """Which multiplier was applied to the base rate."""

    BASE = "base"
    OVERTIME = "overtime"
    WEEKEND = "weekend"
    HOLIDAY = "holiday"


@dataclass(frozen=True)
class BillableHours:
    """Worked, adjustment and billable hours for one scope."""

    worked_hours: Decimal
    adjustment_hours: Decimal
    billable_hours: Decimal

    def to_dict(self) -> dict[str, str]:
        return {
            "worked_hours": str(self.worked_hours),
            "adjustment_hours": str(self.adjustment_hours),
            "billable_hours": str(self.billable_hours),
        }


@dataclass(frozen=True)
class ResolvedRate:
    """Rate selected for one entry date."""

    rate_id: UUID
    scope: str
    base_rate: Decimal
    multiplier: Decimal
    multiplier_kind: MultiplierKind
    effective_rate: Decimal
    minimum_increment_minutes: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "rate_id": str(self.rate_id),
            "scope": str(self.scope),
            "base_rate": str(self.base_rate),
            "multiplier": str(self.multiplier),
            "multiplier_kind": self.multiplier_kind.value,
            "effective_rate": str(self.effective_rate),
            "minimum_increment_minutes": self.minimum_increment_minutes,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ResolvedRate:
        return cls(
            rate_id=UUID(data["rate_id"]),
            scope=data["scope"],
            base_rate=Decimal(data["base_rate"]),
            multiplier=Decimal(data["multiplier"]),
            multiplier_kind=MultiplierKind(data["multiplier_kind"]),
            effective_rate=Decimal(data["effective_rate"]),
            minimum_increment_minutes=int(data["minimum_increment_minutes"]),
        )


@dataclass(frozen=True)
class BillableEntry:
    """Aggregation input: one live time entry with its resolved rate."""

    entry_id: UUID
    timesheet_id: UUID
    user_id: UUID
    user_name: str
    project_id: UUID
    project_name: str
    week_start: date
    work_date: date
    hours: Decimal
    is_billable: bool
    rate: ResolvedRate
    task_id: UUID | None = None
    task_name: str = ""
    client_id: UUID | None = None

    @property
    def sort_key(self) -> tuple[str, str, date, str]:
        return (str(self.timesheet_id), str(self.project_id), self.work_date, str(self.entry_id))

    @property
    def task_key(self) -> str:
        """Grouping key: task id for project tasks, description for custom tasks."""
        if self.task_id is not None:
            return str(self.task_id)
        return f"custom:{self.task_name}"


@dataclass(frozen=True)
class AdjustmentDelta:
    """Aggregation input: one live adjustment."""

    timesheet_id: UUID
    adjustment_hours: Decimal
    project_id: UUID | None = None  # None = timesheet scope


@dataclass
class EntryLine:
    """Per-entry computation result (unrounded)."""

    entry: BillableEntry
    worked_hours: Decimal
    billable_hours: Decimal
    amount: Decimal

    @property
    def non_billable_hours(self) -> Decimal:
        return self.worked_hours if not self.entry.is_billable else ZERO

    def to_dict(self) -> dict[str, Any]:
        """Stored form; amount is recomputed from billable hours and rate."""
        return {
            "entry_id": str(self.entry.entry_id),
            "project_id": str(self.entry.project_id),
            "task_id": str(self.entry.task_id) if self.entry.task_id else None,
            "task_name": self.entry.task_name,
            "work_date": self.entry.work_date.isoformat(),
            "hours": str(self.entry.hours),
            "is_billable": self.entry.is_billable,
            "worked_hours": str(self.worked_hours),
            "billable_hours": str(self.billable_hours),
            "amount": str(to_output(self.amount)),
            "rate": self.entry.rate.to_dict(),
        }


@dataclass
class Totals:
    """Running totals for one view row (unrounded until to_dict)."""

    worked_hours: Decimal = ZERO
    billable_hours: Decimal = ZERO
    non_billable_hours: Decimal = ZERO
    amount: Decimal = ZERO

    def add(self, line: EntryLine) -> None:
        self.worked_hours += line.worked_hours
        self.billable_hours += line.billable_hours
        self.non_billable_hours += line.non_billable_hours
        self.amount += line.amount

    @property
    def adjustment_hours(self) -> Decimal:
        """Billable hours minus billable worked hours."""
        return self.billable_hours - (self.worked_hours - self.non_billable_hours)

    def to_dict(self) -> dict[str, Decimal]:
        return {
            "worked_hours": to_output(self.worked_hours),
            "billable_hours": to_output(self.billable_hours),
            "non_billable_hours": to_output(self.non_billable_hours),
            "adjustment_hours": to_output(self.adjustment_hours),
            "amount": to_output(self.amount),
        }


@dataclass
class TaskRow:
    task_key: str
    task_name: str
    task_id: UUID | None
    totals: Totals = field(default_factory=Totals)

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": str(self.task_id) if self.task_id else None,
            "task_name": self.task_name,
            **self.totals.to_dict(),
        }


@dataclass
class UserProjectRow:
    project_id: UUID
    project_name: str
    totals: Totals = field(default_factory=Totals)
    tasks: dict[str, TaskRow] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "project_id": str(self.project_id),
            "project_name": self.project_name,
            **self.totals.to_dict(),
            "tasks": [self.tasks[k].to_dict() for k in sorted(self.tasks)],
        }


@dataclass
class ProjectUserRow:
    user_id: UUID
    user_name: str
    totals: Totals = field(default_factory=Totals)

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": str(self.user_id),
            "user_name": self.user_name,
            **self.totals.to_dict(),
        }


@dataclass
class ProjectView:
    project_id: UUID
    project_name: str
    client_id: UUID | None
    totals: Totals = field(default_factory=Totals)
    users: dict[str, ProjectUserRow] = field(default_factory=dict)
    weeks: dict[date, Totals] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "project_id": str(self.project_id),
            "project_name": self.project_name,
            "client_id": str(self.client_id) if self.client_id else None,
            **self.totals.to_dict(),
            "users": [self.users[k].to_dict() for k in sorted(self.users)],
            "weeks": [
                {"week_start": week.isoformat(), **self.weeks[week].to_dict()}
                for week in sorted(self.weeks)
            ],
        }


@dataclass
class TaskView:
    project_id: UUID
    project_name: str
    task_key: str
    task_name: str
    task_id: UUID | None
    totals: Totals = field(default_factory=Totals)

    def to_dict(self) -> dict[str, Any]:
        return {
            "project_id": str(self.project_id),
            "project_name": self.project_name,
            "task_id": str(self.task_id) if self.task_id else None,
            "task_name": self.task_name,
            **self.totals.to_dict(),
        }


@dataclass
class UserView:
    user_id: UUID
    user_name: str
    totals: Totals = field(default_factory=Totals)
    projects: dict[str, UserProjectRow] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": str(self.user_id),
            "user_name": self.user_name,
            **self.totals.to_dict(),
            "projects": [self.projects[k].to_dict() for k in sorted(self.projects)],
        }


@dataclass
class BillingViews:
    """All three views plus period totals."""

    projects: list[ProjectView]
    tasks: list[TaskView]
    users: list[UserView]
    totals: Totals
    lines: list[EntryLine] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "totals": self.totals.to_dict(),
            "projects": [p.to_dict() for p in self.projects],
            "tasks": [t.to_dict() for t in self.tasks],
            "users": [u.to_dict() for u in self.users],
        }
