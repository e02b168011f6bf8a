"""Time entry input variants.

An entry is either logged against a project task or against a free-text
custom task. Each variant checks its own required fields when constructed.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Union
from uuid import UUID

from timesheet_billing.errors import ValidationError

PROJECT_TASK = "project_task"
CUSTOM_TASK = "custom_task"


def _check_hours(hours: Decimal) -> None:
    if not isinstance(hours, Decimal):
        raise ValidationError(f"hours must be a Decimal, got {type(hours).__name__}")
    if hours <= 0:
        raise ValidationError("hours must be greater than zero")


@dataclass(frozen=True)
class ProjectTaskEntry:
    """Hours logged against a task of a project."""

    project_id: UUID
    task_id: UUID
    work_date: date
    hours: Decimal
    is_billable: bool = True
    notes: str | None = None

    kind = PROJECT_TASK

    def __post_init__(self) -> None:
        if self.project_id is None:
            raise ValidationError("project_id is required for project task entries")
        if self.task_id is None:
            raise ValidationError("task_id is required for project task entries")
        _check_hours(self.hours)

    @property
    def billable(self) -> bool:
        return self.is_billable

    @property
    def description(self) -> str | None:
        return None

    @property
    def billable_override(self) -> bool:
        return False


@dataclass(frozen=True)
class CustomTaskEntry:
    """Hours logged against a free-text task inside a project.

    Custom tasks are non-billable unless billable_override is set.
    """

    project_id: UUID
    description: str
    work_date: date
    hours: Decimal
    billable_override: bool = False
    notes: str | None = None

    kind = CUSTOM_TASK

    def __post_init__(self) -> None:
        if self.project_id is None:
            raise ValidationError("project_id is required for custom task entries")
        if not self.description or not self.description.strip():
            raise ValidationError("description is required for custom task entries")
        _check_hours(self.hours)

    @property
    def task_id(self) -> None:
        return None

    @property
    def billable(self) -> bool:
        return self.billable_override


EntryInput = Union[ProjectTaskEntry, CustomTaskEntry]
