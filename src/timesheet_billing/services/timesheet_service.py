"""Timesheet service: entry editing, submission and deletion."""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from timesheet_billing.calculators.types import ZERO
from timesheet_billing.config import Settings, get_settings
from timesheet_billing.errors import (
    AuthorizationError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from timesheet_billing.models import (
    TimeEntry,
    Timesheet,
    TimesheetProjectApproval,
    utcnow,
    week_end_for,
)
from timesheet_billing.services.audit import AuditTrail
from timesheet_billing.services.coordinator import ProjectWeekCoordinator
from timesheet_billing.services.directory import DirectoryService
from timesheet_billing.services.entry_types import CUSTOM_TASK, EntryInput
from timesheet_billing.services.state_machine import (
    EntryStatus,
    TimesheetStateMachine,
    TimesheetStatus,
)

logger = logging.getLogger(__name__)

WEEKDAY_NAMES = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")


@dataclass
class EntryResult:
    """An added or updated entry plus any soft warnings."""

    entry: TimeEntry
    warnings: list[str] = field(default_factory=list)


@dataclass
class SubmitResult:
    """A submitted timesheet plus any soft warnings."""

    timesheet: Timesheet
    warnings: list[str] = field(default_factory=list)


def _snapshot(timesheet: Timesheet) -> dict[str, str]:
    return {"status": timesheet.status, "total_hours": str(timesheet.total_hours)}


class TimesheetService:
    """Owner-facing timesheet operations.

    Operations:
    - get_or_create_timesheet: one timesheet per (user, Monday)
    - add_entry / update_entry / delete_entry: edits while editable
    - submit: validate hours and coverage, then enter the approval flow
    - delete_timesheet: soft-delete a draft
    """

    def __init__(
        self,
        session: AsyncSession,
        audit: AuditTrail | None = None,
        settings: Settings | None = None,
    ):
        self.session = session
        self.audit = audit or AuditTrail()
        self.settings = settings or get_settings()
        self.directory = DirectoryService(session)
        self.coordinator = ProjectWeekCoordinator(session, self.audit)

    # ----- lookups -----

    async def get_timesheet(self, timesheet_id: UUID) -> Timesheet:
        timesheet = await self.session.get(Timesheet, timesheet_id)
        if timesheet is None or timesheet.deleted_at is not None:
            raise NotFoundError("Timesheet", timesheet_id)
        return timesheet

    async def read_timesheet(self, actor_id: UUID, timesheet_id: UUID) -> Timesheet:
        """Timesheet as seen by an actor; owners and its reviewers only."""
        timesheet = await self.get_timesheet(timesheet_id)
        await self.coordinator.authorize_read(actor_id, timesheet)
        return timesheet

    async def get_entry(self, entry_id: UUID) -> TimeEntry:
        entry = await self.session.get(TimeEntry, entry_id)
        if entry is None or entry.deleted_at is not None:
            raise NotFoundError("TimeEntry", entry_id)
        return entry

    async def list_entries(self, timesheet_id: UUID) -> list[TimeEntry]:
        """Live entries of a timesheet in date order."""
        result = await self.session.execute(
            select(TimeEntry)
            .where(
                TimeEntry.timesheet_id == timesheet_id,
                TimeEntry.deleted_at.is_(None),
            )
            .order_by(TimeEntry.work_date, TimeEntry.created_at, TimeEntry.time_entry_id)
        )
        return list(result.scalars().all())

    async def find_timesheet(self, user_id: UUID, week_start: date) -> Timesheet | None:
        result = await self.session.execute(
            select(Timesheet).where(
                Timesheet.user_id == user_id,
                Timesheet.week_start_date == week_start,
                Timesheet.deleted_at.is_(None),
            )
        )
        return result.scalar_one_or_none()

    async def get_or_create_timesheet(self, user_id: UUID, week_start: date) -> Timesheet:
        """Return the user's timesheet for the week, creating a draft."""
        if week_start.weekday() != 0:
            raise ValidationError(
                f"week_start must be a Monday, got {week_start.isoformat()} "
                f"({WEEKDAY_NAMES[week_start.weekday()]})"
            )
        await self.directory.get_user(user_id)

        existing = await self.find_timesheet(user_id, week_start)
        if existing is not None:
            return existing

        # A soft-deleted timesheet keeps the (user, week) slot; revive it
        result = await self.session.execute(
            select(Timesheet).where(
                Timesheet.user_id == user_id,
                Timesheet.week_start_date == week_start,
            )
        )
        timesheet = result.scalar_one_or_none()
        if timesheet is not None:
            timesheet.deleted_at = None
            timesheet.deleted_by_id = None
            timesheet.deleted_reason = None
            timesheet.status = TimesheetStatus.DRAFT.value
            timesheet.total_hours = ZERO
        else:
            timesheet = Timesheet(
                user_id=user_id,
                week_start_date=week_start,
                week_end_date=week_end_for(week_start),
                status=TimesheetStatus.DRAFT.value,
                total_hours=ZERO,
                is_frozen=False,
            )
            self.session.add(timesheet)
        await self.session.flush()
        self.audit.emit(
            user_id, "timesheet_created", "timesheet", timesheet.timesheet_id,
            after=_snapshot(timesheet),
        )
        return timesheet

    # ----- guards -----

    def _ensure_owner(self, actor_id: UUID, timesheet: Timesheet) -> None:
        if timesheet.user_id != actor_id:
            raise AuthorizationError(
                "Only the timesheet owner may change or submit it",
                {"timesheet_id": str(timesheet.timesheet_id), "actor_id": str(actor_id)},
            )

    def _ensure_editable(self, timesheet: Timesheet, entry: TimeEntry | None = None) -> None:
        status = timesheet.status
        if TimesheetStateMachine.is_immutable(status):
            raise InvalidStateError(status, status, "entries of frozen or billed timesheets are immutable")
        if not TimesheetStateMachine.is_editable(status):
            raise InvalidStateError(status, status, f"timesheet is {status} and cannot be edited")
        if entry is not None and not TimesheetStateMachine.can_edit_entry(status, entry.status):
            raise InvalidStateError(
                status,
                status,
                f"entry is {entry.status}; only rejected entries can be changed after rejection",
            )

    def _hour_errors(self, hours: Decimal) -> list[str]:
        s = self.settings
        errors = []
        if hours <= 0 or hours > s.max_entry_hours:
            errors.append(f"hours must be greater than 0 and at most {s.max_entry_hours}, got {hours}")
        elif hours % s.hour_increment != 0:
            errors.append(f"hours must be a multiple of {s.hour_increment}, got {hours}")
        return errors

    def _weekend_warning(self, work_date: date, billable: bool) -> tuple[bool, list[str]]:
        """Apply the weekend billing policy; never a hard error."""
        if not billable or work_date.weekday() < 5:
            return billable, []
        day = WEEKDAY_NAMES[work_date.weekday()]
        if self.settings.force_weekend_non_billable:
            msg = f"Weekend entry on {day} {work_date.isoformat()} was made non-billable"
            logger.warning(msg)
            return False, [msg]
        msg = f"Billable weekend entry on {day} {work_date.isoformat()}"
        logger.warning(msg)
        return True, [msg]

    async def _check_daily_and_weekly(
        self, timesheet: Timesheet, work_date: date, hours: Decimal, exclude_id: UUID | None = None
    ) -> None:
        entries = [
            e for e in await self.list_entries(timesheet.timesheet_id)
            if e.time_entry_id != exclude_id
        ]
        day_total = sum((e.hours for e in entries if e.work_date == work_date), ZERO) + hours
        week_total = sum((e.hours for e in entries), ZERO) + hours
        errors = []
        if day_total > self.settings.max_daily_hours:
            errors.append(
                f"{work_date.isoformat()} would total {day_total} hours "
                f"(max {self.settings.max_daily_hours})"
            )
        if week_total > self.settings.max_weekly_hours:
            errors.append(
                f"week would total {week_total} hours (max {self.settings.max_weekly_hours})"
            )
        if errors:
            raise ValidationError(errors[0], errors)

    async def _recalculate_total(self, timesheet: Timesheet) -> None:
        await self.session.flush()
        entries = await self.list_entries(timesheet.timesheet_id)
        timesheet.total_hours = sum((e.hours for e in entries), ZERO)

    # ----- entries -----

    async def add_entry(
        self, actor_id: UUID, timesheet_id: UUID, data: EntryInput
    ) -> EntryResult:
        """Add an entry to an editable timesheet owned by the actor."""
        timesheet = await self.get_timesheet(timesheet_id)
        self._ensure_owner(actor_id, timesheet)
        self._ensure_editable(timesheet)

        errors = self._hour_errors(data.hours)
        if not timesheet.contains_date(data.work_date):
            errors.append(
                f"work_date {data.work_date.isoformat()} is outside the week "
                f"{timesheet.week_start_date.isoformat()}..{timesheet.week_end_date.isoformat()}"
            )
        if errors:
            raise ValidationError(errors[0], errors)

        project = await self.directory.get_project(data.project_id)
        if not project.is_active:
            raise ValidationError(f"Project {project.name} is not active")
        role = await self.directory.project_role(actor_id, data.project_id, data.work_date)
        if role is None:
            raise AuthorizationError(
                f"User is not a member of project {project.name} on {data.work_date.isoformat()}",
                {"project_id": str(data.project_id), "user_id": str(actor_id)},
            )

        billable = data.billable
        if data.kind != CUSTOM_TASK:
            task = await self.directory.get_task(data.task_id)
            if task.project_id != data.project_id:
                raise ValidationError(f"Task {task.name} does not belong to project {project.name}")
            if not task.is_assigned_to(actor_id):
                raise AuthorizationError(
                    f"Task {task.name} is assigned to another user",
                    {"task_id": str(task.task_id)},
                )
            billable = billable and task.is_billable

        await self._check_daily_and_weekly(timesheet, data.work_date, data.hours)
        billable, warnings = self._weekend_warning(data.work_date, billable)

        entry = TimeEntry(
            timesheet_id=timesheet.timesheet_id,
            project_id=data.project_id,
            task_id=data.task_id,
            entry_kind=data.kind,
            custom_task_description=data.description,
            work_date=data.work_date,
            hours=data.hours,
            is_billable=billable,
            billable_override=data.billable_override,
            notes=data.notes,
            status=EntryStatus.DRAFT.value,
        )
        self.session.add(entry)
        await self._recalculate_total(timesheet)
        self.audit.emit(
            actor_id, "entry_added", "time_entry", entry.time_entry_id,
            after={"hours": str(entry.hours), "work_date": entry.work_date.isoformat(),
                   "project_id": str(entry.project_id), "is_billable": entry.is_billable},
        )
        return EntryResult(entry=entry, warnings=warnings)

    async def update_entry(
        self,
        actor_id: UUID,
        entry_id: UUID,
        hours: Decimal | None = None,
        work_date: date | None = None,
        is_billable: bool | None = None,
        notes: str | None = None,
    ) -> EntryResult:
        """Change an entry while its timesheet (and the entry) is editable."""
        entry = await self.get_entry(entry_id)
        timesheet = await self.get_timesheet(entry.timesheet_id)
        self._ensure_owner(actor_id, timesheet)
        self._ensure_editable(timesheet, entry)

        new_hours = hours if hours is not None else entry.hours
        new_date = work_date if work_date is not None else entry.work_date
        errors = self._hour_errors(new_hours)
        if not timesheet.contains_date(new_date):
            errors.append(f"work_date {new_date.isoformat()} is outside the week")
        if errors:
            raise ValidationError(errors[0], errors)
        await self._check_daily_and_weekly(timesheet, new_date, new_hours, exclude_id=entry_id)

        before = {"hours": str(entry.hours), "work_date": entry.work_date.isoformat(),
                  "is_billable": entry.is_billable}
        billable = entry.is_billable if is_billable is None else is_billable
        if is_billable and entry.entry_kind == CUSTOM_TASK:
            entry.billable_override = True
        elif billable and entry.task_id is not None:
            task = await self.directory.get_task(entry.task_id)
            billable = task.is_billable
        billable, warnings = self._weekend_warning(new_date, billable)

        entry.hours = new_hours
        entry.work_date = new_date
        entry.is_billable = billable
        if notes is not None:
            entry.notes = notes
        await self._recalculate_total(timesheet)
        self.audit.emit(
            actor_id, "entry_updated", "time_entry", entry.time_entry_id,
            before=before,
            after={"hours": str(entry.hours), "work_date": entry.work_date.isoformat(),
                   "is_billable": entry.is_billable},
        )
        return EntryResult(entry=entry, warnings=warnings)

    async def delete_entry(self, actor_id: UUID, entry_id: UUID) -> None:
        """Soft-delete an entry of an editable timesheet."""
        entry = await self.get_entry(entry_id)
        timesheet = await self.get_timesheet(entry.timesheet_id)
        self._ensure_owner(actor_id, timesheet)
        self._ensure_editable(timesheet, entry)

        entry.deleted_at = utcnow()
        await self._recalculate_total(timesheet)
        self.audit.emit(actor_id, "entry_deleted", "time_entry", entry.time_entry_id)

    # ----- submission -----

    def validate_for_submission(
        self, timesheet: Timesheet, entries: list[TimeEntry]
    ) -> list[str]:
        """Return every reason the timesheet cannot be submitted."""
        s = self.settings
        errors: list[str] = []
        if not entries:
            return ["timesheet has no entries"]

        daily: dict[date, Decimal] = defaultdict(lambda: ZERO)
        for entry in entries:
            if not timesheet.contains_date(entry.work_date):
                errors.append(f"entry {entry.time_entry_id} on {entry.work_date} is outside the week")
            errors.extend(self._hour_errors(entry.hours))
            daily[entry.work_date] += entry.hours

        for day in sorted(daily):
            if daily[day] > s.max_daily_hours:
                errors.append(f"{day.isoformat()} totals {daily[day]} hours (max {s.max_daily_hours})")
        week_total = sum(daily.values(), ZERO)
        if week_total > s.max_weekly_hours:
            errors.append(f"week totals {week_total} hours (max {s.max_weekly_hours})")

        if s.require_weekday_coverage:
            covered = {day.weekday() for day in daily}
            missing = [WEEKDAY_NAMES[i] for i in range(5) if i not in covered]
            if missing:
                errors.append(f"no entries for {', '.join(missing)}")
        return errors

    async def _sync_project_approvals(self, timesheet: Timesheet, project_ids: set[UUID]) -> set[UUID]:
        """Keep one pending approval row per project with entries.

        Returns the project ids whose rows were removed.
        """
        result = await self.session.execute(
            select(TimesheetProjectApproval).where(
                TimesheetProjectApproval.timesheet_id == timesheet.timesheet_id
            )
        )
        existing = {row.project_id: row for row in result.scalars().all()}

        stale = set(existing) - project_ids
        if stale:
            await self.session.execute(
                delete(TimesheetProjectApproval).where(
                    TimesheetProjectApproval.timesheet_id == timesheet.timesheet_id,
                    TimesheetProjectApproval.project_id.in_(stale),
                )
            )
        for project_id in project_ids:
            row = existing.get(project_id)
            if row is None:
                self.session.add(
                    TimesheetProjectApproval(
                        timesheet_id=timesheet.timesheet_id,
                        project_id=project_id,
                        lead_status="pending",
                        manager_status="pending",
                        management_status="pending",
                    )
                )
            else:
                row.reset()
        return stale

    async def submit(self, actor_id: UUID, timesheet_id: UUID) -> SubmitResult:
        """Submit (or resubmit after rejection) a timesheet.

        Raises:
            AuthorizationError: Actor is not the owner
            InvalidStateError: Status does not allow submission
            ValidationError: Entries break hour or coverage rules
        """
        timesheet = await self.get_timesheet(timesheet_id)
        self._ensure_owner(actor_id, timesheet)
        from_status = timesheet.status
        TimesheetStateMachine.validate_transition(from_status, TimesheetStatus.SUBMITTED)

        entries = await self.list_entries(timesheet_id)
        errors = self.validate_for_submission(timesheet, entries)
        if errors:
            raise ValidationError(
                f"Timesheet cannot be submitted: {errors[0]}",
                errors,
                {"timesheet_id": str(timesheet_id)},
            )

        warnings = []
        for entry in entries:
            if entry.is_billable and entry.work_date.weekday() >= 5:
                warnings.append(
                    f"Billable weekend entry on {WEEKDAY_NAMES[entry.work_date.weekday()]} "
                    f"{entry.work_date.isoformat()}"
                )
            entry.status = EntryStatus.SUBMITTED.value
            entry.rejection_reason = None

        timesheet.status = TimesheetStatus.SUBMITTED.value
        timesheet.submitted_at = utcnow()
        timesheet.total_hours = sum((e.hours for e in entries), ZERO)
        # A resubmitted timesheet restarts the approval chain
        for tier in ("lead", "manager", "management"):
            setattr(timesheet, f"{tier}_approved_by_id", None)
            setattr(timesheet, f"{tier}_approved_at", None)

        project_ids = {e.project_id for e in entries}
        stale = await self._sync_project_approvals(timesheet, project_ids)
        await self.session.flush()

        self.audit.emit(
            actor_id, "timesheet_submitted", "timesheet", timesheet.timesheet_id,
            before={"status": from_status},
            after=_snapshot(timesheet),
        )
        logger.info(
            "Timesheet %s submitted (%s -> submitted, %s hours, %d projects)",
            timesheet.timesheet_id,
            from_status,
            timesheet.total_hours,
            len(project_ids),
        )
        await self.coordinator.register(timesheet, project_ids | stale)
        return SubmitResult(timesheet=timesheet, warnings=warnings)

    async def delete_timesheet(
        self, actor_id: UUID, timesheet_id: UUID, reason: str | None = None
    ) -> None:
        """Soft-delete a draft timesheet and its entries."""
        timesheet = await self.get_timesheet(timesheet_id)
        self._ensure_owner(actor_id, timesheet)
        if timesheet.status != TimesheetStatus.DRAFT:
            raise InvalidStateError(timesheet.status, "deleted", "only draft timesheets can be deleted")

        project_ids = await self.coordinator.project_ids_for(timesheet)
        now = utcnow()
        for entry in await self.list_entries(timesheet_id):
            entry.deleted_at = now
        timesheet.deleted_at = now
        timesheet.deleted_by_id = actor_id
        timesheet.deleted_reason = reason
        await self.session.flush()

        self.audit.emit(
            actor_id, "timesheet_deleted", "timesheet", timesheet.timesheet_id,
            before=_snapshot(timesheet), after={"reason": reason},
        )
        for project_id in sorted(project_ids, key=str):
            await self.coordinator.recompute(project_id, timesheet.week_start_date, actor_id)
