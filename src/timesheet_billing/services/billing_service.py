"""Billing service: views, snapshots, billing and dashboard summary."""

from __future__ import annotations

import calendar
import logging
from dataclasses import dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Iterable
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from timesheet_billing.calculators.aggregation import BillingAggregator
from timesheet_billing.calculators.rate_resolver import (
    HolidayCalendar,
    RateContext,
    RateResolver,
)
from timesheet_billing.calculators.types import (
    HOURS_PRECISION,
    ZERO,
    AdjustmentDelta,
    BillableEntry,
    BillingViews,
    EntryLine,
    ResolvedRate,
    jsonable,
    to_output,
)
from timesheet_billing.errors import (
    InvalidStateError,
    NotFoundError,
    TimesheetBillingError,
    ValidationError,
)
from timesheet_billing.models import (
    BillingAdjustment,
    BillingSnapshot,
    Project,
    Task,
    TimeEntry,
    Timesheet,
    User,
    utcnow,
    week_start_for,
)
from timesheet_billing.services.approval_service import BulkItemResult
from timesheet_billing.services.audit import AuditTrail
from timesheet_billing.services.coordinator import ProjectWeekCoordinator
from timesheet_billing.services.directory import DirectoryService
from timesheet_billing.services.permissions import Action, authorize
from timesheet_billing.services.state_machine import (
    EntryStatus,
    TimesheetStateMachine,
    TimesheetStatus,
)

logger = logging.getLogger(__name__)

BILLABLE_STATUSES = (TimesheetStatus.FROZEN.value, TimesheetStatus.BILLED.value)
PENDING_STATUSES = (
    TimesheetStatus.SUBMITTED.value,
    TimesheetStatus.LEAD_APPROVED.value,
    TimesheetStatus.MANAGER_APPROVED.value,
)


@dataclass
class BillingFilter:
    """Optional restrictions for billing views."""

    project_ids: list[UUID] | None = None
    client_ids: list[UUID] | None = None
    user_ids: list[UUID] | None = None


class BillingService:
    """Turns frozen timesheets into billing views, snapshots and bills.

    Operations:
    - build_views: project/task/user views for frozen and billed weeks
    - create_snapshot: immutable billing record for one frozen timesheet
    - generate_weekly_snapshots: snapshot every frozen timesheet of a week
    - mark_billed / bill_month: frozen -> billed with per-item results
    - summary: dashboard totals
    """

    def __init__(
        self,
        session: AsyncSession,
        audit: AuditTrail | None = None,
        calendar: HolidayCalendar | None = None,
        aggregator: BillingAggregator | None = None,
    ):
        self.session = session
        self.audit = audit or AuditTrail()
        self.directory = DirectoryService(session)
        self.resolver = RateResolver(session, calendar)
        self.aggregator = aggregator or BillingAggregator()
        self.coordinator = ProjectWeekCoordinator(session, self.audit)

    async def _authorize(self, actor_id: UUID | None, action: Action) -> None:
        if actor_id is None:
            return
        actor = await self.directory.get_user(actor_id)
        authorize(actor.role, action)

    async def _get_timesheet(self, timesheet_id: UUID) -> Timesheet:
        timesheet = await self.session.get(Timesheet, timesheet_id)
        if timesheet is None or timesheet.deleted_at is not None:
            raise NotFoundError("Timesheet", timesheet_id)
        return timesheet

    # ----- inputs -----

    async def _timesheets(
        self,
        start: date,
        end: date,
        statuses: Iterable[str] = BILLABLE_STATUSES,
        user_ids: list[UUID] | None = None,
    ) -> list[Timesheet]:
        """Timesheets whose week starts inside [start, end]."""
        query = select(Timesheet).where(
            Timesheet.deleted_at.is_(None),
            Timesheet.status.in_(list(statuses)),
            Timesheet.week_start_date >= week_start_for(start),
            Timesheet.week_start_date <= end,
        )
        if user_ids:
            query = query.where(Timesheet.user_id.in_(user_ids))
        result = await self.session.execute(query.order_by(Timesheet.week_start_date))
        return list(result.scalars().all())

    async def _inputs(
        self, timesheets: list[Timesheet]
    ) -> tuple[list[BillableEntry], list[AdjustmentDelta]]:
        """Billable entries with resolved rates plus live adjustments."""
        if not timesheets:
            return [], []
        by_id = {ts.timesheet_id: ts for ts in timesheets}

        entry_rows = await self.session.execute(
            select(TimeEntry).where(
                TimeEntry.timesheet_id.in_(list(by_id)),
                TimeEntry.deleted_at.is_(None),
            )
        )
        entries = list(entry_rows.scalars().all())

        adjustment_rows = await self.session.execute(
            select(BillingAdjustment).where(
                BillingAdjustment.timesheet_id.in_(list(by_id)),
                BillingAdjustment.deleted_at.is_(None),
            )
        )
        adjustments = [
            AdjustmentDelta(
                timesheet_id=a.timesheet_id,
                project_id=a.project_id,
                adjustment_hours=Decimal(a.adjustment_hours),
            )
            for a in adjustment_rows.scalars().all()
        ]
        if not entries:
            return [], adjustments

        users = await self._by_id(User, User.user_id, {ts.user_id for ts in timesheets})
        projects = await self._by_id(Project, Project.project_id, {e.project_id for e in entries})
        tasks = await self._by_id(
            Task, Task.task_id, {e.task_id for e in entries if e.task_id is not None}
        )

        table = await self.resolver.load_table(
            min(e.work_date for e in entries), max(e.work_date for e in entries)
        )

        billable_entries = []
        for entry in entries:
            ts = by_id[entry.timesheet_id]
            user = users[ts.user_id]
            project = projects[entry.project_id]
            task = tasks.get(entry.task_id) if entry.task_id else None
            rate = table.resolve(
                RateContext(
                    user_id=user.user_id,
                    project_id=project.project_id,
                    client_id=project.client_id,
                    role=user.role,
                ),
                entry.work_date,
            )
            billable_entries.append(
                BillableEntry(
                    entry_id=entry.time_entry_id,
                    timesheet_id=ts.timesheet_id,
                    user_id=user.user_id,
                    user_name=user.full_name,
                    project_id=project.project_id,
                    project_name=project.name,
                    client_id=project.client_id,
                    week_start=ts.week_start_date,
                    work_date=entry.work_date,
                    hours=Decimal(entry.hours),
                    is_billable=entry.is_billable,
                    rate=rate,
                    task_id=entry.task_id,
                    task_name=task.name if task is not None else (entry.custom_task_description or ""),
                )
            )
        return billable_entries, adjustments

    async def _snapshot_lines(self, timesheets: list[Timesheet]) -> list[EntryLine]:
        """Lines exactly as billed, read back from each timesheet's snapshot."""
        if not timesheets:
            return []
        snapshots = await self._by_id(
            BillingSnapshot,
            BillingSnapshot.snapshot_id,
            {ts.billing_snapshot_id for ts in timesheets},
        )
        users = await self._by_id(User, User.user_id, {ts.user_id for ts in timesheets})
        stored = {
            ts.timesheet_id: snapshots[ts.billing_snapshot_id].snapshot_data.get("lines", [])
            for ts in timesheets
        }
        projects = await self._by_id(
            Project,
            Project.project_id,
            {UUID(data["project_id"]) for lines in stored.values() for data in lines},
        )

        lines = []
        for ts in timesheets:
            user = users[ts.user_id]
            for data in stored[ts.timesheet_id]:
                project = projects[UUID(data["project_id"])]
                rate = ResolvedRate.from_dict(data["rate"])
                billable_hours = Decimal(data["billable_hours"])
                entry = BillableEntry(
                    entry_id=UUID(data["entry_id"]),
                    timesheet_id=ts.timesheet_id,
                    user_id=user.user_id,
                    user_name=user.full_name,
                    project_id=project.project_id,
                    project_name=project.name,
                    client_id=project.client_id,
                    week_start=ts.week_start_date,
                    work_date=date.fromisoformat(data["work_date"]),
                    hours=Decimal(data["hours"]),
                    is_billable=data["is_billable"],
                    rate=rate,
                    task_id=UUID(data["task_id"]) if data["task_id"] else None,
                    task_name=data["task_name"],
                )
                lines.append(
                    EntryLine(
                        entry=entry,
                        worked_hours=Decimal(data["worked_hours"]),
                        billable_hours=billable_hours,
                        amount=billable_hours * rate.effective_rate,
                    )
                )
        return lines

    async def _lines(self, timesheets: list[Timesheet]) -> list[EntryLine]:
        """Billed weeks come from their snapshot, everything else is computed live."""
        billed = [
            ts
            for ts in timesheets
            if ts.status == TimesheetStatus.BILLED and ts.billing_snapshot_id is not None
        ]
        live = [ts for ts in timesheets if ts not in billed]
        entries, adjustments = await self._inputs(live)
        lines = self.aggregator.compute_lines(entries, adjustments)
        lines.extend(await self._snapshot_lines(billed))
        return lines

    async def _by_id(self, model, column, ids: set[UUID]) -> dict[UUID, Any]:
        if not ids:
            return {}
        result = await self.session.execute(select(model).where(column.in_(list(ids))))
        return {getattr(row, column.key): row for row in result.scalars().all()}

    # ----- views -----

    async def build_views(
        self,
        actor_id: UUID | None,
        start: date,
        end: date,
        filters: BillingFilter | None = None,
    ) -> BillingViews:
        """Project, task and user views for frozen and billed weeks.

        Frozen weeks are priced against the current rate rules; billed weeks
        report the lines stored in their billing snapshot, so later rule
        changes never alter billed revenue.

        Args:
            actor_id: Viewer; None for internal callers
            start: First day of the period; weeks starting on or after
                the Monday of this date are included
            end: Last day of the period
            filters: Optional project, client and user restrictions
        """
        if end < start:
            raise ValidationError("end must not precede start")
        await self._authorize(actor_id, Action.VIEW_BILLING)
        filters = filters or BillingFilter()

        timesheets = await self._timesheets(start, end, user_ids=filters.user_ids)
        lines = await self._lines(timesheets)

        project_ids: set[UUID] | None = None
        if filters.project_ids or filters.client_ids:
            project_ids = set(filters.project_ids or [])
            for client_id in filters.client_ids or []:
                project_ids.update(await self.directory.project_ids_for_client(client_id))

        include = None
        if project_ids is not None:
            include = lambda entry: entry.project_id in project_ids  # noqa: E731

        return self.aggregator.fold(lines, include)

    # ----- snapshots -----

    async def get_snapshot(self, snapshot_id: UUID) -> BillingSnapshot:
        snapshot = await self.session.get(BillingSnapshot, snapshot_id)
        if snapshot is None:
            raise NotFoundError("BillingSnapshot", snapshot_id)
        return snapshot

    async def list_snapshots(
        self, timesheet_id: UUID, actor_id: UUID | None = None
    ) -> list[BillingSnapshot]:
        """Every snapshot of a timesheet, oldest first."""
        if actor_id is not None:
            timesheet = await self._get_timesheet(timesheet_id)
            await self.coordinator.authorize_read(actor_id, timesheet, Action.VIEW_BILLING)
        result = await self.session.execute(
            select(BillingSnapshot)
            .where(BillingSnapshot.timesheet_id == timesheet_id)
            .order_by(BillingSnapshot.created_at)
        )
        return list(result.scalars().all())

    async def _live_views(self, timesheet: Timesheet) -> BillingViews:
        entries, adjustments = await self._inputs([timesheet])
        return self.aggregator.aggregate(entries, adjustments)

    async def _snapshot(
        self, actor_id: UUID, timesheet: Timesheet, views: BillingViews | None = None
    ) -> BillingSnapshot:
        if timesheet.status != TimesheetStatus.FROZEN:
            raise InvalidStateError(
                timesheet.status, "snapshot", "only frozen timesheets can be snapshotted"
            )
        if views is None:
            views = await self._live_views(timesheet)
        totals = views.totals

        billable = totals.billable_hours
        amount = to_output(totals.amount)
        effective_rate = (
            (totals.amount / billable).quantize(HOURS_PRECISION, rounding=ROUND_HALF_UP)
            if billable > 0
            else ZERO
        )

        snapshot = BillingSnapshot(
            timesheet_id=timesheet.timesheet_id,
            user_id=timesheet.user_id,
            week_start_date=timesheet.week_start_date,
            week_end_date=timesheet.week_end_date,
            total_hours=totals.worked_hours,
            billable_hours=billable,
            non_billable_hours=totals.non_billable_hours,
            adjustment_hours=totals.adjustment_hours,
            effective_rate=effective_rate,
            billable_amount=amount,
            snapshot_data=jsonable(
                {
                    **views.to_dict(),
                    "lines": [line.to_dict() for line in views.lines],
                }
            ),
            created_by_id=actor_id,
            created_at=utcnow(),
            supersedes_id=timesheet.billing_snapshot_id,
        )
        self.session.add(snapshot)
        await self.session.flush()
        timesheet.billing_snapshot_id = snapshot.snapshot_id
        await self.session.flush()

        self.audit.emit(
            actor_id,
            "snapshot_created",
            "billing_snapshot",
            snapshot.snapshot_id,
            after={
                "timesheet_id": str(timesheet.timesheet_id),
                "billable_hours": str(billable),
                "billable_amount": str(amount),
                "supersedes_id": str(snapshot.supersedes_id) if snapshot.supersedes_id else None,
            },
        )
        logger.info(
            "Snapshot %s for timesheet %s: %s hours, %s",
            snapshot.snapshot_id,
            timesheet.timesheet_id,
            billable,
            amount,
        )
        return snapshot

    async def create_snapshot(self, actor_id: UUID, timesheet_id: UUID) -> BillingSnapshot:
        """Snapshot one frozen timesheet, superseding any earlier snapshot.

        Earlier snapshots are left untouched; the new one records which
        snapshot it supersedes and becomes the timesheet's current one.
        """
        await self._authorize(actor_id, Action.SNAPSHOT)
        timesheet = await self._get_timesheet(timesheet_id)
        return await self._snapshot(actor_id, timesheet)

    async def generate_weekly_snapshots(
        self, actor_id: UUID, week_start: date
    ) -> list[BillingSnapshot]:
        """Snapshot every frozen timesheet of a week that has none yet."""
        await self._authorize(actor_id, Action.SNAPSHOT)
        week_start = week_start_for(week_start)
        result = await self.session.execute(
            select(Timesheet).where(
                Timesheet.week_start_date == week_start,
                Timesheet.status == TimesheetStatus.FROZEN.value,
                Timesheet.deleted_at.is_(None),
                Timesheet.billing_snapshot_id.is_(None),
            )
        )
        snapshots = []
        for timesheet in sorted(result.scalars().all(), key=lambda ts: str(ts.user_id)):
            snapshots.append(await self._snapshot(actor_id, timesheet))
        return snapshots

    # ----- billing -----

    async def _snapshot_is_stale(self, timesheet: Timesheet, views: BillingViews) -> bool:
        """True when there is no snapshot or it no longer matches the live figures."""
        if timesheet.billing_snapshot_id is None:
            return True
        current = await self.get_snapshot(timesheet.billing_snapshot_id)
        return (
            to_output(Decimal(current.billable_hours)) != to_output(views.totals.billable_hours)
            or to_output(Decimal(current.billable_amount)) != to_output(views.totals.amount)
        )

    async def _bill_one(self, actor_id: UUID, timesheet_id: UUID) -> Timesheet:
        timesheet = await self._get_timesheet(timesheet_id)
        TimesheetStateMachine.validate_transition(
            timesheet.status, TimesheetStatus.BILLED, "only frozen timesheets can be billed"
        )
        views = await self._live_views(timesheet)
        if await self._snapshot_is_stale(timesheet, views):
            await self._snapshot(actor_id, timesheet, views)

        entries = await self.session.execute(
            select(TimeEntry).where(
                TimeEntry.timesheet_id == timesheet_id,
                TimeEntry.deleted_at.is_(None),
            )
        )
        for entry in entries.scalars().all():
            entry.status = EntryStatus.BILLED.value
        timesheet.status = TimesheetStatus.BILLED.value
        timesheet.billed_at = utcnow()
        await self.session.flush()

        self.audit.emit(
            actor_id,
            "timesheet_billed",
            "timesheet",
            timesheet.timesheet_id,
            before={"status": TimesheetStatus.FROZEN.value},
            after={
                "status": timesheet.status,
                "billing_snapshot_id": str(timesheet.billing_snapshot_id),
            },
        )
        return timesheet

    async def mark_billed(
        self, actor_id: UUID, timesheet_ids: list[UUID]
    ) -> list[BulkItemResult]:
        """Move frozen timesheets to billed, one result per timesheet.

        A snapshot is taken first for any timesheet without one, or whose
        snapshot no longer matches the live figures; the billed week is
        reported from that snapshot from then on. Items fail independently.
        """
        await self._authorize(actor_id, Action.BILL)
        results = []
        billed = []
        for timesheet_id in timesheet_ids:
            try:
                timesheet = await self._bill_one(actor_id, timesheet_id)
            except TimesheetBillingError as exc:
                logger.warning("Billing %s failed: %s", timesheet_id, exc.message)
                existing = await self.session.get(Timesheet, timesheet_id)
                results.append(
                    BulkItemResult(
                        timesheet_id=timesheet_id,
                        user_id=existing.user_id if existing else None,
                        success=False,
                        status=existing.status if existing else "missing",
                        error_code=exc.code,
                        error=exc.message,
                    )
                )
            else:
                billed.append(timesheet)
                results.append(
                    BulkItemResult(
                        timesheet_id=timesheet_id,
                        user_id=timesheet.user_id,
                        success=True,
                        status=timesheet.status,
                    )
                )
        for timesheet in billed:
            await self.coordinator.register(timesheet)
        return results

    async def bill_month(self, actor_id: UUID, year: int, month: int) -> list[BulkItemResult]:
        """Bill every frozen timesheet whose week starts in the month."""
        if not 1 <= month <= 12:
            raise ValidationError(f"month must be 1-12, got {month}")
        await self._authorize(actor_id, Action.BILL)
        first = date(year, month, 1)
        last = date(year, month, calendar.monthrange(year, month)[1])
        result = await self.session.execute(
            select(Timesheet.timesheet_id).where(
                Timesheet.status == TimesheetStatus.FROZEN.value,
                Timesheet.deleted_at.is_(None),
                Timesheet.week_start_date >= first,
                Timesheet.week_start_date <= last,
            )
        )
        timesheet_ids = sorted(result.scalars().all(), key=str)
        logger.info("Billing %d timesheets for %04d-%02d", len(timesheet_ids), year, month)
        return await self.mark_billed(actor_id, timesheet_ids)

    # ----- dashboard -----

    async def summary(self, actor_id: UUID | None, start: date, end: date) -> dict[str, Any]:
        """Dashboard totals for a period.

        Revenue and hours cover frozen and billed weeks; pending approvals
        count timesheets still moving through the tiers.
        """
        views = await self.build_views(actor_id, start, end)
        totals = views.totals

        counts = await self.session.execute(
            select(Timesheet.status, func.count())
            .where(
                Timesheet.deleted_at.is_(None),
                Timesheet.week_start_date >= week_start_for(start),
                Timesheet.week_start_date <= end,
            )
            .group_by(Timesheet.status)
        )
        by_status = {status: count for status, count in counts.all()}

        billed_ids = {
            ts.timesheet_id
            for ts in await self._timesheets(start, end, statuses=(TimesheetStatus.BILLED.value,))
        }
        billed_amount = sum(
            (line.amount for line in views.lines if line.entry.timesheet_id in billed_ids), ZERO
        )

        average_rate = (
            to_output(totals.amount / totals.billable_hours) if totals.billable_hours > 0 else ZERO
        )
        return {
            "period_start": start,
            "period_end": end,
            "revenue": to_output(totals.amount),
            "billed_revenue": to_output(billed_amount),
            "unbilled_revenue": to_output(totals.amount - billed_amount),
            "worked_hours": to_output(totals.worked_hours),
            "billable_hours": to_output(totals.billable_hours),
            "non_billable_hours": to_output(totals.non_billable_hours),
            "average_rate": average_rate,
            "pending_approvals": sum(by_status.get(s, 0) for s in PENDING_STATUSES),
            "timesheets_by_status": dict(sorted(by_status.items())),
            "projects": len(views.projects),
            "users": len(views.users),
        }
