"""Billing adjustment service: persistent signed deltas on billable hours."""

from __future__ import annotations

import logging
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select, text
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from timesheet_billing.calculators.adjustments import (
    compute_billable_hours,
    project_billable,
    timesheet_billable,
)
from timesheet_billing.calculators.types import ZERO, BillableHours
from timesheet_billing.errors import (
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from timesheet_billing.models import (
    BillingAdjustment,
    TimeEntry,
    Timesheet,
    adjustment_key,
    utcnow,
)
from timesheet_billing.models.billing import TIMESHEET_SCOPE_KEY
from timesheet_billing.services.audit import AuditTrail
from timesheet_billing.services.coordinator import ProjectWeekCoordinator
from timesheet_billing.services.directory import DirectoryService
from timesheet_billing.services.permissions import Action, authorize
from timesheet_billing.services.state_machine import TimesheetStatus

logger = logging.getLogger(__name__)

PROJECT_SCOPE = "project"


def _insert_for(session: AsyncSession):
    """Dialect insert construct supporting ON CONFLICT."""
    if session.get_bind().dialect.name == "postgresql":
        return postgresql.insert
    return sqlite.insert


class AdjustmentService:
    """Manages billing adjustments.

    billable = max(0, worked + delta), where worked is always summed fresh
    from the live billable entries in scope, so adjustments survive entry
    edits. One live adjustment exists per (scope, project, timesheet, user);
    writes are single-statement upserts on that key.
    """

    def __init__(self, session: AsyncSession, audit: AuditTrail | None = None):
        self.session = session
        self.audit = audit or AuditTrail()
        self.directory = DirectoryService(session)
        self.coordinator = ProjectWeekCoordinator(session, self.audit)

    async def _get_timesheet(self, timesheet_id: UUID) -> Timesheet:
        timesheet = await self.session.get(Timesheet, timesheet_id)
        if timesheet is None or timesheet.deleted_at is not None:
            raise NotFoundError("Timesheet", timesheet_id)
        return timesheet

    async def project_worked_hours(self, timesheet_id: UUID) -> dict[UUID, Decimal]:
        """Billable worked hours per project from live entries."""
        await self.session.flush()
        result = await self.session.execute(
            select(TimeEntry.project_id, TimeEntry.hours).where(
                TimeEntry.timesheet_id == timesheet_id,
                TimeEntry.deleted_at.is_(None),
                TimeEntry.is_billable.is_(True),
            )
        )
        worked: dict[UUID, Decimal] = {}
        for project_id, hours in result.all():
            worked[project_id] = worked.get(project_id, ZERO) + Decimal(hours)
        return worked

    async def worked_hours(self, timesheet_id: UUID, project_id: UUID | None = None) -> Decimal:
        worked = await self.project_worked_hours(timesheet_id)
        if project_id is not None:
            return worked.get(project_id, ZERO)
        return sum(worked.values(), ZERO)

    async def list_adjustments(
        self, timesheet_id: UUID, actor_id: UUID | None = None
    ) -> list[BillingAdjustment]:
        """Live adjustments of a timesheet, checked against the reader when given."""
        if actor_id is not None:
            timesheet = await self._get_timesheet(timesheet_id)
            await self.coordinator.authorize_read(actor_id, timesheet, Action.VIEW_BILLING)
        result = await self.session.execute(
            select(BillingAdjustment)
            .where(
                BillingAdjustment.timesheet_id == timesheet_id,
                BillingAdjustment.deleted_at.is_(None),
            )
            .order_by(BillingAdjustment.adjustment_key)
        )
        return list(result.scalars().all())

    async def get_billable_hours(
        self,
        timesheet_id: UUID,
        project_id: UUID | None = None,
        actor_id: UUID | None = None,
    ) -> BillableHours:
        """Billable hours of a timesheet, or of one project inside it.

        The project view adds the project's proportional share of any
        timesheet-scope delta to the project delta.
        """
        timesheet = await self._get_timesheet(timesheet_id)
        if actor_id is not None:
            await self.coordinator.authorize_read(actor_id, timesheet, Action.VIEW_BILLING)
        worked = await self.project_worked_hours(timesheet_id)
        adjustments = await self.list_adjustments(timesheet_id)

        if project_id is None:
            return timesheet_billable(
                sum(worked.values(), ZERO), (a.adjustment_hours for a in adjustments)
            )

        project_deltas: dict[UUID, Decimal] = {}
        timesheet_delta = ZERO
        for adj in adjustments:
            if adj.project_id is None:
                timesheet_delta += adj.adjustment_hours
            else:
                project_deltas[adj.project_id] = (
                    project_deltas.get(adj.project_id, ZERO) + adj.adjustment_hours
                )
        if project_id not in worked:
            worked = {**worked, project_id: ZERO}
        return project_billable(project_id, worked, project_deltas, timesheet_delta)

    async def _check_adjustable(
        self, actor_id: UUID, timesheet: Timesheet, project_id: UUID | None
    ) -> None:
        actor = await self.directory.get_user(actor_id)
        if project_id is not None:
            await self.directory.get_project(project_id)
        role = await self.directory.effective_role(actor, project_id)
        authorize(role, Action.ADJUST)
        if timesheet.status == TimesheetStatus.BILLED:
            raise InvalidStateError(
                timesheet.status, timesheet.status, "billed timesheets cannot be adjusted"
            )

    async def upsert_adjustment(
        self,
        actor_id: UUID,
        timesheet_id: UUID,
        adjustment_hours: Decimal,
        project_id: UUID | None = None,
        reason: str | None = None,
        task_id: UUID | None = None,
    ) -> BillingAdjustment:
        """Create or replace the live adjustment for a scope.

        Args:
            actor_id: Manager (own projects), management or super admin
            timesheet_id: Adjusted timesheet
            adjustment_hours: Signed delta on top of worked hours
            project_id: Project scope; None adjusts the whole timesheet
            reason: Free-text justification

        Raises:
            AuthorizationError: Role may not adjust this scope
            InvalidStateError: Timesheet already billed
        """
        timesheet = await self._get_timesheet(timesheet_id)
        await self._check_adjustable(actor_id, timesheet, project_id)

        scope = PROJECT_SCOPE if project_id is not None else TIMESHEET_SCOPE_KEY
        key = adjustment_key(scope, project_id, timesheet_id, timesheet.user_id)
        worked = await self.worked_hours(timesheet_id, project_id)
        billable = compute_billable_hours(worked, adjustment_hours)
        now = utcnow()

        insert = _insert_for(self.session)
        stmt = insert(BillingAdjustment).values(
            adjustment_key=key,
            timesheet_id=timesheet_id,
            user_id=timesheet.user_id,
            adjustment_scope=scope,
            project_id=project_id,
            task_id=task_id,
            billing_period_start=timesheet.week_start_date,
            billing_period_end=timesheet.week_end_date,
            total_worked_hours=worked,
            adjustment_hours=adjustment_hours,
            total_billable_hours=billable,
            reason=reason,
            adjusted_by_id=actor_id,
            adjusted_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[BillingAdjustment.adjustment_key],
            index_where=text("deleted_at IS NULL"),
            set_={
                "task_id": stmt.excluded.task_id,
                "total_worked_hours": stmt.excluded.total_worked_hours,
                "adjustment_hours": stmt.excluded.adjustment_hours,
                "total_billable_hours": stmt.excluded.total_billable_hours,
                "reason": stmt.excluded.reason,
                "adjusted_by_id": stmt.excluded.adjusted_by_id,
                "adjusted_at": stmt.excluded.adjusted_at,
                "updated_at": now,
            },
        ).returning(BillingAdjustment.adjustment_id)
        adjustment_id = (await self.session.execute(stmt)).scalar_one()

        adjustment = await self.session.get(
            BillingAdjustment, adjustment_id, populate_existing=True
        )
        self.audit.emit(
            actor_id,
            "adjustment_upserted",
            "billing_adjustment",
            adjustment_id,
            after={
                "scope": scope,
                "project_id": str(project_id) if project_id else None,
                "worked_hours": str(worked),
                "adjustment_hours": str(adjustment_hours),
                "billable_hours": str(billable),
            },
        )
        logger.info(
            "Adjustment %s on timesheet %s: %s%s hours (%s)",
            key,
            timesheet_id,
            "+" if adjustment_hours >= 0 else "",
            adjustment_hours,
            reason or "no reason",
        )
        await self.coordinator.register(timesheet)
        return adjustment

    async def set_billable_target(
        self,
        actor_id: UUID,
        timesheet_id: UUID,
        target_hours: Decimal,
        project_id: UUID | None = None,
        reason: str | None = None,
    ) -> BillingAdjustment:
        """Store the delta that makes the scope bill exactly target hours."""
        if target_hours < 0:
            raise ValidationError(f"target billable hours must not be negative, got {target_hours}")
        await self._get_timesheet(timesheet_id)
        worked = await self.worked_hours(timesheet_id, project_id)
        return await self.upsert_adjustment(
            actor_id, timesheet_id, target_hours - worked, project_id, reason
        )

    async def delete_adjustment(self, actor_id: UUID, adjustment_id: UUID) -> BillingAdjustment:
        """Soft-delete a live adjustment."""
        adjustment = await self.session.get(BillingAdjustment, adjustment_id)
        if adjustment is None or adjustment.deleted_at is not None:
            raise NotFoundError("BillingAdjustment", adjustment_id)
        timesheet = await self._get_timesheet(adjustment.timesheet_id)
        await self._check_adjustable(actor_id, timesheet, adjustment.project_id)

        adjustment.deleted_at = utcnow()
        adjustment.deleted_by_id = actor_id
        await self.session.flush()

        self.audit.emit(
            actor_id,
            "adjustment_deleted",
            "billing_adjustment",
            adjustment_id,
            before={"adjustment_hours": str(adjustment.adjustment_hours)},
        )
        await self.coordinator.register(timesheet)
        return adjustment
