"""Approval engine: single and bulk approve/reject across the three tiers."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from timesheet_billing.errors import (
    AuthorizationError,
    InvalidStateError,
    NotFoundError,
    PreconditionError,
    TimesheetBillingError,
    ValidationError,
)
from timesheet_billing.models import (
    ApprovalHistory,
    TimeEntry,
    Timesheet,
    TimesheetProjectApproval,
    User,
    utcnow,
    week_start_for,
)
from timesheet_billing.services.audit import AuditTrail
from timesheet_billing.services.coordinator import (
    ROLE_TIER,
    ProjectWeekCoordinator,
    ProjectWeekStatus,
)
from timesheet_billing.services.directory import DirectoryService
from timesheet_billing.services.permissions import Action, authorize, is_allowed
from timesheet_billing.services.state_machine import (
    ApprovalStatus,
    EntryStatus,
    Tier,
    TimesheetStateMachine,
    TimesheetStatus,
)

logger = logging.getLogger(__name__)


@dataclass
class ApprovalResult:
    """Outcome of one approve or reject call."""

    timesheet: Timesheet
    tier: Tier
    action: str
    status_before: str
    status_after: str
    project_ids: list[UUID] = field(default_factory=list)

    @property
    def advanced(self) -> bool:
        return self.status_before != self.status_after


@dataclass
class BulkItemResult:
    """Per-timesheet outcome of a bulk operation."""

    timesheet_id: UUID
    user_id: UUID | None
    success: bool
    status: str
    error_code: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "timesheet_id": str(self.timesheet_id),
            "user_id": str(self.user_id) if self.user_id else None,
            "success": self.success,
            "status": self.status,
            "error_code": self.error_code,
            "error": self.error,
        }


@dataclass
class BulkResult:
    """Outcome of a bulk project-week operation."""

    project_id: UUID
    week_start: date
    tier: Tier
    action: str
    items: list[BulkItemResult] = field(default_factory=list)
    status: ProjectWeekStatus | None = None

    @property
    def succeeded(self) -> int:
        return sum(1 for i in self.items if i.success)

    @property
    def failed(self) -> int:
        return sum(1 for i in self.items if not i.success)


class ApprovalService:
    """Role-gated approvals.

    A timesheet carries one approval row per project it has entries on.
    Reviewers approve the rows of the projects they are permitted on; the
    timesheet advances a tier only once every row is approved at that tier.
    Management approval freezes the timesheet. A rejection at any tier
    sends the timesheet back to the owner and resets the other rows.
    """

    def __init__(self, session: AsyncSession, audit: AuditTrail | None = None):
        self.session = session
        self.audit = audit or AuditTrail()
        self.directory = DirectoryService(session)
        self.coordinator = ProjectWeekCoordinator(session, self.audit)

    # ----- lookups -----

    async def _get_timesheet(self, timesheet_id: UUID) -> Timesheet:
        timesheet = await self.session.get(Timesheet, timesheet_id)
        if timesheet is None or timesheet.deleted_at is not None:
            raise NotFoundError("Timesheet", timesheet_id)
        return timesheet

    async def _approval_rows(self, timesheet_id: UUID) -> list[TimesheetProjectApproval]:
        result = await self.session.execute(
            select(TimesheetProjectApproval)
            .where(TimesheetProjectApproval.timesheet_id == timesheet_id)
            .order_by(TimesheetProjectApproval.project_id)
        )
        return list(result.scalars().all())

    async def _entries(self, timesheet_id: UUID) -> list[TimeEntry]:
        result = await self.session.execute(
            select(TimeEntry).where(
                TimeEntry.timesheet_id == timesheet_id,
                TimeEntry.deleted_at.is_(None),
            )
        )
        return list(result.scalars().all())

    async def get_history(
        self, timesheet_id: UUID, actor_id: UUID | None = None
    ) -> list[ApprovalHistory]:
        if actor_id is not None:
            timesheet = await self._get_timesheet(timesheet_id)
            await self.coordinator.authorize_read(actor_id, timesheet)
        result = await self.session.execute(
            select(ApprovalHistory)
            .where(ApprovalHistory.timesheet_id == timesheet_id)
            .order_by(ApprovalHistory.created_at)
        )
        return list(result.scalars().all())

    def _review_tier(self, timesheet: Timesheet, to_status: str) -> Tier:
        tier = TimesheetStateMachine.review_tier(timesheet.status)
        if tier is None:
            raise InvalidStateError(
                timesheet.status, to_status, "timesheet is not awaiting review"
            )
        return tier

    async def _permitted_rows(
        self,
        actor: User,
        rows: list[TimesheetProjectApproval],
        tier: Tier,
        action: Action,
    ) -> list[TimesheetProjectApproval]:
        permitted = []
        for row in rows:
            role = await self.directory.effective_role(actor, row.project_id)
            if is_allowed(role, action, tier):
                permitted.append(row)
        return permitted

    async def _select_rows(
        self,
        actor: User,
        timesheet: Timesheet,
        tier: Tier,
        action: Action,
        project_id: UUID | None,
    ) -> tuple[list[TimesheetProjectApproval], list[TimesheetProjectApproval]]:
        """Return (all rows, rows the actor acts on); raises if none."""
        if actor.user_id == timesheet.user_id:
            raise AuthorizationError(
                "Users cannot review their own timesheet",
                {"timesheet_id": str(timesheet.timesheet_id)},
            )
        rows = await self._approval_rows(timesheet.timesheet_id)
        if project_id is not None:
            candidates = [r for r in rows if r.project_id == project_id]
            if not candidates:
                raise NotFoundError("TimesheetProjectApproval", f"{timesheet.timesheet_id}:{project_id}")
            role = await self.directory.effective_role(actor, project_id)
            authorize(role, action, tier)
            return rows, candidates

        permitted = await self._permitted_rows(actor, rows, tier, action)
        if not permitted:
            raise AuthorizationError(
                f"Role '{actor.role}' may not {action.value} this timesheet at {tier.value} tier",
                {"timesheet_id": str(timesheet.timesheet_id), "tier": tier.value},
            )
        return rows, permitted

    def _history(
        self,
        timesheet: Timesheet,
        project_id: UUID | None,
        actor_id: UUID,
        tier: Tier,
        action: str,
        status_before: str,
        reason: str | None = None,
        notes: str | None = None,
    ) -> None:
        self.session.add(
            ApprovalHistory(
                timesheet_id=timesheet.timesheet_id,
                project_id=project_id,
                user_id=timesheet.user_id,
                approver_id=actor_id,
                tier=tier.value,
                action=action,
                status_before=status_before,
                status_after=timesheet.status,
                reason=reason,
                notes=notes,
            )
        )

    # ----- single timesheet -----

    async def approve_employee(
        self,
        actor_id: UUID,
        timesheet_id: UUID,
        project_id: UUID | None = None,
        notes: str | None = None,
    ) -> ApprovalResult:
        """Approve a timesheet at its current tier.

        Args:
            actor_id: Reviewer
            timesheet_id: Timesheet to approve
            project_id: Approve only this project's row; default is every
                pending row the actor is permitted on
            notes: Free text kept in the approval history

        Raises:
            NotFoundError: Timesheet or project row missing
            InvalidStateError: Timesheet not awaiting review, row already approved
            AuthorizationError: Role not permitted, or self-approval
        """
        timesheet = await self._get_timesheet(timesheet_id)
        tier = self._review_tier(timesheet, "approved")
        actor = await self.directory.get_user(actor_id)
        rows, targets = await self._select_rows(actor, timesheet, tier, Action.APPROVE, project_id)

        pending = [r for r in targets if r.tier_status(tier.value) != ApprovalStatus.APPROVED]
        if not pending:
            raise InvalidStateError(
                timesheet.status,
                TimesheetStateMachine.APPROVED_STATUS[tier].value,
                f"already approved at {tier.value} tier",
            )

        # All checks passed; mutate
        status_before = timesheet.status
        for row in pending:
            row.mark(tier.value, ApprovalStatus.APPROVED.value, actor_id)

        if all(r.tier_status(tier.value) == ApprovalStatus.APPROVED for r in rows):
            await self._advance(timesheet, tier, actor_id)

        for row in pending:
            self._history(timesheet, row.project_id, actor_id, tier, "approved", status_before, notes=notes)
        await self.session.flush()

        self.audit.emit(
            actor_id,
            f"{tier.value}_approved",
            "timesheet",
            timesheet.timesheet_id,
            before={"status": status_before},
            after={
                "status": timesheet.status,
                "projects": [str(r.project_id) for r in pending],
            },
        )
        logger.info(
            "Timesheet %s approved at %s tier by %s (%s -> %s)",
            timesheet.timesheet_id,
            tier.value,
            actor_id,
            status_before,
            timesheet.status,
        )
        await self.coordinator.register(timesheet)
        return ApprovalResult(
            timesheet=timesheet,
            tier=tier,
            action="approved",
            status_before=status_before,
            status_after=timesheet.status,
            project_ids=[r.project_id for r in pending],
        )

    async def _advance(self, timesheet: Timesheet, tier: Tier, actor_id: UUID) -> None:
        to_status = TimesheetStateMachine.APPROVED_STATUS[tier]
        TimesheetStateMachine.validate_transition(timesheet.status, to_status)
        timesheet.status = to_status.value
        timesheet.stamp_approval(tier.value, actor_id)

        entry_status = None
        if to_status == TimesheetStatus.MANAGER_APPROVED:
            entry_status = EntryStatus.APPROVED
        elif to_status == TimesheetStatus.FROZEN:
            entry_status = EntryStatus.FROZEN
            timesheet.is_frozen = True
            timesheet.frozen_at = utcnow()
        if entry_status is not None:
            for entry in await self._entries(timesheet.timesheet_id):
                entry.status = entry_status.value

    async def reject_employee(
        self,
        actor_id: UUID,
        timesheet_id: UUID,
        reason: str,
        project_id: UUID | None = None,
        entry_ids: list[UUID] | None = None,
    ) -> ApprovalResult:
        """Reject a timesheet at its current tier.

        The named entries are marked rejected; without entry ids, the entries
        of the rejected project (or of every project the actor reviews) are.
        Other project rows go back to pending.

        Raises:
            ValidationError: Blank reason or foreign entry ids
            NotFoundError: Timesheet or project row missing
            InvalidStateError: Timesheet not awaiting review
            AuthorizationError: Role not permitted, self-rejection, or entries
                of projects the actor is not rejecting
        """
        if reason is None or not reason.strip():
            raise ValidationError("A rejection reason is required")
        reason = reason.strip()

        timesheet = await self._get_timesheet(timesheet_id)
        tier = self._review_tier(timesheet, "rejected")
        to_status = TimesheetStateMachine.REJECTED_STATUS[tier]
        TimesheetStateMachine.validate_transition(timesheet.status, to_status)

        actor = await self.directory.get_user(actor_id)
        rows, targets = await self._select_rows(actor, timesheet, tier, Action.REJECT, project_id)
        rejected_projects = {r.project_id for r in targets}

        entries = await self._entries(timesheet_id)
        if entry_ids:
            by_id = {e.time_entry_id: e for e in entries}
            unknown = [str(i) for i in entry_ids if i not in by_id]
            if unknown:
                raise ValidationError(
                    f"Entries do not belong to timesheet {timesheet_id}: {', '.join(unknown)}",
                    details={"entry_ids": unknown},
                )
            rejected_entries = [by_id[i] for i in entry_ids]
            outside = [
                str(e.time_entry_id) for e in rejected_entries if e.project_id not in rejected_projects
            ]
            if outside:
                raise AuthorizationError(
                    "Entries belong to projects outside this rejection: " + ", ".join(outside),
                    {"entry_ids": outside},
                )
        else:
            rejected_entries = [e for e in entries if e.project_id in rejected_projects]

        # All checks passed; mutate
        status_before = timesheet.status
        for row in rows:
            if row.project_id in rejected_projects:
                row.reset()
                row.mark(tier.value, ApprovalStatus.REJECTED.value, actor_id, reason)
            else:
                row.reset()
        for entry in rejected_entries:
            entry.status = EntryStatus.REJECTED.value
            entry.rejection_reason = reason

        timesheet.status = to_status.value
        timesheet.stamp_rejection(tier.value, actor_id, reason)

        for project in sorted(rejected_projects, key=str):
            self._history(timesheet, project, actor_id, tier, "rejected", status_before, reason=reason)
        await self.session.flush()

        self.audit.emit(
            actor_id,
            f"{tier.value}_rejected",
            "timesheet",
            timesheet.timesheet_id,
            before={"status": status_before},
            after={
                "status": timesheet.status,
                "reason": reason,
                "entries": [str(e.time_entry_id) for e in rejected_entries],
            },
        )
        logger.info(
            "Timesheet %s rejected at %s tier by %s: %s",
            timesheet.timesheet_id,
            tier.value,
            actor_id,
            reason,
        )
        await self.coordinator.register(timesheet)
        return ApprovalResult(
            timesheet=timesheet,
            tier=tier,
            action="rejected",
            status_before=status_before,
            status_after=timesheet.status,
            project_ids=sorted(rejected_projects, key=str),
        )

    # ----- project-week bulk -----

    async def _project_week_timesheets(
        self, project_id: UUID, week_start: date
    ) -> list[tuple[Timesheet, TimesheetProjectApproval]]:
        result = await self.session.execute(
            select(Timesheet, TimesheetProjectApproval)
            .join(
                TimesheetProjectApproval,
                TimesheetProjectApproval.timesheet_id == Timesheet.timesheet_id,
            )
            .where(
                TimesheetProjectApproval.project_id == project_id,
                Timesheet.week_start_date == week_start,
                Timesheet.deleted_at.is_(None),
            )
        )
        pairs = [(timesheet, row) for timesheet, row in result]
        return sorted(pairs, key=lambda pair: str(pair[0].user_id))

    def _bulk_tier(self, role: str | None, status: ProjectWeekStatus, tier: Tier | str | None) -> Tier:
        if tier is not None:
            try:
                return Tier(tier)
            except ValueError:
                raise ValidationError(f"unknown approval tier '{tier}'") from None
        if role in ROLE_TIER:
            return ROLE_TIER[role]
        # Roles without a natural tier act on the stage currently open
        if status.manager_complete:
            return Tier.MANAGEMENT
        if status.lead_complete:
            return Tier.MANAGER
        return Tier.LEAD

    async def _run_bulk(
        self,
        pairs: list[tuple[Timesheet, TimesheetProjectApproval]],
        operation,
    ) -> list[BulkItemResult]:
        items = []
        for timesheet, _row in pairs:
            try:
                result = await operation(timesheet)
            except TimesheetBillingError as exc:
                logger.warning(
                    "Bulk item %s failed: %s", timesheet.timesheet_id, exc.message
                )
                items.append(
                    BulkItemResult(
                        timesheet_id=timesheet.timesheet_id,
                        user_id=timesheet.user_id,
                        success=False,
                        status=timesheet.status,
                        error_code=exc.code,
                        error=exc.message,
                    )
                )
            else:
                items.append(
                    BulkItemResult(
                        timesheet_id=timesheet.timesheet_id,
                        user_id=timesheet.user_id,
                        success=True,
                        status=result.status_after,
                    )
                )
        return items

    async def approve_project_week(
        self,
        actor_id: UUID,
        project_id: UUID,
        week_start: date,
        tier: Tier | str | None = None,
    ) -> BulkResult:
        """Approve every pending timesheet of a project-week at one tier.

        Requires the previous stage to be complete for every required
        employee. Each timesheet is processed on its own; failures are
        reported per item and do not undo the others.

        Raises:
            AuthorizationError: Role not permitted at the tier
            PreconditionError: Project-week not ready for the tier
        """
        week_start = week_start_for(week_start)
        actor = await self.directory.get_user(actor_id)
        await self.directory.get_project(project_id)
        role = await self.directory.effective_role(actor, project_id)
        status = await self.coordinator.get_status(project_id, week_start, refresh=True)
        tier = self._bulk_tier(role, status, tier)
        authorize(role, Action.BULK_APPROVE, tier)

        if not status.ready_for(tier):
            raise PreconditionError(
                f"Project-week is not ready for {tier.value} approval "
                f"({status.submitted_count}/{status.required_count} submitted, "
                f"{status.lead_approved_count} lead approved, "
                f"{status.manager_approved_count} manager approved)",
                {
                    "project_id": str(project_id),
                    "week_start": week_start.isoformat(),
                    "tier": tier.value,
                    "required_count": status.required_count,
                    "blocking_user_ids": [str(u) for u in status.blocking(tier)],
                },
            )

        awaiting = {
            Tier.LEAD: TimesheetStatus.SUBMITTED,
            Tier.MANAGER: TimesheetStatus.LEAD_APPROVED,
            Tier.MANAGEMENT: TimesheetStatus.MANAGER_APPROVED,
        }[tier]
        pairs = [
            (ts, row)
            for ts, row in await self._project_week_timesheets(project_id, week_start)
            if ts.status == awaiting and row.tier_status(tier.value) != ApprovalStatus.APPROVED
        ]

        async def approve(ts: Timesheet) -> ApprovalResult:
            return await self.approve_employee(actor_id, ts.timesheet_id, project_id)

        items = await self._run_bulk(pairs, approve)
        bulk = BulkResult(
            project_id=project_id,
            week_start=week_start,
            tier=tier,
            action="approved",
            items=items,
            status=await self.coordinator.get_status(project_id, week_start, refresh=True),
        )
        self.audit.emit(
            actor_id,
            "project_week_bulk_approved",
            "project_week",
            f"{project_id}:{week_start.isoformat()}",
            after={"tier": tier.value, "succeeded": bulk.succeeded, "failed": bulk.failed},
        )
        return bulk

    async def reject_project_week(
        self,
        actor_id: UUID,
        project_id: UUID,
        week_start: date,
        reason: str,
        tier: Tier | str | None = None,
    ) -> BulkResult:
        """Reject every timesheet of a project-week not yet approved at the tier.

        Raises:
            ValidationError: Blank reason
            AuthorizationError: Role not permitted at the tier
        """
        if reason is None or not reason.strip():
            raise ValidationError("A rejection reason is required")
        week_start = week_start_for(week_start)
        actor = await self.directory.get_user(actor_id)
        await self.directory.get_project(project_id)
        role = await self.directory.effective_role(actor, project_id)
        status = await self.coordinator.get_status(project_id, week_start, refresh=True)
        tier = self._bulk_tier(role, status, tier)
        authorize(role, Action.BULK_REJECT, tier)

        pairs = [
            (ts, row)
            for ts, row in await self._project_week_timesheets(project_id, week_start)
            if TimesheetStateMachine.review_tier(ts.status) == tier
            and row.tier_status(tier.value) != ApprovalStatus.APPROVED
        ]

        async def reject(ts: Timesheet) -> ApprovalResult:
            return await self.reject_employee(actor_id, ts.timesheet_id, reason, project_id)

        items = await self._run_bulk(pairs, reject)
        bulk = BulkResult(
            project_id=project_id,
            week_start=week_start,
            tier=tier,
            action="rejected",
            items=items,
            status=await self.coordinator.get_status(project_id, week_start, refresh=True),
        )
        self.audit.emit(
            actor_id,
            "project_week_bulk_rejected",
            "project_week",
            f"{project_id}:{week_start.isoformat()}",
            after={"tier": tier.value, "reason": reason.strip(),
                   "succeeded": bulk.succeeded, "failed": bulk.failed},
        )
        return bulk
