"""Project-week coordination of many employees' timesheets.

A ProjectWeekAggregate summarizes, for one (project, week), how far every
required employee's timesheet has progressed. The aggregate is always
recomputed from the timesheet, approval and entry rows under a per-project-
week lock, so repeated or concurrent registrations converge on the same
counts and never double count.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Iterable
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from timesheet_billing.calculators.adjustments import billable_view, split_timesheet_delta
from timesheet_billing.calculators.types import ZERO
from timesheet_billing.database import project_week_lock
from timesheet_billing.errors import AuthorizationError, PreconditionError
from timesheet_billing.models import (
    BillingAdjustment,
    ProjectMember,
    ProjectWeekAggregate,
    TimeEntry,
    Timesheet,
    TimesheetProjectApproval,
    User,
    utcnow,
    week_end_for,
    week_start_for,
)
from timesheet_billing.services.audit import AuditTrail
from timesheet_billing.services.directory import DirectoryService
from timesheet_billing.services.permissions import (
    GLOBAL_ROLES,
    Action,
    Role,
    is_allowed,
    tiers_for_role,
)
from timesheet_billing.services.state_machine import (
    ApprovalStatus,
    Tier,
    TimesheetStateMachine,
    TimesheetStatus,
)

logger = logging.getLogger(__name__)

# Project roles whose members must log time
REQUIRED_PROJECT_ROLES = {Role.EMPLOYEE.value, Role.LEAD.value}

# Timesheet statuses at or beyond each tier's approval
_REACHED: dict[Tier, set[str]] = {
    Tier.LEAD: {
        TimesheetStatus.LEAD_APPROVED,
        TimesheetStatus.MANAGER_APPROVED,
        TimesheetStatus.FROZEN,
        TimesheetStatus.BILLED,
    },
    Tier.MANAGER: {
        TimesheetStatus.MANAGER_APPROVED,
        TimesheetStatus.FROZEN,
        TimesheetStatus.BILLED,
    },
    Tier.MANAGEMENT: {TimesheetStatus.FROZEN, TimesheetStatus.BILLED},
}

# Natural review tier of each role
ROLE_TIER: dict[str, Tier] = {
    Role.LEAD.value: Tier.LEAD,
    Role.MANAGER.value: Tier.MANAGER,
    Role.MANAGEMENT.value: Tier.MANAGEMENT,
}

_STAGES = ("submission_complete", "lead_complete", "manager_complete", "management_complete")

# Outstanding list a tier waits on before it may review
_WAITS_ON: dict[Tier, str] = {
    Tier.LEAD: "submitted",
    Tier.MANAGER: "lead_approved",
    Tier.MANAGEMENT: "manager_approved",
}

# Days after the week ends before a missing timesheet is overdue
SUBMISSION_GRACE_DAYS = 3


@dataclass
class ProjectWeekStatus:
    """Read model of one project-week aggregate."""

    project_id: UUID
    week_start: date
    required_count: int = 0
    submitted_count: int = 0
    lead_approved_count: int = 0
    manager_approved_count: int = 0
    frozen_count: int = 0
    rejected_count: int = 0
    submission_complete: bool = False
    lead_complete: bool = False
    manager_complete: bool = False
    management_complete: bool = False
    reopened: bool = False
    reopened_at: datetime | None = None
    version: int = 0
    billable_ledger: dict[str, Any] = field(default_factory=dict)
    outstanding: dict[str, list[str]] = field(default_factory=dict)

    @classmethod
    def from_aggregate(cls, agg: ProjectWeekAggregate) -> ProjectWeekStatus:
        return cls(
            project_id=agg.project_id,
            week_start=agg.week_start_date,
            required_count=agg.required_count,
            submitted_count=agg.submitted_count,
            lead_approved_count=agg.lead_approved_count,
            manager_approved_count=agg.manager_approved_count,
            frozen_count=agg.frozen_count,
            rejected_count=agg.rejected_count,
            submission_complete=agg.submission_complete,
            lead_complete=agg.lead_complete,
            manager_complete=agg.manager_complete,
            management_complete=agg.management_complete,
            reopened=agg.reopened,
            reopened_at=agg.reopened_at,
            version=agg.version,
            billable_ledger=dict(agg.billable_ledger or {}),
            outstanding={k: list(v) for k, v in (agg.outstanding or {}).items()},
        )

    def ready_for(self, tier: Tier | str) -> bool:
        """Whether the previous stage is complete so the tier may review."""
        tier = Tier(tier)
        if tier == Tier.LEAD:
            return self.submission_complete
        if tier == Tier.MANAGER:
            return self.lead_complete
        return self.manager_complete

    def complete_for(self, tier: Tier | str | None = None) -> bool:
        """Whether every required employee reached the tier's approval."""
        if tier is None:
            return self.management_complete
        tier = Tier(tier)
        if tier == Tier.LEAD:
            return self.lead_complete
        if tier == Tier.MANAGER:
            return self.manager_complete
        return self.management_complete

    def blocking(self, tier: Tier | str) -> list[UUID]:
        """Required users keeping the tier from reviewing."""
        return [UUID(u) for u in self.outstanding.get(_WAITS_ON[Tier(tier)], [])]

    @property
    def defaulters(self) -> list[UUID]:
        """Required users without a submitted timesheet."""
        return self.blocking(Tier.LEAD)


@dataclass(frozen=True)
class Defaulter:
    """A required user who has not submitted for a project-week."""

    user_id: UUID
    user_name: str
    email: str
    project_role: str | None
    timesheet_status: str | None
    days_overdue: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": str(self.user_id),
            "user_name": self.user_name,
            "email": self.email,
            "project_role": self.project_role,
            "timesheet_status": self.timesheet_status,
            "days_overdue": self.days_overdue,
        }


@dataclass(frozen=True)
class ReviewItem:
    """A project-week waiting on one of the actor's tiers."""

    tier: Tier
    status: ProjectWeekStatus


def _approved_at(
    timesheet: Timesheet, row: TimesheetProjectApproval | None, tier: Tier
) -> bool:
    if timesheet.status in _REACHED[tier]:
        return True
    return row is not None and row.tier_status(tier.value) == ApprovalStatus.APPROVED


class ProjectWeekCoordinator:
    """Maintains ProjectWeekAggregate rows.

    Operations:
    - register: recompute every project-week a timesheet touches
    - recompute: rebuild one aggregate from source rows
    - member_added: recompute after enrolment, flagging reopened stages
    - can_review / is_complete: readiness checks for approvals
    - authorize_read: who may see a timesheet
    - get_defaulters / validate_no_defaulters: who holds up submission
    - review_queue: project-weeks waiting on an actor
    """

    def __init__(self, session: AsyncSession, audit: AuditTrail | None = None):
        self.session = session
        self.audit = audit or AuditTrail()
        self.directory = DirectoryService(session)

    async def project_ids_for(self, timesheet: Timesheet) -> set[UUID]:
        """Projects a timesheet touches: live entries plus approval rows."""
        entries = await self.session.execute(
            select(TimeEntry.project_id).where(
                TimeEntry.timesheet_id == timesheet.timesheet_id,
                TimeEntry.deleted_at.is_(None),
            )
        )
        rows = await self.session.execute(
            select(TimesheetProjectApproval.project_id).where(
                TimesheetProjectApproval.timesheet_id == timesheet.timesheet_id
            )
        )
        return set(entries.scalars().all()) | set(rows.scalars().all())

    async def authorize_read(
        self, actor_id: UUID, timesheet: Timesheet, action: Action | None = None
    ) -> None:
        """Let the owner, reviewers of its projects and global roles read a timesheet.

        With an action, any role allowed that action may read as well.
        """
        if actor_id == timesheet.user_id:
            return
        actor = await self.directory.get_user(actor_id)
        if actor.role in GLOBAL_ROLES:
            return
        if action is not None and is_allowed(actor.role, action):
            return
        for project_id in sorted(await self.project_ids_for(timesheet), key=str):
            role = await self.directory.effective_role(actor, project_id)
            if tiers_for_role(role):
                return
        raise AuthorizationError(
            f"User {actor_id} may not read timesheet {timesheet.timesheet_id}",
            {"timesheet_id": str(timesheet.timesheet_id), "actor_id": str(actor_id)},
        )

    async def register(
        self, timesheet: Timesheet, project_ids: Iterable[UUID] | None = None
    ) -> list[ProjectWeekStatus]:
        """Recompute the aggregates of every project the timesheet touches.

        Idempotent: registering the same timesheet twice yields the same
        counts.
        """
        await self.session.flush()
        ids = set(project_ids) if project_ids is not None else set()
        ids |= await self.project_ids_for(timesheet)
        statuses = []
        # Fixed order keeps lock acquisition consistent across callers
        for project_id in sorted(ids, key=str):
            agg = await self.recompute(project_id, timesheet.week_start_date)
            statuses.append(ProjectWeekStatus.from_aggregate(agg))
        return statuses

    async def recompute(
        self, project_id: UUID, week_start: date, actor_id: UUID | None = None
    ) -> ProjectWeekAggregate:
        """Rebuild one project-week aggregate from source records."""
        week_start = week_start_for(week_start)
        week_end = week_end_for(week_start)

        async with project_week_lock(self.session, project_id, week_start):
            await self.session.flush()
            members = await self.directory.active_members(project_id, week_start, week_end)
            required = {m.user_id for m in members if m.project_role in REQUIRED_PROJECT_ROLES}

            entry_rows = await self.session.execute(
                select(TimeEntry, Timesheet.user_id)
                .join(Timesheet, Timesheet.timesheet_id == TimeEntry.timesheet_id)
                .where(
                    TimeEntry.project_id == project_id,
                    TimeEntry.deleted_at.is_(None),
                    Timesheet.week_start_date == week_start,
                    Timesheet.deleted_at.is_(None),
                )
            )
            entries_by_timesheet: dict[UUID, list[TimeEntry]] = {}
            for entry, user_id in entry_rows.all():
                required.add(user_id)
                entries_by_timesheet.setdefault(entry.timesheet_id, []).append(entry)

            timesheets: dict[UUID, Timesheet] = {}
            if required:
                result = await self.session.execute(
                    select(Timesheet).where(
                        Timesheet.user_id.in_(required),
                        Timesheet.week_start_date == week_start,
                        Timesheet.deleted_at.is_(None),
                    )
                )
                timesheets = {ts.user_id: ts for ts in result.scalars().all()}

            rows: dict[UUID, TimesheetProjectApproval] = {}
            if timesheets:
                result = await self.session.execute(
                    select(TimesheetProjectApproval).where(
                        TimesheetProjectApproval.project_id == project_id,
                        TimesheetProjectApproval.timesheet_id.in_(
                            [ts.timesheet_id for ts in timesheets.values()]
                        ),
                    )
                )
                rows = {row.timesheet_id: row for row in result.scalars().all()}

            counts = {
                "submitted": 0,
                "lead_approved": 0,
                "manager_approved": 0,
                "frozen": 0,
                "rejected": 0,
            }
            outstanding: dict[str, list[str]] = {
                stage: [] for stage in ("submitted", "lead_approved", "manager_approved", "frozen")
            }
            for user_id in sorted(required, key=str):
                ts = timesheets.get(user_id)
                reached = {stage: False for stage in outstanding}
                if ts is not None:
                    row = rows.get(ts.timesheet_id)
                    if TimesheetStateMachine.is_rejected(ts.status):
                        counts["rejected"] += 1
                    elif ts.status != TimesheetStatus.DRAFT:
                        counts["submitted"] += 1
                        reached["submitted"] = True
                    if ts.status != TimesheetStatus.DRAFT:
                        reached["lead_approved"] = _approved_at(ts, row, Tier.LEAD)
                        reached["manager_approved"] = _approved_at(ts, row, Tier.MANAGER)
                        reached["frozen"] = _approved_at(ts, row, Tier.MANAGEMENT)
                for stage, done in reached.items():
                    if stage != "submitted" and done:
                        counts[stage] += 1
                    if not done:
                        outstanding[stage].append(str(user_id))

            ledger = await self._billable_ledger(project_id, timesheets, entries_by_timesheet)

            agg = await self._get_aggregate(project_id, week_start)
            created = agg is None
            if agg is None:
                agg = ProjectWeekAggregate(
                    project_id=project_id,
                    week_start_date=week_start,
                    version=0,
                    reopened=False,
                )
                self.session.add(agg)

            previous_required = agg.required_count or 0
            previous = {stage: bool(getattr(agg, stage)) for stage in _STAGES}

            n = len(required)
            agg.required_count = n
            agg.submitted_count = counts["submitted"]
            agg.lead_approved_count = counts["lead_approved"]
            agg.manager_approved_count = counts["manager_approved"]
            agg.frozen_count = counts["frozen"]
            agg.rejected_count = counts["rejected"]
            agg.submission_complete = n > 0 and counts["submitted"] == n
            agg.lead_complete = n > 0 and counts["lead_approved"] == n
            agg.manager_complete = n > 0 and counts["manager_approved"] == n
            agg.management_complete = n > 0 and counts["frozen"] == n
            agg.billable_ledger = ledger
            agg.outstanding = outstanding
            agg.version = (agg.version or 0) + 1
            agg.updated_at = utcnow()

            lost = [s for s in _STAGES if previous[s] and not getattr(agg, s)]
            if not created and lost and n > previous_required:
                agg.reopened = True
                agg.reopened_at = utcnow()
                logger.warning(
                    "Project-week %s/%s reopened: required %d -> %d, lost %s",
                    project_id,
                    week_start,
                    previous_required,
                    n,
                    ", ".join(lost),
                )
                self.audit.emit(
                    actor_id,
                    "project_week_reopened",
                    "project_week",
                    f"{project_id}:{week_start.isoformat()}",
                    before={"required_count": previous_required, **previous},
                    after={"required_count": n, **{s: getattr(agg, s) for s in _STAGES}},
                )
            elif agg.management_complete:
                agg.reopened = False

            await self.session.flush()
            logger.debug(
                "Recomputed project-week %s/%s v%d: %s",
                project_id,
                week_start,
                agg.version,
                counts,
            )
            return agg

    async def _get_aggregate(
        self, project_id: UUID, week_start: date
    ) -> ProjectWeekAggregate | None:
        result = await self.session.execute(
            select(ProjectWeekAggregate).where(
                ProjectWeekAggregate.project_id == project_id,
                ProjectWeekAggregate.week_start_date == week_start,
            )
        )
        return result.scalar_one_or_none()

    async def _billable_ledger(
        self,
        project_id: UUID,
        timesheets: dict[UUID, Timesheet],
        entries_by_timesheet: dict[UUID, list[TimeEntry]],
    ) -> dict[str, Any]:
        """Per-user worked/adjustment/billable hours on the project."""
        timesheet_ids = [ts.timesheet_id for ts in timesheets.values()]
        if not timesheet_ids:
            return {}

        all_entries = await self.session.execute(
            select(TimeEntry).where(
                TimeEntry.timesheet_id.in_(timesheet_ids),
                TimeEntry.deleted_at.is_(None),
                TimeEntry.is_billable.is_(True),
            )
        )
        worked: dict[UUID, dict[UUID, Decimal]] = {}
        for entry in all_entries.scalars().all():
            per_project = worked.setdefault(entry.timesheet_id, {})
            per_project[entry.project_id] = per_project.get(entry.project_id, ZERO) + entry.hours

        adjustments = await self.session.execute(
            select(BillingAdjustment).where(
                BillingAdjustment.timesheet_id.in_(timesheet_ids),
                BillingAdjustment.deleted_at.is_(None),
            )
        )
        project_delta: dict[UUID, Decimal] = {}
        timesheet_delta: dict[UUID, Decimal] = {}
        for adj in adjustments.scalars().all():
            if adj.project_id is None:
                timesheet_delta[adj.timesheet_id] = (
                    timesheet_delta.get(adj.timesheet_id, ZERO) + adj.adjustment_hours
                )
            elif adj.project_id == project_id:
                project_delta[adj.timesheet_id] = (
                    project_delta.get(adj.timesheet_id, ZERO) + adj.adjustment_hours
                )

        ledger: dict[str, Any] = {}
        for user_id, ts in sorted(timesheets.items(), key=lambda item: str(item[0])):
            if ts.timesheet_id not in entries_by_timesheet:
                continue
            project_worked = worked.get(ts.timesheet_id, {})
            share = split_timesheet_delta(
                project_worked, timesheet_delta.get(ts.timesheet_id, ZERO)
            ).get(project_id, ZERO)
            view = billable_view(
                project_worked.get(project_id, ZERO),
                project_delta.get(ts.timesheet_id, ZERO) + share,
            )
            ledger[str(user_id)] = {
                "timesheet_id": str(ts.timesheet_id),
                "status": ts.status,
                **view.to_dict(),
            }
        return ledger

    async def get_status(
        self, project_id: UUID, week_start: date, refresh: bool = False
    ) -> ProjectWeekStatus:
        """Current aggregate, computed on first access."""
        week_start = week_start_for(week_start)
        agg = None if refresh else await self._get_aggregate(project_id, week_start)
        if agg is None:
            agg = await self.recompute(project_id, week_start)
        return ProjectWeekStatus.from_aggregate(agg)

    async def can_review(
        self,
        role: str,
        project_id: UUID,
        week_start: date,
        tier: Tier | str | None = None,
    ) -> bool:
        """Whether a role may review the project-week now.

        The role must be permitted at the tier and the previous stage must
        be complete. Without a tier, the role's own tier is used; roles
        without one (super admin) qualify when any tier is ready.
        """
        status = await self.get_status(project_id, week_start, refresh=True)
        if tier is None:
            tier = ROLE_TIER.get(role)
        if tier is None:
            return any(
                is_allowed(role, Action.APPROVE, t) and status.ready_for(t) for t in Tier
            )
        return is_allowed(role, Action.APPROVE, tier) and status.ready_for(tier)

    async def is_complete(
        self, project_id: UUID, week_start: date, tier: Tier | str | None = None
    ) -> bool:
        """Whether every required employee reached the tier (default: frozen)."""
        status = await self.get_status(project_id, week_start, refresh=True)
        return status.complete_for(tier)

    async def _ensure_reviewer(self, actor_id: UUID, project_id: UUID) -> None:
        actor = await self.directory.get_user(actor_id)
        role = await self.directory.effective_role(actor, project_id)
        if not tiers_for_role(role):
            raise AuthorizationError(
                f"User {actor_id} does not review project {project_id}",
                {"project_id": str(project_id), "role": role},
            )

    async def get_defaulters(
        self,
        project_id: UUID,
        week_start: date,
        today: date | None = None,
        exclude_role: str | None = None,
        actor_id: UUID | None = None,
    ) -> list[Defaulter]:
        """Required users of a project-week who have not submitted.

        Draft, rejected and missing timesheets all count. Days overdue are
        measured from SUBMISSION_GRACE_DAYS after the week ends.
        """
        if actor_id is not None:
            await self._ensure_reviewer(actor_id, project_id)
        status = await self.get_status(project_id, week_start, refresh=True)
        user_ids = status.defaulters
        if not user_ids:
            return []

        today = today or utcnow().date()
        deadline = week_end_for(status.week_start) + timedelta(days=SUBMISSION_GRACE_DAYS)
        overdue = max(0, (today - deadline).days)

        users = await self.session.execute(select(User).where(User.user_id.in_(user_ids)))
        by_id = {user.user_id: user for user in users.scalars().all()}
        timesheets = await self.session.execute(
            select(Timesheet).where(
                Timesheet.user_id.in_(user_ids),
                Timesheet.week_start_date == status.week_start,
                Timesheet.deleted_at.is_(None),
            )
        )
        statuses = {ts.user_id: ts.status for ts in timesheets.scalars().all()}

        defaulters = []
        for user_id in user_ids:
            user = by_id[user_id]
            role = await self.directory.project_role(user_id, project_id)
            if exclude_role is not None and role == exclude_role:
                continue
            defaulters.append(
                Defaulter(
                    user_id=user_id,
                    user_name=user.full_name,
                    email=user.email,
                    project_role=role,
                    timesheet_status=statuses.get(user_id),
                    days_overdue=overdue,
                )
            )
        return sorted(defaulters, key=lambda d: (d.user_name, str(d.user_id)))

    async def validate_no_defaulters(self, project_id: UUID, week_start: date) -> None:
        """Raise PreconditionError naming everyone who has not submitted."""
        defaulters = await self.get_defaulters(project_id, week_start)
        if defaulters:
            names = ", ".join(d.user_name for d in defaulters)
            raise PreconditionError(
                f"Cannot proceed: {len(defaulters)} team member(s) have not "
                f"submitted timesheets: {names}",
                {
                    "project_id": str(project_id),
                    "week_start": week_start_for(week_start).isoformat(),
                    "blocking_user_ids": [str(d.user_id) for d in defaulters],
                },
            )

    async def review_queue(
        self, actor_id: UUID, week_start: date | None = None
    ) -> list[ReviewItem]:
        """Project-weeks ready for one of the actor's tiers and not yet done.

        Leads and managers see the projects they lead or manage; management
        and super admins see every project.
        """
        actor = await self.directory.get_user(actor_id)
        query = select(ProjectWeekAggregate)
        if actor.role not in GLOBAL_ROLES:
            led = await self.session.execute(
                select(ProjectMember.project_id).where(
                    ProjectMember.user_id == actor_id,
                    ProjectMember.deleted_at.is_(None),
                    ProjectMember.project_role.in_([Role.LEAD.value, Role.MANAGER.value]),
                )
            )
            project_ids = set(led.scalars().all())
            if not project_ids:
                return []
            query = query.where(ProjectWeekAggregate.project_id.in_(project_ids))
        if week_start is not None:
            query = query.where(ProjectWeekAggregate.week_start_date == week_start_for(week_start))
        result = await self.session.execute(query)

        items = []
        for agg in result.scalars().all():
            status = ProjectWeekStatus.from_aggregate(agg)
            role = await self.directory.effective_role(actor, agg.project_id)
            for tier in tiers_for_role(role):
                if status.ready_for(tier) and not status.complete_for(tier):
                    items.append(ReviewItem(tier=tier, status=status))
        return sorted(
            items,
            key=lambda item: (
                item.status.week_start,
                str(item.status.project_id),
                list(Tier).index(item.tier),
            ),
        )

    async def member_added(
        self,
        project_id: UUID,
        user_id: UUID,
        joined_on: date,
        actor_id: UUID | None = None,
    ) -> ProjectWeekStatus:
        """Recompute after a member joins; later existing weeks too.

        Returns the status of the week containing joined_on; its reopened
        flag tells the caller whether a complete stage was reopened.
        """
        week_start = week_start_for(joined_on)
        logger.info(
            "Member %s added to project %s from %s", user_id, project_id, joined_on
        )
        later = await self.session.execute(
            select(ProjectWeekAggregate.week_start_date).where(
                ProjectWeekAggregate.project_id == project_id,
                ProjectWeekAggregate.week_start_date > week_start,
            )
        )
        agg = await self.recompute(project_id, week_start, actor_id)
        status = ProjectWeekStatus.from_aggregate(agg)
        for later_week in sorted(later.scalars().all()):
            await self.recompute(project_id, later_week, actor_id)
        return status
