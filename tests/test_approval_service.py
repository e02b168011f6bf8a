"""Tests for the three-tier approval engine."""

from decimal import Decimal
from uuid import uuid4

import pytest

from builders import WEEK, freeze, log_week, submit_week
from timesheet_billing.errors import (
    AuthorizationError,
    InvalidStateError,
    PreconditionError,
    ValidationError,
)
from timesheet_billing.services.state_machine import Tier, TimesheetStatus


async def submit_split_week(timesheets, org):
    """Alice logs 4h a day on each of Apollo and Borealis."""
    ts = await log_week(
        timesheets, org.alice, org.apollo, org.apollo_build, hours_per_day=Decimal("4")
    )
    await log_week(
        timesheets, org.alice, org.borealis, org.borealis_build, hours_per_day=Decimal("4")
    )
    result = await timesheets.submit(org.alice.user_id, ts.timesheet_id)
    return result.timesheet


class TestApproveEmployee:
    """Test single-timesheet approvals."""

    @pytest.mark.asyncio
    async def test_three_tiers_freeze_timesheet(self, timesheets, approvals, adjustments, org):
        """40h on Apollo approved by lead, manager, management."""
        ts = await submit_week(timesheets, org.alice, org.apollo, org.apollo_build)

        lead = await approvals.approve_employee(org.lead.user_id, ts.timesheet_id)
        assert lead.tier == Tier.LEAD
        assert lead.status_after == TimesheetStatus.LEAD_APPROVED
        assert ts.lead_approved_by_id == org.lead.user_id

        manager = await approvals.approve_employee(org.manager.user_id, ts.timesheet_id)
        assert manager.status_after == TimesheetStatus.MANAGER_APPROVED
        entries = await timesheets.list_entries(ts.timesheet_id)
        assert {e.status for e in entries} == {"approved"}

        final = await approvals.approve_employee(org.management.user_id, ts.timesheet_id)
        assert final.status_after == TimesheetStatus.FROZEN
        assert ts.is_frozen is True
        assert ts.frozen_at is not None

        entries = await timesheets.list_entries(ts.timesheet_id)
        assert {e.status for e in entries} == {"frozen"}
        hours = await adjustments.get_billable_hours(ts.timesheet_id, org.apollo.project_id)
        assert hours.billable_hours == Decimal("40")

    @pytest.mark.asyncio
    async def test_history_and_audit(self, timesheets, approvals, org, audit_sink):
        ts = await submit_week(timesheets, org.alice, org.apollo, org.apollo_build)
        await freeze(approvals, ts, org.lead, org.manager, org.management)

        history = await approvals.get_history(ts.timesheet_id)
        assert sorted(h.tier for h in history) == ["lead", "management", "manager"]
        assert {h.action for h in history} == {"approved"}
        assert {h.user_id for h in history} == {org.alice.user_id}

        actions = audit_sink.actions()
        assert "lead_approved" in actions
        assert "manager_approved" in actions
        assert "management_approved" in actions

    @pytest.mark.asyncio
    async def test_cannot_review_own_timesheet(self, timesheets, approvals, org):
        ts = await submit_week(timesheets, org.lead, org.apollo, org.apollo_build)
        with pytest.raises(AuthorizationError, match="own timesheet"):
            await approvals.approve_employee(org.lead.user_id, ts.timesheet_id)

    @pytest.mark.asyncio
    async def test_employee_cannot_approve(self, timesheets, approvals, org):
        ts = await submit_week(timesheets, org.alice, org.apollo, org.apollo_build)
        with pytest.raises(AuthorizationError):
            await approvals.approve_employee(org.bob.user_id, ts.timesheet_id)

    @pytest.mark.asyncio
    async def test_lead_cannot_approve_manager_tier(self, timesheets, approvals, org):
        ts = await submit_week(timesheets, org.alice, org.apollo, org.apollo_build)
        await approvals.approve_employee(org.lead.user_id, ts.timesheet_id)

        with pytest.raises(AuthorizationError):
            await approvals.approve_employee(org.lead.user_id, ts.timesheet_id)

    @pytest.mark.asyncio
    async def test_draft_is_not_awaiting_review(self, timesheets, approvals, org):
        ts = await log_week(timesheets, org.alice, org.apollo, org.apollo_build)
        with pytest.raises(InvalidStateError, match="not awaiting review"):
            await approvals.approve_employee(org.lead.user_id, ts.timesheet_id)

    @pytest.mark.asyncio
    async def test_tier_advances_once_every_project_approved(self, timesheets, approvals, org):
        """The lead only reviews Apollo; the Borealis row stays pending."""
        ts = await submit_split_week(timesheets, org)

        result = await approvals.approve_employee(org.lead.user_id, ts.timesheet_id)
        assert result.project_ids == [org.apollo.project_id]
        assert ts.status == TimesheetStatus.SUBMITTED

        result = await approvals.approve_employee(org.manager.user_id, ts.timesheet_id)
        assert result.project_ids == [org.borealis.project_id]
        assert ts.status == TimesheetStatus.LEAD_APPROVED

    @pytest.mark.asyncio
    async def test_row_approved_twice(self, timesheets, approvals, org):
        ts = await submit_split_week(timesheets, org)
        await approvals.approve_employee(org.lead.user_id, ts.timesheet_id)

        with pytest.raises(InvalidStateError, match="already approved"):
            await approvals.approve_employee(
                org.manager.user_id, ts.timesheet_id, project_id=org.apollo.project_id
            )


class TestRejectEmployee:
    """Test rejection and resubmission."""

    @pytest.mark.asyncio
    async def test_lead_rejects(self, timesheets, approvals, org):
        ts = await submit_week(timesheets, org.alice, org.apollo, org.apollo_build)
        bob_ts = await submit_week(timesheets, org.bob, org.apollo, org.apollo_build)

        result = await approvals.reject_employee(
            org.lead.user_id, ts.timesheet_id, "hours incorrect"
        )

        assert result.status_after == TimesheetStatus.LEAD_REJECTED
        assert ts.lead_rejection_reason == "hours incorrect"
        entries = await timesheets.list_entries(ts.timesheet_id)
        assert {e.status for e in entries} == {"rejected"}
        assert {e.rejection_reason for e in entries} == {"hours incorrect"}
        assert bob_ts.status == TimesheetStatus.SUBMITTED

    @pytest.mark.asyncio
    async def test_only_rejected_entries_are_editable(self, timesheets, approvals, org):
        ts = await submit_week(timesheets, org.alice, org.apollo, org.apollo_build)
        entries = await timesheets.list_entries(ts.timesheet_id)
        rejected, kept = entries[0], entries[1]

        await approvals.reject_employee(
            org.lead.user_id, ts.timesheet_id, "wrong task", entry_ids=[rejected.time_entry_id]
        )

        with pytest.raises(InvalidStateError, match="only rejected entries"):
            await timesheets.update_entry(org.alice.user_id, kept.time_entry_id, hours=Decimal("7"))

        await timesheets.update_entry(org.alice.user_id, rejected.time_entry_id, hours=Decimal("7"))
        result = await timesheets.submit(org.alice.user_id, ts.timesheet_id)

        assert result.timesheet.status == TimesheetStatus.SUBMITTED
        assert ts.total_hours == Decimal("39")
        entries = await timesheets.list_entries(ts.timesheet_id)
        assert {e.status for e in entries} == {"submitted"}
        assert {e.rejection_reason for e in entries} == {None}

    @pytest.mark.asyncio
    async def test_resubmission_restarts_chain(self, timesheets, approvals, org):
        ts = await submit_week(timesheets, org.alice, org.apollo, org.apollo_build)
        await approvals.approve_employee(org.lead.user_id, ts.timesheet_id)
        await approvals.reject_employee(org.manager.user_id, ts.timesheet_id, "over budget")
        assert ts.status == TimesheetStatus.MANAGER_REJECTED

        await timesheets.submit(org.alice.user_id, ts.timesheet_id)
        assert ts.lead_approved_by_id is None
        assert ts.status == TimesheetStatus.SUBMITTED

        result = await approvals.approve_employee(org.lead.user_id, ts.timesheet_id)
        assert result.tier == Tier.LEAD

    @pytest.mark.asyncio
    async def test_reason_required(self, timesheets, approvals, org):
        ts = await submit_week(timesheets, org.alice, org.apollo, org.apollo_build)
        with pytest.raises(ValidationError, match="reason"):
            await approvals.reject_employee(org.lead.user_id, ts.timesheet_id, "   ")

    @pytest.mark.asyncio
    async def test_foreign_entry_ids(self, timesheets, approvals, org):
        ts = await submit_week(timesheets, org.alice, org.apollo, org.apollo_build)
        with pytest.raises(ValidationError, match="do not belong"):
            await approvals.reject_employee(
                org.lead.user_id, ts.timesheet_id, "bad", entry_ids=[uuid4()]
            )

    @pytest.mark.asyncio
    async def test_rejection_limited_to_reviewed_project(self, timesheets, approvals, org):
        ts = await submit_split_week(timesheets, org)
        await approvals.reject_employee(org.lead.user_id, ts.timesheet_id, "split wrong")

        entries = await timesheets.list_entries(ts.timesheet_id)
        by_project = {
            project_id: {e.status for e in entries if e.project_id == project_id}
            for project_id in (org.apollo.project_id, org.borealis.project_id)
        }
        assert by_project[org.apollo.project_id] == {"rejected"}
        assert by_project[org.borealis.project_id] == {"submitted"}

    @pytest.mark.asyncio
    async def test_cannot_reject_entries_of_other_project(self, timesheets, approvals, org):
        ts = await submit_split_week(timesheets, org)
        entries = await timesheets.list_entries(ts.timesheet_id)
        borealis_ids = [e.time_entry_id for e in entries if e.project_id == org.borealis.project_id]

        with pytest.raises(AuthorizationError, match="outside this rejection"):
            await approvals.reject_employee(
                org.lead.user_id,
                ts.timesheet_id,
                "wrong project",
                project_id=org.apollo.project_id,
                entry_ids=borealis_ids,
            )

        assert ts.status == "submitted"
        assert {e.status for e in entries} == {"submitted"}


class TestProjectWeekBulk:
    """Test bulk approve/reject of a whole project-week."""

    @pytest.mark.asyncio
    async def test_waits_for_all_submissions(self, timesheets, approvals, org):
        await submit_week(timesheets, org.alice, org.apollo, org.apollo_build)
        await submit_week(timesheets, org.bob, org.apollo, org.apollo_build)

        with pytest.raises(PreconditionError, match="2/3 submitted") as exc_info:
            await approvals.approve_project_week(org.lead.user_id, org.apollo.project_id, WEEK)

        assert exc_info.value.details["blocking_user_ids"] == [str(org.lead.user_id)]

    @pytest.mark.asyncio
    async def test_bulk_chain_to_freeze(self, timesheets, approvals, org):
        await submit_week(timesheets, org.alice, org.apollo, org.apollo_build)
        await submit_week(timesheets, org.bob, org.apollo, org.apollo_build)
        lead_ts = await submit_week(timesheets, org.lead, org.apollo, org.apollo_build)

        bulk = await approvals.approve_project_week(
            org.lead.user_id, org.apollo.project_id, WEEK
        )
        assert bulk.tier == Tier.LEAD
        assert bulk.succeeded == 2
        assert bulk.failed == 1
        failed = next(i for i in bulk.items if not i.success)
        assert failed.user_id == org.lead.user_id
        assert failed.error_code == "AUTHORIZATION_ERROR"
        assert bulk.status.lead_complete is False

        await approvals.approve_employee(org.manager.user_id, lead_ts.timesheet_id)

        bulk = await approvals.approve_project_week(
            org.manager.user_id, org.apollo.project_id, WEEK
        )
        assert bulk.tier == Tier.MANAGER
        assert bulk.succeeded == 3
        assert bulk.status.manager_complete is True

        bulk = await approvals.approve_project_week(
            org.management.user_id, org.apollo.project_id, WEEK
        )
        assert bulk.tier == Tier.MANAGEMENT
        assert bulk.succeeded == 3
        assert bulk.status.management_complete is True
        assert bulk.status.frozen_count == 3

    @pytest.mark.asyncio
    async def test_manager_tier_needs_lead_stage(self, timesheets, approvals, org):
        for user in (org.alice, org.bob, org.lead):
            await submit_week(timesheets, user, org.apollo, org.apollo_build)

        with pytest.raises(PreconditionError):
            await approvals.approve_project_week(
                org.manager.user_id, org.apollo.project_id, WEEK, tier="manager"
            )

    @pytest.mark.asyncio
    async def test_employee_cannot_bulk_approve(self, timesheets, approvals, org):
        for user in (org.alice, org.bob, org.lead):
            await submit_week(timesheets, user, org.apollo, org.apollo_build)

        with pytest.raises(AuthorizationError):
            await approvals.approve_project_week(org.bob.user_id, org.apollo.project_id, WEEK)

    @pytest.mark.asyncio
    async def test_unknown_tier(self, approvals, org):
        with pytest.raises(ValidationError, match="unknown approval tier"):
            await approvals.approve_project_week(
                org.manager.user_id, org.apollo.project_id, WEEK, tier="director"
            )

    @pytest.mark.asyncio
    async def test_bulk_reject(self, timesheets, approvals, org, audit_sink):
        alice_ts = await submit_week(timesheets, org.alice, org.apollo, org.apollo_build)
        bob_ts = await submit_week(timesheets, org.bob, org.apollo, org.apollo_build)

        bulk = await approvals.reject_project_week(
            org.lead.user_id, org.apollo.project_id, WEEK, "missing notes"
        )

        assert bulk.action == "rejected"
        assert bulk.succeeded == 2
        assert alice_ts.status == TimesheetStatus.LEAD_REJECTED
        assert bob_ts.status == TimesheetStatus.LEAD_REJECTED
        assert bulk.status.rejected_count == 2
        assert "project_week_bulk_rejected" in audit_sink.actions()

    @pytest.mark.asyncio
    async def test_bulk_reject_needs_reason(self, approvals, org):
        with pytest.raises(ValidationError):
            await approvals.reject_project_week(
                org.lead.user_id, org.apollo.project_id, WEEK, ""
            )
