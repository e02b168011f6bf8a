"""Tests for the billing aggregation fold."""

import random
from datetime import date, timedelta
from decimal import Decimal
from uuid import uuid4

from timesheet_billing.calculators.aggregation import BillingAggregator
from timesheet_billing.calculators.types import (
    AdjustmentDelta,
    BillableEntry,
    MultiplierKind,
    ResolvedRate,
)

WEEK = date(2024, 3, 4)
TIMESHEET_ID = uuid4()
USER_ID = uuid4()
APOLLO_ID = uuid4()
BOREALIS_ID = uuid4()
BUILD_TASK_ID = uuid4()


def make_rate(effective: str = "100", increment: int = 15) -> ResolvedRate:
    return ResolvedRate(
        rate_id=uuid4(),
        scope="global",
        base_rate=Decimal(effective),
        multiplier=Decimal("1"),
        multiplier_kind=MultiplierKind.BASE,
        effective_rate=Decimal(effective),
        minimum_increment_minutes=increment,
    )


def make_entry(
    hours: str,
    day: int = 0,
    project_id=APOLLO_ID,
    project_name: str = "Apollo",
    is_billable: bool = True,
    rate: ResolvedRate | None = None,
    task_id=BUILD_TASK_ID,
    task_name: str = "Build",
    timesheet_id=TIMESHEET_ID,
    user_id=USER_ID,
    user_name: str = "Alice",
) -> BillableEntry:
    return BillableEntry(
        entry_id=uuid4(),
        timesheet_id=timesheet_id,
        user_id=user_id,
        user_name=user_name,
        project_id=project_id,
        project_name=project_name,
        week_start=WEEK,
        work_date=WEEK + timedelta(days=day),
        hours=Decimal(hours),
        is_billable=is_billable,
        rate=rate or make_rate(),
        task_id=task_id,
        task_name=task_name,
    )


def full_week(hours: str = "8", **kwargs) -> list[BillableEntry]:
    return [make_entry(hours, day=d, **kwargs) for d in range(5)]


class TestComputeLines:
    """Test per-entry billable hours and amounts."""

    def test_amount_is_hours_times_rate(self):
        views = BillingAggregator().aggregate(full_week())

        assert views.totals.worked_hours == Decimal("40")
        assert views.totals.billable_hours == Decimal("40")
        assert views.totals.amount == Decimal("4000")

    def test_increment_applied_before_adjustment(self):
        """1.1h rounds up to 1.25h, then the -0.25h delta applies."""
        entry = make_entry("1.1")
        lines = BillingAggregator().compute_lines(
            [entry], [AdjustmentDelta(TIMESHEET_ID, Decimal("-0.25"), APOLLO_ID)]
        )

        assert lines[0].worked_hours == Decimal("1.25")
        assert lines[0].billable_hours == Decimal("1.00")
        assert lines[0].amount == Decimal("100")

    def test_increment_can_be_disabled(self):
        lines = BillingAggregator(apply_minimum_increment=False).compute_lines(
            [make_entry("1.1")]
        )
        assert lines[0].worked_hours == Decimal("1.1")

    def test_non_billable_entries_skip_adjustments(self):
        billable = make_entry("8")
        internal = make_entry("2", is_billable=False, task_name="Meetings", task_id=uuid4())
        lines = BillingAggregator().compute_lines(
            [billable, internal], [AdjustmentDelta(TIMESHEET_ID, Decimal("-4"), APOLLO_ID)]
        )
        by_id = {line.entry.entry_id: line for line in lines}

        assert by_id[billable.entry_id].billable_hours == Decimal("4")
        assert by_id[internal.entry_id].billable_hours == Decimal("0")
        assert by_id[internal.entry_id].non_billable_hours == Decimal("2")
        assert by_id[internal.entry_id].amount == Decimal("0")

    def test_negative_delta_clamped(self):
        views = BillingAggregator().aggregate(
            full_week(), [AdjustmentDelta(TIMESHEET_ID, Decimal("-100"), APOLLO_ID)]
        )
        assert views.totals.billable_hours == Decimal("0")
        assert views.totals.amount == Decimal("0")
        assert all(line.billable_hours >= 0 for line in views.lines)

    def test_timesheet_delta_split_by_project_hours(self):
        entries = full_week("6") + full_week(
            "2", project_id=BOREALIS_ID, project_name="Borealis", task_id=uuid4()
        )
        views = BillingAggregator().aggregate(
            entries, [AdjustmentDelta(TIMESHEET_ID, Decimal("-4"))]
        )
        by_name = {p.project_name: p for p in views.projects}

        assert by_name["Apollo"].totals.billable_hours == Decimal("27")
        assert by_name["Borealis"].totals.billable_hours == Decimal("9")
        assert views.totals.billable_hours == Decimal("36")

    def test_project_and_timesheet_deltas_combine(self):
        views = BillingAggregator().aggregate(
            full_week(),
            [
                AdjustmentDelta(TIMESHEET_ID, Decimal("2")),
                AdjustmentDelta(TIMESHEET_ID, Decimal("-5"), APOLLO_ID),
            ],
        )
        assert views.totals.billable_hours == Decimal("37")
        assert views.totals.to_dict()["adjustment_hours"] == Decimal("-3.00")

    def test_adjustment_without_billable_entries_ignored(self):
        entries = full_week(is_billable=False)
        views = BillingAggregator().aggregate(
            entries, [AdjustmentDelta(TIMESHEET_ID, Decimal("5"), APOLLO_ID)]
        )
        assert views.totals.billable_hours == Decimal("0")
        assert views.totals.non_billable_hours == Decimal("40")


class TestAggregate:
    """Test folding lines into the three views."""

    def test_include_filter_keeps_split(self):
        """Filtering to Apollo still uses the split computed over both projects."""
        entries = full_week("6") + full_week(
            "2", project_id=BOREALIS_ID, project_name="Borealis", task_id=uuid4()
        )
        views = BillingAggregator().aggregate(
            entries,
            [AdjustmentDelta(TIMESHEET_ID, Decimal("-4"))],
            include=lambda e: e.project_id == APOLLO_ID,
        )

        assert [p.project_name for p in views.projects] == ["Apollo"]
        assert views.totals.billable_hours == Decimal("27")

    def test_views_group_by_project_task_and_user(self):
        bob_id = uuid4()
        entries = full_week() + [
            make_entry("4", user_id=bob_id, user_name="Bob", timesheet_id=uuid4()),
            make_entry("3", task_id=None, task_name="Workshop", is_billable=False),
        ]
        views = BillingAggregator().aggregate(entries)

        assert [u.user_name for u in views.users] == ["Alice", "Bob"]
        assert [t.task_name for t in views.tasks] == ["Build", "Workshop"]
        assert views.tasks[1].task_key == "custom:Workshop"

        project = views.projects[0]
        assert project.totals.worked_hours == Decimal("47")
        assert project.users[str(bob_id)].totals.billable_hours == Decimal("4")
        assert project.weeks[WEEK].amount == Decimal("4400")

        alice = views.users[0]
        row = alice.projects[str(APOLLO_ID)]
        assert row.tasks["custom:Workshop"].totals.non_billable_hours == Decimal("3")
        assert row.totals.billable_hours == Decimal("40")

    def test_identical_output_for_shuffled_input(self):
        entries = full_week("7.5") + full_week(
            "1.25", project_id=BOREALIS_ID, project_name="Borealis", task_id=uuid4()
        )
        adjustments = [AdjustmentDelta(TIMESHEET_ID, Decimal("-3.33"))]
        expected = BillingAggregator().aggregate(entries, adjustments).to_dict()

        shuffled = list(entries)
        random.Random(7).shuffle(shuffled)
        assert BillingAggregator().aggregate(shuffled, adjustments).to_dict() == expected

    def test_to_dict_rounds_to_cents(self):
        views = BillingAggregator().aggregate([make_entry("1", rate=make_rate("33.335"))])
        data = views.to_dict()

        assert views.totals.amount == Decimal("33.335")
        assert data["totals"]["amount"] == Decimal("33.34")
        assert data["projects"][0]["users"][0]["user_name"] == "Alice"
        assert data["projects"][0]["weeks"][0]["week_start"] == "2024-03-04"

    def test_empty_input(self):
        views = BillingAggregator().aggregate([])
        assert views.projects == []
        assert views.totals.to_dict()["amount"] == Decimal("0.00")
