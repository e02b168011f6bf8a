"""Billing aggregation: a pure fold from entries and adjustments to views.

Pipeline:
1. Round each entry's worked hours up to its rate's minimum increment
2. Per timesheet-project, combine the project delta with the project's
   share of the timesheet delta and clamp at -worked
3. Distribute that delta over the project's billable entries
4. amount = entry billable hours * effective rate
5. Fold entry lines into project, task and user views

Inputs are sorted by stable keys before any arithmetic and rounding to
cents happens only when views are serialized, so identical inputs always
produce identical output.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from decimal import Decimal
from typing import Callable, Iterable
from uuid import UUID

from timesheet_billing.calculators.adjustments import (
    compute_billable_hours,
    distribute_adjustment,
    split_timesheet_delta,
)
from timesheet_billing.calculators.rate_resolver import round_up_to_increment
from timesheet_billing.calculators.types import (
    ZERO,
    AdjustmentDelta,
    BillableEntry,
    BillingViews,
    EntryLine,
    ProjectUserRow,
    ProjectView,
    TaskRow,
    TaskView,
    Totals,
    UserProjectRow,
    UserView,
)

logger = logging.getLogger(__name__)


class BillingAggregator:
    """Computes entry lines and billing views.

    Usage:
        aggregator = BillingAggregator()
        views = aggregator.aggregate(entries, adjustments)
        views.to_dict()
    """

    def __init__(self, apply_minimum_increment: bool = True):
        self.apply_minimum_increment = apply_minimum_increment

    def worked_hours(self, entry: BillableEntry) -> Decimal:
        if not self.apply_minimum_increment:
            return entry.hours
        return round_up_to_increment(entry.hours, entry.rate.minimum_increment_minutes)

    def compute_lines(
        self,
        entries: Iterable[BillableEntry],
        adjustments: Iterable[AdjustmentDelta] = (),
    ) -> list[EntryLine]:
        """Billable hours and amount for every entry."""
        ordered = sorted(entries, key=lambda e: e.sort_key)
        worked = {e.entry_id: self.worked_hours(e) for e in ordered}

        timesheet_deltas: dict[UUID, Decimal] = defaultdict(lambda: ZERO)
        project_deltas: dict[tuple[UUID, UUID], Decimal] = defaultdict(lambda: ZERO)
        for adj in adjustments:
            if adj.project_id is None:
                timesheet_deltas[adj.timesheet_id] += adj.adjustment_hours
            else:
                project_deltas[(adj.timesheet_id, adj.project_id)] += adj.adjustment_hours

        # timesheet -> project -> billable entries
        grouped: dict[UUID, dict[UUID, list[BillableEntry]]] = defaultdict(
            lambda: defaultdict(list)
        )
        for entry in ordered:
            if entry.is_billable:
                grouped[entry.timesheet_id][entry.project_id].append(entry)

        entry_deltas: dict[UUID, Decimal] = {}
        for timesheet_id in sorted(grouped, key=str):
            projects = grouped[timesheet_id]
            project_worked = {
                project_id: sum((worked[e.entry_id] for e in items), ZERO)
                for project_id, items in projects.items()
            }
            shares = split_timesheet_delta(project_worked, timesheet_deltas[timesheet_id])
            for project_id in sorted(projects, key=str):
                project_hours = project_worked[project_id]
                delta = project_deltas[(timesheet_id, project_id)] + shares[project_id]
                billable = compute_billable_hours(project_hours, delta)
                parts = distribute_adjustment(
                    [(e.entry_id, worked[e.entry_id]) for e in projects[project_id]],
                    billable - project_hours,
                )
                entry_deltas.update(parts)

        lines: list[EntryLine] = []
        for entry in ordered:
            hours = worked[entry.entry_id]
            if entry.is_billable:
                billable_hours = hours + entry_deltas.get(entry.entry_id, ZERO)
            else:
                billable_hours = ZERO
            lines.append(
                EntryLine(
                    entry=entry,
                    worked_hours=hours,
                    billable_hours=billable_hours,
                    amount=billable_hours * entry.rate.effective_rate,
                )
            )
        return lines

    def aggregate(
        self,
        entries: Iterable[BillableEntry],
        adjustments: Iterable[AdjustmentDelta] = (),
        include: Callable[[BillableEntry], bool] | None = None,
    ) -> BillingViews:
        """Compute entry lines and fold them into project, task and user views.

        Lines are computed over every entry so timesheet-scope deltas split
        the same way regardless of filtering; include then selects which
        lines reach the views.
        """
        return self.fold(self.compute_lines(entries, adjustments), include)

    def fold(
        self,
        lines: Iterable[EntryLine],
        include: Callable[[BillableEntry], bool] | None = None,
    ) -> BillingViews:
        """Fold already computed lines, such as those stored in a snapshot."""
        lines = sorted(lines, key=lambda line: line.entry.sort_key)
        if include is not None:
            lines = [line for line in lines if include(line.entry)]

        totals = Totals()
        projects: dict[str, ProjectView] = {}
        tasks: dict[tuple[str, str], TaskView] = {}
        users: dict[str, UserView] = {}

        for line in lines:
            e = line.entry
            project_key = str(e.project_id)
            user_key = str(e.user_id)
            totals.add(line)

            project = projects.get(project_key)
            if project is None:
                project = projects[project_key] = ProjectView(
                    project_id=e.project_id,
                    project_name=e.project_name,
                    client_id=e.client_id,
                )
            project.totals.add(line)
            project.users.setdefault(
                user_key, ProjectUserRow(user_id=e.user_id, user_name=e.user_name)
            ).totals.add(line)
            project.weeks.setdefault(e.week_start, Totals()).add(line)

            task = tasks.get((project_key, e.task_key))
            if task is None:
                task = tasks[(project_key, e.task_key)] = TaskView(
                    project_id=e.project_id,
                    project_name=e.project_name,
                    task_key=e.task_key,
                    task_name=e.task_name,
                    task_id=e.task_id,
                )
            task.totals.add(line)

            user = users.get(user_key)
            if user is None:
                user = users[user_key] = UserView(user_id=e.user_id, user_name=e.user_name)
            user.totals.add(line)
            user_project = user.projects.setdefault(
                project_key,
                UserProjectRow(project_id=e.project_id, project_name=e.project_name),
            )
            user_project.totals.add(line)
            user_project.tasks.setdefault(
                e.task_key,
                TaskRow(task_key=e.task_key, task_name=e.task_name, task_id=e.task_id),
            ).totals.add(line)

        logger.debug(
            "Aggregated %d lines into %d projects, %d tasks, %d users",
            len(lines),
            len(projects),
            len(tasks),
            len(users),
        )

        return BillingViews(
            projects=sorted(
                projects.values(), key=lambda p: (p.project_name, str(p.project_id))
            ),
            tasks=sorted(
                tasks.values(),
                key=lambda t: (t.project_name, str(t.project_id), t.task_name, t.task_key),
            ),
            users=sorted(users.values(), key=lambda u: (u.user_name, str(u.user_id))),
            totals=totals,
            lines=lines,
        )
