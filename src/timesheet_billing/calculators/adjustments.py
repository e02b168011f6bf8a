"""Billable-hour adjustment arithmetic.

Adjustments are signed deltas stored against a project (inside one
timesheet) or against a whole timesheet. Worked hours are always recomputed
from live entries, so a delta keeps applying when entries change:

    billable = max(0, worked + delta)

A project's view of a timesheet-scope delta is its proportional share,
split with distribute_adjustment so the shares add up exactly.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import Hashable, Iterable, Sequence, TypeVar

from timesheet_billing.calculators.types import HOURS_PRECISION, ZERO, BillableHours

K = TypeVar("K", bound=Hashable)


def compute_billable_hours(worked: Decimal, adjustment: Decimal) -> Decimal:
    """billable = max(0, worked + adjustment)."""
    return max(ZERO, worked + adjustment)


def clamp_delta(worked: Decimal, delta: Decimal) -> Decimal:
    """Limit a negative delta so billable hours cannot drop below zero."""
    return max(delta, -worked)


def billable_view(worked: Decimal, delta: Decimal) -> BillableHours:
    return BillableHours(
        worked_hours=worked,
        adjustment_hours=delta,
        billable_hours=compute_billable_hours(worked, delta),
    )


def distribute_adjustment(
    parts: Sequence[tuple[K, Decimal]], total: Decimal
) -> dict[K, Decimal]:
    """Spread a delta over weighted parts proportionally.

    Each part receives total * hours / worked, rounded to 4 places. The
    delta is clamped at -worked so no part goes below its negated hours.
    Parts are processed in key order and the last one absorbs the rounding
    remainder, so the result sums exactly to the (clamped) total.

    Args:
        parts: (key, hours) pairs; hours must be positive
        total: Signed delta to spread

    Returns:
        Mapping of key to its share of the delta
    """
    if not parts:
        return {}

    ordered = sorted(parts, key=lambda p: str(p[0]))
    worked = sum((hours for _, hours in ordered), ZERO)
    if worked <= 0:
        raise ValueError("distribute_adjustment needs positive worked hours")

    effective = clamp_delta(worked, total)
    shares: list[Decimal] = []
    allocated = ZERO
    for _, hours in ordered[:-1]:
        share = (effective * hours / worked).quantize(HOURS_PRECISION, rounding=ROUND_HALF_UP)
        shares.append(share)
        allocated += share
    shares.append(effective - allocated)

    # Rounding can push the remainder holder below its floor; carry the
    # excess back towards the front.
    for i in range(len(shares) - 1, 0, -1):
        floor = -ordered[i][1]
        if shares[i] < floor:
            shares[i - 1] += shares[i] - floor
            shares[i] = floor

    return {key: share for (key, _), share in zip(ordered, shares)}


def split_timesheet_delta(
    project_worked: dict[K, Decimal], timesheet_delta: Decimal
) -> dict[K, Decimal]:
    """Share of a timesheet-scope delta per project, by worked hours.

    Projects without worked hours receive nothing.
    """
    weighted = [(key, hours) for key, hours in project_worked.items() if hours > 0]
    shares = distribute_adjustment(weighted, timesheet_delta) if weighted else {}
    return {key: shares.get(key, ZERO) for key in project_worked}


def project_billable(
    project_id: K,
    project_worked: dict[K, Decimal],
    project_deltas: dict[K, Decimal],
    timesheet_delta: Decimal,
) -> BillableHours:
    """Billable hours of one project inside a timesheet.

    Project delta plus the project's proportional share of the timesheet
    delta, applied to the project's worked hours.
    """
    worked = project_worked.get(project_id, ZERO)
    share = split_timesheet_delta(project_worked, timesheet_delta).get(project_id, ZERO)
    return billable_view(worked, project_deltas.get(project_id, ZERO) + share)


def timesheet_billable(
    total_worked: Decimal, deltas: Iterable[Decimal]
) -> BillableHours:
    """Billable hours of a whole timesheet: every delta summed."""
    return billable_view(total_worked, sum(deltas, ZERO))
