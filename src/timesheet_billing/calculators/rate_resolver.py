"""Billing rate resolution with layered scope matching."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import ROUND_CEILING, Decimal
from typing import Iterable, Protocol, runtime_checkable
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from timesheet_billing.calculators.types import (
    SCOPE_PRECEDENCE,
    MultiplierKind,
    RateScope,
    ResolvedRate,
)
from timesheet_billing.errors import NoRateFoundError
from timesheet_billing.models import BillingRate, Holiday

logger = logging.getLogger(__name__)


# ===== Holiday calendars =====


@runtime_checkable
class HolidayCalendar(Protocol):
    """Answers whether a date is a company holiday."""

    def is_holiday(self, day: date) -> bool:
        ...


class StaticHolidayCalendar:
    """Holiday calendar over a fixed set of dates."""

    def __init__(self, holidays: Iterable[date] = ()):
        self._holidays = frozenset(holidays)

    def is_holiday(self, day: date) -> bool:
        return day in self._holidays

    def __len__(self) -> int:
        return len(self._holidays)


class DatabaseHolidayCalendar:
    """Holiday calendar backed by the holiday table.

    Rows are preloaded for a date range; lookups outside a loaded range
    report no holiday.
    """

    def __init__(self, session: AsyncSession):
        self.session = session
        self._calendar = StaticHolidayCalendar()

    async def load(self, start: date, end: date) -> StaticHolidayCalendar:
        result = await self.session.execute(
            select(Holiday.holiday_date).where(
                Holiday.is_active.is_(True),
                Holiday.holiday_date >= start,
                Holiday.holiday_date <= end,
            )
        )
        self._calendar = StaticHolidayCalendar(result.scalars().all())
        return self._calendar

    def is_holiday(self, day: date) -> bool:
        return self._calendar.is_holiday(day)


# ===== Rule selection =====


@dataclass(frozen=True)
class RateContext:
    """Who worked where, used to match rate rules."""

    user_id: UUID
    project_id: UUID
    client_id: UUID | None = None
    role: str | None = None


def rule_matches(rule: BillingRate, context: RateContext) -> bool:
    """Check whether a rule's scope covers the context."""
    if rule.entity_type == RateScope.GLOBAL:
        return True
    if rule.entity_type == RateScope.USER:
        return rule.entity_id == context.user_id
    if rule.entity_type == RateScope.PROJECT:
        return rule.entity_id == context.project_id
    if rule.entity_type == RateScope.CLIENT:
        return context.client_id is not None and rule.entity_id == context.client_id
    if rule.entity_type == RateScope.ROLE:
        return context.role is not None and rule.role == context.role
    return False


def _rank(rule: BillingRate) -> tuple:
    # Most specific scope, then latest effective_from, then latest
    # created_at, then highest id.
    return (
        -SCOPE_PRECEDENCE[rule.entity_type],
        rule.effective_from,
        rule.created_at.replace(tzinfo=None) if rule.created_at else datetime.min,
        str(rule.rate_id),
    )


def select_rule(
    rules: Iterable[BillingRate], context: RateContext, on_date: date
) -> BillingRate:
    """Pick the winning rule for a context on a date.

    Raises:
        NoRateFoundError: If no active rule (not even global) matches
    """
    candidates = [
        r for r in rules if r.is_active_on(on_date) and rule_matches(r, context)
    ]
    if not candidates:
        raise NoRateFoundError(
            f"No billing rate for user {context.user_id} on project "
            f"{context.project_id} at {on_date.isoformat()}",
            {
                "user_id": str(context.user_id),
                "project_id": str(context.project_id),
                "date": on_date.isoformat(),
            },
        )
    return max(candidates, key=_rank)


def apply_multiplier(
    rule: BillingRate,
    on_date: date,
    calendar: HolidayCalendar,
    overtime: bool = False,
) -> tuple[Decimal, MultiplierKind]:
    """Select the single multiplier for a date.

    Holiday beats weekend beats overtime; multipliers never stack.
    """
    if calendar.is_holiday(on_date):
        return Decimal(rule.holiday_multiplier), MultiplierKind.HOLIDAY
    if on_date.weekday() >= 5:
        return Decimal(rule.weekend_multiplier), MultiplierKind.WEEKEND
    if overtime:
        return Decimal(rule.overtime_multiplier), MultiplierKind.OVERTIME
    return Decimal("1"), MultiplierKind.BASE


def coverage_gap(
    windows: Iterable[tuple[date, date | None]], start: date
) -> date | None:
    """First date on or after start that no window covers, or None.

    Windows are inclusive (effective_from, effective_until) pairs; an
    until of None is open-ended.
    """
    cursor = start
    for effective_from, effective_until in sorted(windows, key=lambda w: w[0]):
        if effective_from > cursor:
            return cursor
        if effective_until is None:
            return None
        if effective_until >= cursor:
            cursor = effective_until + timedelta(days=1)
    return cursor


def round_up_to_increment(hours: Decimal, increment_minutes: int) -> Decimal:
    """Round worked hours up to the rule's minimum billing increment."""
    if increment_minutes <= 0 or hours <= 0:
        return hours
    minutes = hours * 60
    units = (minutes / increment_minutes).to_integral_value(rounding=ROUND_CEILING)
    return units * increment_minutes / Decimal(60)


class RateTable:
    """Preloaded rules plus a holiday calendar; resolves without I/O."""

    def __init__(
        self,
        rules: Iterable[BillingRate],
        calendar: HolidayCalendar | None = None,
    ):
        self.rules = list(rules)
        self.calendar = calendar if calendar is not None else StaticHolidayCalendar()

    def resolve(
        self, context: RateContext, on_date: date, overtime: bool = False
    ) -> ResolvedRate:
        """Resolve the effective rate for a context on a date."""
        rule = select_rule(self.rules, context, on_date)
        multiplier, kind = apply_multiplier(rule, on_date, self.calendar, overtime)
        base = Decimal(rule.hourly_rate)
        return ResolvedRate(
            rate_id=rule.rate_id,
            scope=rule.entity_type,
            base_rate=base,
            multiplier=multiplier,
            multiplier_kind=kind,
            effective_rate=base * multiplier,
            minimum_increment_minutes=rule.minimum_increment_minutes,
        )


class RateResolver:
    """Resolves billing rates from the billing_rate table.

    Rule selection:
    1. Only active, live rules whose effective window contains the date
    2. Most specific scope wins: user > project > client > role > global
    3. Ties: latest effective_from, then latest created_at, then rate id
    4. One multiplier applies: holiday > weekend > overtime (when flagged)
    """

    def __init__(self, session: AsyncSession, calendar: HolidayCalendar | None = None):
        self.session = session
        self.calendar = calendar

    async def candidate_rules(self, start: date, end: date | None = None) -> list[BillingRate]:
        """Live active rules whose window overlaps [start, end]."""
        end = end or start
        result = await self.session.execute(
            select(BillingRate).where(
                BillingRate.deleted_at.is_(None),
                BillingRate.is_active.is_(True),
                BillingRate.effective_from <= end,
                (BillingRate.effective_until.is_(None) | (BillingRate.effective_until >= start)),
            )
        )
        return list(result.scalars().all())

    async def load_table(self, start: date, end: date) -> RateTable:
        """Preload every rule and holiday needed for a date range."""
        rules = await self.candidate_rules(start, end)
        calendar = self.calendar
        if calendar is None:
            calendar = await DatabaseHolidayCalendar(self.session).load(start, end)
        logger.debug("Loaded %d rate rules for %s..%s", len(rules), start, end)
        return RateTable(rules, calendar)

    async def resolve(
        self,
        user_id: UUID,
        project_id: UUID,
        on_date: date,
        client_id: UUID | None = None,
        role: str | None = None,
        overtime: bool = False,
    ) -> ResolvedRate:
        """Resolve the effective rate for one (user, project, date)."""
        table = await self.load_table(on_date, on_date)
        context = RateContext(
            user_id=user_id, project_id=project_id, client_id=client_id, role=role
        )
        return table.resolve(context, on_date, overtime)
