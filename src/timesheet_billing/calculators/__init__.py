"""Billing computation: adjustments, rate resolution and aggregation."""

from timesheet_billing.calculators.aggregation import BillingAggregator
from timesheet_billing.calculators.rate_resolver import (
    DatabaseHolidayCalendar,
    HolidayCalendar,
    RateContext,
    RateResolver,
    RateTable,
    StaticHolidayCalendar,
)

__all__ = [
    "BillingAggregator",
    "DatabaseHolidayCalendar",
    "HolidayCalendar",
    "RateContext",
    "RateResolver",
    "RateTable",
    "StaticHolidayCalendar",
]
