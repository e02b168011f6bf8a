"""Billing rate rule management."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from timesheet_billing.calculators.rate_resolver import coverage_gap
from timesheet_billing.calculators.types import RateScope
from timesheet_billing.config import Settings, get_settings
from timesheet_billing.errors import NotFoundError, PreconditionError, ValidationError
from timesheet_billing.models import BillingRate, utcnow
from timesheet_billing.services.audit import AuditTrail
from timesheet_billing.services.directory import DirectoryService
from timesheet_billing.services.permissions import Action, authorize

logger = logging.getLogger(__name__)

_ENTITY_SCOPES = {RateScope.USER, RateScope.PROJECT, RateScope.CLIENT}

# Earliest date global rules must cover; the seeded default starts here
COVERAGE_START = date(2000, 1, 1)


@dataclass
class RateInput:
    """Fields of a new billing rate rule."""

    entity_type: str
    hourly_rate: Decimal
    effective_from: date
    entity_id: UUID | None = None
    role: str | None = None
    effective_until: date | None = None
    overtime_multiplier: Decimal = Decimal("1.5")
    holiday_multiplier: Decimal = Decimal("2.0")
    weekend_multiplier: Decimal = Decimal("1.5")
    minimum_increment_minutes: int = 15

    def validate(self) -> list[str]:
        errors = []
        try:
            scope = RateScope(self.entity_type)
        except ValueError:
            return [f"unknown rate scope '{self.entity_type}'"]
        if scope in _ENTITY_SCOPES and self.entity_id is None:
            errors.append(f"{scope.value} rates need an entity_id")
        if scope == RateScope.ROLE and not self.role:
            errors.append("role rates need a role")
        if scope == RateScope.GLOBAL and (self.entity_id is not None or self.role):
            errors.append("global rates take no entity_id or role")
        if self.hourly_rate <= 0:
            errors.append("hourly_rate must be positive")
        for name in ("overtime_multiplier", "holiday_multiplier", "weekend_multiplier"):
            if getattr(self, name) < 1:
                errors.append(f"{name} must be at least 1")
        if self.minimum_increment_minutes <= 0:
            errors.append("minimum_increment_minutes must be positive")
        if self.effective_until is not None and self.effective_until < self.effective_from:
            errors.append("effective_until must not precede effective_from")
        return errors


class RateService:
    """Create, list and retire billing rate rules.

    Live global rules always cover every date from COVERAGE_START onward,
    so rate resolution never falls through for lack of a default.
    """

    def __init__(
        self,
        session: AsyncSession,
        audit: AuditTrail | None = None,
        settings: Settings | None = None,
    ):
        self.session = session
        self.audit = audit or AuditTrail()
        self.settings = settings or get_settings()
        self.directory = DirectoryService(session)

    async def _authorize(self, actor_id: UUID) -> None:
        actor = await self.directory.get_user(actor_id)
        authorize(actor.role, Action.MANAGE_RATES)

    async def list_rates(self, entity_type: str | None = None) -> list[BillingRate]:
        query = select(BillingRate).where(BillingRate.deleted_at.is_(None))
        if entity_type is not None:
            query = query.where(BillingRate.entity_type == entity_type)
        result = await self.session.execute(
            query.order_by(BillingRate.entity_type, BillingRate.effective_from)
        )
        return list(result.scalars().all())

    async def get_rate(self, rate_id: UUID) -> BillingRate:
        rate = await self.session.get(BillingRate, rate_id)
        if rate is None or rate.deleted_at is not None:
            raise NotFoundError("BillingRate", rate_id)
        return rate

    async def create_rate(self, actor_id: UUID | None, data: RateInput) -> BillingRate:
        """Add a rate rule. actor_id None is reserved for system seeding."""
        if actor_id is not None:
            await self._authorize(actor_id)
        errors = data.validate()
        if errors:
            raise ValidationError(errors[0], errors)

        rate = BillingRate(
            entity_type=RateScope(data.entity_type).value,
            entity_id=data.entity_id,
            role=data.role,
            hourly_rate=data.hourly_rate,
            overtime_multiplier=data.overtime_multiplier,
            holiday_multiplier=data.holiday_multiplier,
            weekend_multiplier=data.weekend_multiplier,
            minimum_increment_minutes=data.minimum_increment_minutes,
            effective_from=data.effective_from,
            effective_until=data.effective_until,
            is_active=True,
            created_by_id=actor_id,
        )
        self.session.add(rate)
        await self.session.flush()
        self.audit.emit(
            actor_id,
            "rate_created",
            "billing_rate",
            rate.rate_id,
            after={
                "entity_type": rate.entity_type,
                "entity_id": str(rate.entity_id) if rate.entity_id else None,
                "role": rate.role,
                "hourly_rate": str(rate.hourly_rate),
                "effective_from": rate.effective_from.isoformat(),
            },
        )
        return rate

    async def _global_gap(self, excluding: UUID | None = None) -> date | None:
        """First date the live global rules leave uncovered, if any."""
        query = select(BillingRate.effective_from, BillingRate.effective_until).where(
            BillingRate.entity_type == RateScope.GLOBAL.value,
            BillingRate.deleted_at.is_(None),
            BillingRate.is_active.is_(True),
        )
        if excluding is not None:
            query = query.where(BillingRate.rate_id != excluding)
        result = await self.session.execute(query)
        return coverage_gap([(row[0], row[1]) for row in result], COVERAGE_START)

    async def delete_rate(self, actor_id: UUID, rate_id: UUID) -> BillingRate:
        """Soft-delete a rule.

        A global rule can only go if the remaining global rules still cover
        every date.
        """
        await self._authorize(actor_id)
        rate = await self.get_rate(rate_id)
        if rate.entity_type == RateScope.GLOBAL:
            gap = await self._global_gap(excluding=rate.rate_id)
            if gap is not None:
                raise PreconditionError(
                    f"Deleting this global billing rate leaves {gap.isoformat()} without a rate",
                    {"rate_id": str(rate_id), "uncovered_from": gap.isoformat()},
                )
        rate.deleted_at = utcnow()
        rate.is_active = False
        await self.session.flush()
        self.audit.emit(actor_id, "rate_deleted", "billing_rate", rate_id)
        return rate

    async def ensure_global_default(self) -> BillingRate | None:
        """Seed an open-ended global rule from settings where coverage is missing.

        The seed starts at the first uncovered date, so later rules keep
        winning on their own dates. Returns the created rule, or None when
        every date was already covered.
        """
        gap = await self._global_gap()
        if gap is None:
            return None
        rate = await self.create_rate(
            None,
            RateInput(
                entity_type=RateScope.GLOBAL.value,
                hourly_rate=self.settings.default_hourly_rate,
                effective_from=gap,
            ),
        )
        logger.info("Seeded global default billing rate %s", rate.hourly_rate)
        return rate
