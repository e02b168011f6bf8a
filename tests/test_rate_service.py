"""Tests for billing rate management."""

from dataclasses import replace
from datetime import date
from decimal import Decimal

import pytest

from timesheet_billing.errors import AuthorizationError, PreconditionError, ValidationError
from timesheet_billing.services.rate_service import RateInput, RateService


@pytest.fixture
def rates(session, audit, settings) -> RateService:
    return RateService(session, audit, settings)


class TestRateInput:
    def test_valid_role_rate(self):
        data = RateInput(
            entity_type="role", role="lead", hourly_rate=Decimal("120"),
            effective_from=date(2024, 1, 1),
        )
        assert data.validate() == []

    def test_collects_every_problem(self):
        data = RateInput(
            entity_type="role",
            hourly_rate=Decimal("0"),
            effective_from=date(2024, 3, 1),
            effective_until=date(2024, 2, 1),
            weekend_multiplier=Decimal("0.5"),
        )
        assert data.validate() == [
            "role rates need a role",
            "hourly_rate must be positive",
            "weekend_multiplier must be at least 1",
            "effective_until must not precede effective_from",
        ]

    def test_unknown_scope(self):
        data = RateInput(entity_type="team", hourly_rate=Decimal("1"), effective_from=date(2024, 1, 1))
        assert data.validate() == ["unknown rate scope 'team'"]


class TestRateService:
    """Test rule creation and retirement."""

    @pytest.mark.asyncio
    async def test_create_rate(self, rates, org, audit_sink):
        rate = await rates.create_rate(
            org.management.user_id,
            RateInput(
                entity_type="user",
                entity_id=org.alice.user_id,
                hourly_rate=Decimal("140.00"),
                effective_from=date(2024, 1, 1),
            ),
        )

        assert rate.entity_type == "user"
        assert rate.created_by_id == org.management.user_id
        assert [r.rate_id for r in await rates.list_rates("user")] == [rate.rate_id]
        assert "rate_created" in audit_sink.actions()

    @pytest.mark.asyncio
    async def test_manager_cannot_manage_rates(self, rates, org):
        with pytest.raises(AuthorizationError):
            await rates.create_rate(
                org.manager.user_id,
                RateInput(entity_type="global", hourly_rate=Decimal("90"), effective_from=date(2024, 1, 1)),
            )

    @pytest.mark.asyncio
    async def test_invalid_rate(self, rates, org):
        with pytest.raises(ValidationError) as exc_info:
            await rates.create_rate(
                org.admin.user_id,
                RateInput(entity_type="client", hourly_rate=Decimal("90"), effective_from=date(2024, 1, 1)),
            )
        assert exc_info.value.errors == ["client rates need an entity_id"]

    @pytest.mark.asyncio
    async def test_delete_rate(self, rates, org):
        rate = await rates.create_rate(
            org.management.user_id,
            RateInput(
                entity_type="project",
                entity_id=org.apollo.project_id,
                hourly_rate=Decimal("150"),
                effective_from=date(2024, 1, 1),
            ),
        )
        deleted = await rates.delete_rate(org.management.user_id, rate.rate_id)

        assert deleted.is_active is False
        assert deleted.deleted_at is not None
        assert await rates.list_rates("project") == []

    @pytest.mark.asyncio
    async def test_last_global_rate_protected(self, rates, org):
        with pytest.raises(PreconditionError):
            await rates.delete_rate(org.management.user_id, org.global_rate.rate_id)

    @pytest.mark.asyncio
    async def test_replaced_global_rate_can_go(self, rates, org):
        await rates.create_rate(
            org.management.user_id,
            RateInput(entity_type="global", hourly_rate=Decimal("110"), effective_from=date(1999, 1, 1)),
        )
        retired = await rates.delete_rate(org.management.user_id, org.global_rate.rate_id)
        assert retired.deleted_at is not None

    @pytest.mark.asyncio
    async def test_later_global_rate_does_not_cover_history(self, rates, org):
        """A global rule from mid-2024 leaves earlier weeks without a rate."""
        await rates.create_rate(
            org.management.user_id,
            RateInput(entity_type="global", hourly_rate=Decimal("120"), effective_from=date(2024, 6, 1)),
        )

        with pytest.raises(PreconditionError) as exc_info:
            await rates.delete_rate(org.management.user_id, org.global_rate.rate_id)

        assert exc_info.value.details["uncovered_from"] == "2000-01-01"
        assert org.global_rate.deleted_at is None

    @pytest.mark.asyncio
    async def test_global_rates_chained_by_dates(self, rates, org):
        first = await rates.create_rate(
            org.management.user_id,
            RateInput(
                entity_type="global",
                hourly_rate=Decimal("90"),
                effective_from=date(1999, 1, 1),
                effective_until=date(2023, 12, 31),
            ),
        )
        await rates.create_rate(
            org.management.user_id,
            RateInput(entity_type="global", hourly_rate=Decimal("120"), effective_from=date(2024, 1, 1)),
        )

        await rates.delete_rate(org.management.user_id, org.global_rate.rate_id)
        with pytest.raises(PreconditionError):
            await rates.delete_rate(org.management.user_id, first.rate_id)

    @pytest.mark.asyncio
    async def test_ensure_global_default(self, session, audit, settings):
        rates = RateService(session, audit, replace(settings, default_hourly_rate=Decimal("75.00")))

        seeded = await rates.ensure_global_default()
        assert seeded.hourly_rate == Decimal("75.00")
        assert seeded.effective_from == date(2000, 1, 1)

        assert await rates.ensure_global_default() is None

    @pytest.mark.asyncio
    async def test_ensure_global_default_fills_gap(self, rates):
        await rates.create_rate(
            None,
            RateInput(
                entity_type="global",
                hourly_rate=Decimal("90"),
                effective_from=date(2000, 1, 1),
                effective_until=date(2023, 12, 31),
            ),
        )

        seeded = await rates.ensure_global_default()

        assert seeded.effective_from == date(2024, 1, 1)
        assert seeded.effective_until is None
        assert await rates.ensure_global_default() is None
