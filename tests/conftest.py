"""Pytest fixtures for timesheet billing tests."""

from __future__ import annotations

from decimal import Decimal
from typing import AsyncGenerator

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from timesheet_billing.api.app import create_app
from timesheet_billing.api.dependencies import get_db_session
from timesheet_billing.config import Settings
from timesheet_billing.models import Base
from timesheet_billing.services.adjustment_service import AdjustmentService
from timesheet_billing.services.approval_service import ApprovalService
from timesheet_billing.services.audit import AuditTrail, MemoryAuditSink
from timesheet_billing.services.billing_service import BillingService
from timesheet_billing.services.coordinator import ProjectWeekCoordinator
from timesheet_billing.services.timesheet_service import TimesheetService

from builders import Org, build_org

# Use in-memory SQLite for tests (with async support)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest.fixture
async def engine():
    """Create a fresh test database per test."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest.fixture
async def session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a database session for each test."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def settings() -> Settings:
    """Business rules used across tests (weekly cap raised for adjustment scenarios)."""
    return Settings(
        database_url=TEST_DATABASE_URL,
        log_level="DEBUG",
        max_weekly_hours=Decimal("80"),
        default_hourly_rate=Decimal("100.00"),
    )


@pytest.fixture
def audit_sink() -> MemoryAuditSink:
    return MemoryAuditSink()


@pytest.fixture
def audit(audit_sink: MemoryAuditSink) -> AuditTrail:
    return AuditTrail([audit_sink])


@pytest.fixture
async def org(session: AsyncSession) -> Org:
    return await build_org(session)


@pytest.fixture
def timesheets(session: AsyncSession, audit: AuditTrail, settings: Settings) -> TimesheetService:
    return TimesheetService(session, audit, settings)


@pytest.fixture
def approvals(session: AsyncSession, audit: AuditTrail) -> ApprovalService:
    return ApprovalService(session, audit)


@pytest.fixture
def coordinator(session: AsyncSession, audit: AuditTrail) -> ProjectWeekCoordinator:
    return ProjectWeekCoordinator(session, audit)


@pytest.fixture
def adjustments(session: AsyncSession, audit: AuditTrail) -> AdjustmentService:
    return AdjustmentService(session, audit)


@pytest.fixture
def billing(session: AsyncSession, audit: AuditTrail) -> BillingService:
    return BillingService(session, audit)


@pytest.fixture
async def client(session: AsyncSession, audit: AuditTrail) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client bound to the test session; lifespan is not run."""
    app = create_app(audit)

    async def override_session() -> AsyncGenerator[AsyncSession, None]:
        yield session

    app.dependency_overrides[get_db_session] = override_session
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
