"""Health and readiness endpoints."""

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from timesheet_billing import __version__
from timesheet_billing.api.dependencies import DbSession
from timesheet_billing.models import BillingRate

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    timestamp: datetime
    database: str
    global_rates: int | None = None


async def _global_rate_count(db: DbSession) -> int:
    result = await db.execute(
        select(func.count())
        .select_from(BillingRate)
        .where(
            BillingRate.entity_type == "global",
            BillingRate.is_active.is_(True),
            BillingRate.deleted_at.is_(None),
        )
    )
    return result.scalar_one()


@router.get("/health", response_model=HealthResponse)
async def health_check(db: DbSession) -> HealthResponse:
    """Database reachability plus the live global billing rate count.

    Without a global rate, billing views fail with NO_RATE_FOUND, so the
    service reports itself degraded.
    """
    database = "healthy"
    global_rates = None
    try:
        global_rates = await _global_rate_count(db)
    except SQLAlchemyError:
        logger.warning("Database health check failed", exc_info=True)
        database = "unhealthy"

    healthy = database == "healthy" and bool(global_rates)
    return HealthResponse(
        status="healthy" if healthy else "degraded",
        version=__version__,
        timestamp=datetime.now(timezone.utc),
        database=database,
        global_rates=global_rates,
    )


@router.get("/ready")
async def readiness_check(db: DbSession) -> JSONResponse:
    """Ready once a global billing rate exists."""
    try:
        ready = await _global_rate_count(db) > 0
    except SQLAlchemyError:
        logger.warning("Readiness check could not reach the database", exc_info=True)
        ready = False
    return JSONResponse(
        status_code=status.HTTP_200_OK if ready else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"status": "ready" if ready else "not_ready"},
    )


@router.get("/live", status_code=status.HTTP_200_OK)
async def liveness_check() -> dict[str, str]:
    """Liveness check for container orchestration."""
    return {"status": "alive"}
