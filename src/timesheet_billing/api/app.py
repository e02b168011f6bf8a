"""FastAPI application factory."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from timesheet_billing import __version__
from timesheet_billing.api.routes import (
    approvals_router,
    billing_router,
    health_router,
    timesheets_router,
)
from timesheet_billing.database import init_db
from timesheet_billing.errors import (
    AuthorizationError,
    InvalidStateError,
    NoRateFoundError,
    NotFoundError,
    PreconditionError,
    TimesheetBillingError,
    ValidationError,
)
from timesheet_billing.models import Base
from timesheet_billing.services.audit import AuditTrail
from timesheet_billing.services.rate_service import RateService

logger = logging.getLogger(__name__)

ERROR_STATUS = {
    ValidationError: status.HTTP_400_BAD_REQUEST,
    AuthorizationError: status.HTTP_403_FORBIDDEN,
    NotFoundError: status.HTTP_404_NOT_FOUND,
    InvalidStateError: status.HTTP_409_CONFLICT,
    PreconditionError: status.HTTP_409_CONFLICT,
    NoRateFoundError: status.HTTP_422_UNPROCESSABLE_ENTITY,
}


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler."""
    # Startup
    engine, session_factory = init_db()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    async with session_factory() as session:
        await RateService(session, app.state.audit).ensure_global_default()
        await session.commit()
    yield
    # Shutdown
    await engine.dispose()


def create_app(audit: AuditTrail | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Timesheet Billing API",
        description="Timesheet approval lifecycle and billing computation",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.audit = audit or AuditTrail()

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Exception handlers
    @app.exception_handler(TimesheetBillingError)
    async def domain_exception_handler(
        request: Request, exc: TimesheetBillingError
    ) -> JSONResponse:
        """Map domain errors to HTTP status codes."""
        code = next(
            (
                status_code
                for error_type, status_code in ERROR_STATUS.items()
                if isinstance(exc, error_type)
            ),
            status.HTTP_400_BAD_REQUEST,
        )
        content = {"detail": exc.message, "code": exc.code}
        if exc.details:
            content["context"] = {k: str(v) for k, v in exc.details.items()}
        if isinstance(exc, ValidationError) and len(exc.errors) > 1:
            content.setdefault("context", {})["errors"] = exc.errors
        return JSONResponse(status_code=code, content=content)

    @app.exception_handler(Exception)
    async def general_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        """Handle unexpected exceptions."""
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "detail": "An unexpected error occurred",
                "code": "INTERNAL_ERROR",
            },
        )

    # Include routers
    app.include_router(health_router)
    app.include_router(timesheets_router, prefix="/api/v1")
    app.include_router(approvals_router, prefix="/api/v1")
    app.include_router(billing_router, prefix="/api/v1")

    return app


# Default app instance for uvicorn
app = create_app()
