"""API routes."""

from timesheet_billing.api.routes.approvals import router as approvals_router
from timesheet_billing.api.routes.billing import router as billing_router
from timesheet_billing.api.routes.health import router as health_router
from timesheet_billing.api.routes.timesheets import router as timesheets_router

__all__ = ["approvals_router", "billing_router", "health_router", "timesheets_router"]
