"""Billing API endpoints: adjustments, rates, views, snapshots and billing."""

from datetime import date
from typing import Annotated, Any
from uuid import UUID

from fastapi import APIRouter, Path, Query, status

from timesheet_billing.api.dependencies import ActorId, Audit, DbSession
from timesheet_billing.api.schemas import (
    AdjustmentRequest,
    AdjustmentResponse,
    BillableHoursResponse,
    BillableTargetRequest,
    BillMonthRequest,
    BillRequest,
    BillResponse,
    BulkItemResponse,
    ErrorResponse,
    RateCreate,
    RateResponse,
    SnapshotResponse,
)
from timesheet_billing.calculators.types import jsonable
from timesheet_billing.services.adjustment_service import AdjustmentService
from timesheet_billing.services.approval_service import BulkItemResult
from timesheet_billing.services.billing_service import BillingFilter, BillingService
from timesheet_billing.services.rate_service import RateInput, RateService

router = APIRouter(prefix="/billing", tags=["billing"])

_ERRORS = {
    400: {"model": ErrorResponse},
    403: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
}


def _bill_response(items: list[BulkItemResult]) -> BillResponse:
    return BillResponse(
        succeeded=sum(1 for i in items if i.success),
        failed=sum(1 for i in items if not i.success),
        items=[BulkItemResponse.model_validate(i) for i in items],
    )


# ============================================================================
# Adjustments
# ============================================================================


@router.get(
    "/timesheets/{timesheet_id}/billable-hours",
    response_model=BillableHoursResponse,
    responses={403: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def get_billable_hours(
    db: DbSession,
    actor_id: ActorId,
    timesheet_id: Annotated[UUID, Path()],
    project_id: UUID | None = None,
) -> BillableHoursResponse:
    """Worked, adjustment and billable hours of a timesheet or one project."""
    hours = await AdjustmentService(db).get_billable_hours(
        timesheet_id, project_id, actor_id
    )
    return BillableHoursResponse(
        worked_hours=hours.worked_hours,
        adjustment_hours=hours.adjustment_hours,
        billable_hours=hours.billable_hours,
    )


@router.get(
    "/timesheets/{timesheet_id}/adjustments",
    response_model=list[AdjustmentResponse],
    responses={403: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def list_adjustments(
    db: DbSession,
    actor_id: ActorId,
    timesheet_id: Annotated[UUID, Path()],
) -> list[AdjustmentResponse]:
    """Live adjustments of a timesheet."""
    adjustments = await AdjustmentService(db).list_adjustments(timesheet_id, actor_id)
    return [AdjustmentResponse.model_validate(a) for a in adjustments]


@router.put(
    "/timesheets/{timesheet_id}/adjustments",
    response_model=AdjustmentResponse,
    responses=_ERRORS,
)
async def upsert_adjustment(
    db: DbSession,
    actor_id: ActorId,
    audit: Audit,
    timesheet_id: Annotated[UUID, Path()],
    payload: AdjustmentRequest,
) -> AdjustmentResponse:
    """Create or replace the adjustment for a timesheet or project scope."""
    adjustment = await AdjustmentService(db, audit).upsert_adjustment(
        actor_id,
        timesheet_id,
        payload.adjustment_hours,
        project_id=payload.project_id,
        reason=payload.reason,
        task_id=payload.task_id,
    )
    await db.commit()
    return AdjustmentResponse.model_validate(adjustment)


@router.put(
    "/timesheets/{timesheet_id}/billable-target",
    response_model=AdjustmentResponse,
    responses=_ERRORS,
)
async def set_billable_target(
    db: DbSession,
    actor_id: ActorId,
    audit: Audit,
    timesheet_id: Annotated[UUID, Path()],
    payload: BillableTargetRequest,
) -> AdjustmentResponse:
    """Store the adjustment that makes a scope bill exactly the target hours."""
    adjustment = await AdjustmentService(db, audit).set_billable_target(
        actor_id,
        timesheet_id,
        payload.target_hours,
        project_id=payload.project_id,
        reason=payload.reason,
    )
    await db.commit()
    return AdjustmentResponse.model_validate(adjustment)


@router.delete(
    "/adjustments/{adjustment_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses=_ERRORS,
)
async def delete_adjustment(
    db: DbSession,
    actor_id: ActorId,
    audit: Audit,
    adjustment_id: Annotated[UUID, Path()],
) -> None:
    """Soft-delete an adjustment."""
    await AdjustmentService(db, audit).delete_adjustment(actor_id, adjustment_id)
    await db.commit()


# ============================================================================
# Rates
# ============================================================================


@router.get("/rates", response_model=list[RateResponse])
async def list_rates(
    db: DbSession,
    actor_id: ActorId,
    entity_type: str | None = None,
) -> list[RateResponse]:
    """Live billing rate rules."""
    rates = await RateService(db).list_rates(entity_type)
    return [RateResponse.model_validate(r) for r in rates]


@router.post(
    "/rates",
    response_model=RateResponse,
    status_code=status.HTTP_201_CREATED,
    responses=_ERRORS,
)
async def create_rate(
    db: DbSession,
    actor_id: ActorId,
    audit: Audit,
    payload: RateCreate,
) -> RateResponse:
    """Add a billing rate rule."""
    rate = await RateService(db, audit).create_rate(
        actor_id, RateInput(**payload.model_dump())
    )
    await db.commit()
    return RateResponse.model_validate(rate)


@router.delete(
    "/rates/{rate_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses=_ERRORS,
)
async def delete_rate(
    db: DbSession,
    actor_id: ActorId,
    audit: Audit,
    rate_id: Annotated[UUID, Path()],
) -> None:
    """Retire a billing rate rule."""
    await RateService(db, audit).delete_rate(actor_id, rate_id)
    await db.commit()


# ============================================================================
# Views and dashboard
# ============================================================================


@router.get("/views", responses=_ERRORS)
async def billing_views(
    db: DbSession,
    actor_id: ActorId,
    start: date,
    end: date,
    project_id: Annotated[list[UUID] | None, Query()] = None,
    client_id: Annotated[list[UUID] | None, Query()] = None,
    user_id: Annotated[list[UUID] | None, Query()] = None,
) -> dict[str, Any]:
    """Project, task and user billing views for frozen and billed weeks."""
    views = await BillingService(db).build_views(
        actor_id,
        start,
        end,
        BillingFilter(project_ids=project_id, client_ids=client_id, user_ids=user_id),
    )
    return jsonable({"start": start, "end": end, **views.to_dict()})


@router.get("/summary", responses=_ERRORS)
async def billing_summary(
    db: DbSession,
    actor_id: ActorId,
    start: date,
    end: date,
) -> dict[str, Any]:
    """Dashboard totals for a period."""
    return jsonable(await BillingService(db).summary(actor_id, start, end))


# ============================================================================
# Snapshots and billing
# ============================================================================


@router.post(
    "/timesheets/{timesheet_id}/snapshots",
    response_model=SnapshotResponse,
    status_code=status.HTTP_201_CREATED,
    responses=_ERRORS,
)
async def create_snapshot(
    db: DbSession,
    actor_id: ActorId,
    audit: Audit,
    timesheet_id: Annotated[UUID, Path()],
) -> SnapshotResponse:
    """Snapshot a frozen timesheet; replaces the current snapshot if any."""
    snapshot = await BillingService(db, audit).create_snapshot(actor_id, timesheet_id)
    await db.commit()
    return SnapshotResponse.model_validate(snapshot)


@router.get(
    "/timesheets/{timesheet_id}/snapshots",
    response_model=list[SnapshotResponse],
    responses={403: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def list_snapshots(
    db: DbSession,
    actor_id: ActorId,
    timesheet_id: Annotated[UUID, Path()],
) -> list[SnapshotResponse]:
    """Every snapshot of a timesheet, oldest first."""
    snapshots = await BillingService(db).list_snapshots(timesheet_id, actor_id)
    return [SnapshotResponse.model_validate(s) for s in snapshots]


@router.post("/weeks/{week_start}/snapshots", response_model=list[SnapshotResponse])
async def generate_weekly_snapshots(
    db: DbSession,
    actor_id: ActorId,
    audit: Audit,
    week_start: Annotated[date, Path()],
) -> list[SnapshotResponse]:
    """Snapshot every frozen timesheet of a week that has none yet."""
    snapshots = await BillingService(db, audit).generate_weekly_snapshots(actor_id, week_start)
    await db.commit()
    return [SnapshotResponse.model_validate(s) for s in snapshots]


@router.post("/bill", response_model=BillResponse, responses=_ERRORS)
async def mark_billed(
    db: DbSession,
    actor_id: ActorId,
    audit: Audit,
    payload: BillRequest,
) -> BillResponse:
    """Mark frozen timesheets as billed."""
    items = await BillingService(db, audit).mark_billed(actor_id, payload.timesheet_ids)
    await db.commit()
    return _bill_response(items)


@router.post("/bill-month", response_model=BillResponse, responses=_ERRORS)
async def bill_month(
    db: DbSession,
    actor_id: ActorId,
    audit: Audit,
    payload: BillMonthRequest,
) -> BillResponse:
    """Bill every frozen timesheet whose week starts in the month."""
    items = await BillingService(db, audit).bill_month(actor_id, payload.year, payload.month)
    await db.commit()
    return _bill_response(items)
