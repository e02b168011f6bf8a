"""Approval API endpoints: single timesheets and project-week bulk actions."""

from datetime import date
from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Path, Query, status

from timesheet_billing.api.dependencies import ActorId, Audit, DbSession
from timesheet_billing.api.schemas import (
    ApprovalResponse,
    ApproveRequest,
    BulkApproveRequest,
    BulkItemResponse,
    BulkRejectRequest,
    BulkResponse,
    DefaulterResponse,
    ErrorResponse,
    ProjectWeekStatusResponse,
    RejectRequest,
    ReviewQueueItemResponse,
    TimesheetResponse,
)
from timesheet_billing.services.approval_service import (
    ApprovalResult,
    ApprovalService,
    BulkResult,
)
from timesheet_billing.services.coordinator import ProjectWeekCoordinator

router = APIRouter(prefix="/approvals", tags=["approvals"])

_ERRORS = {
    400: {"model": ErrorResponse},
    403: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
}


def _approval_response(result: ApprovalResult) -> ApprovalResponse:
    return ApprovalResponse(
        timesheet=TimesheetResponse.model_validate(result.timesheet),
        tier=result.tier.value,
        action=result.action,
        status_before=result.status_before,
        status_after=result.status_after,
        project_ids=result.project_ids,
    )


def _bulk_response(result: BulkResult) -> BulkResponse:
    return BulkResponse(
        project_id=result.project_id,
        week_start=result.week_start,
        tier=result.tier.value,
        action=result.action,
        succeeded=result.succeeded,
        failed=result.failed,
        items=[BulkItemResponse.model_validate(i) for i in result.items],
        status=(
            ProjectWeekStatusResponse.model_validate(result.status)
            if result.status is not None
            else None
        ),
    )


# ============================================================================
# Single timesheet
# ============================================================================


@router.post(
    "/timesheets/{timesheet_id}/approve",
    response_model=ApprovalResponse,
    responses=_ERRORS,
)
async def approve_timesheet(
    db: DbSession,
    actor_id: ActorId,
    audit: Audit,
    timesheet_id: Annotated[UUID, Path()],
    payload: ApproveRequest,
) -> ApprovalResponse:
    """Approve a timesheet at its current review tier."""
    result = await ApprovalService(db, audit).approve_employee(
        actor_id, timesheet_id, payload.project_id, payload.notes
    )
    await db.commit()
    return _approval_response(result)


@router.post(
    "/timesheets/{timesheet_id}/reject",
    response_model=ApprovalResponse,
    responses=_ERRORS,
)
async def reject_timesheet(
    db: DbSession,
    actor_id: ActorId,
    audit: Audit,
    timesheet_id: Annotated[UUID, Path()],
    payload: RejectRequest,
) -> ApprovalResponse:
    """Reject a timesheet at its current review tier."""
    result = await ApprovalService(db, audit).reject_employee(
        actor_id, timesheet_id, payload.reason, payload.project_id, payload.entry_ids
    )
    await db.commit()
    return _approval_response(result)


# ============================================================================
# Project-week
# ============================================================================


@router.get(
    "/project-weeks/{project_id}/{week_start}",
    response_model=ProjectWeekStatusResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_project_week(
    db: DbSession,
    actor_id: ActorId,
    audit: Audit,
    project_id: Annotated[UUID, Path()],
    week_start: Annotated[date, Path()],
) -> ProjectWeekStatusResponse:
    """Coordination status of a project-week, recomputed on read."""
    status_ = await ProjectWeekCoordinator(db, audit).get_status(
        project_id, week_start, refresh=True
    )
    await db.commit()
    return ProjectWeekStatusResponse.model_validate(status_)


@router.get(
    "/project-weeks/{project_id}/{week_start}/defaulters",
    response_model=list[DefaulterResponse],
    responses={403: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def get_defaulters(
    db: DbSession,
    actor_id: ActorId,
    audit: Audit,
    project_id: Annotated[UUID, Path()],
    week_start: Annotated[date, Path()],
    exclude_role: str | None = None,
) -> list[DefaulterResponse]:
    """Required members of a project-week who have not submitted yet."""
    defaulters = await ProjectWeekCoordinator(db, audit).get_defaulters(
        project_id, week_start, exclude_role=exclude_role, actor_id=actor_id
    )
    await db.commit()
    return [DefaulterResponse.model_validate(d) for d in defaulters]


@router.get(
    "/queue",
    response_model=list[ReviewQueueItemResponse],
    responses={404: {"model": ErrorResponse}},
)
async def get_review_queue(
    db: DbSession,
    actor_id: ActorId,
    week_start: Annotated[date | None, Query()] = None,
) -> list[ReviewQueueItemResponse]:
    """Project-weeks waiting on the caller, by week and project."""
    items = await ProjectWeekCoordinator(db).review_queue(actor_id, week_start)
    return [
        ReviewQueueItemResponse(
            tier=item.tier.value,
            status=ProjectWeekStatusResponse.model_validate(item.status),
        )
        for item in items
    ]


@router.post(
    "/project-weeks/{project_id}/{week_start}/approve",
    response_model=BulkResponse,
    status_code=status.HTTP_200_OK,
    responses=_ERRORS,
)
async def approve_project_week(
    db: DbSession,
    actor_id: ActorId,
    audit: Audit,
    project_id: Annotated[UUID, Path()],
    week_start: Annotated[date, Path()],
    payload: BulkApproveRequest,
) -> BulkResponse:
    """Approve every pending timesheet of a project-week at one tier."""
    result = await ApprovalService(db, audit).approve_project_week(
        actor_id, project_id, week_start, payload.tier
    )
    await db.commit()
    return _bulk_response(result)


@router.post(
    "/project-weeks/{project_id}/{week_start}/reject",
    response_model=BulkResponse,
    responses=_ERRORS,
)
async def reject_project_week(
    db: DbSession,
    actor_id: ActorId,
    audit: Audit,
    project_id: Annotated[UUID, Path()],
    week_start: Annotated[date, Path()],
    payload: BulkRejectRequest,
) -> BulkResponse:
    """Reject every not-yet-approved timesheet of a project-week at one tier."""
    result = await ApprovalService(db, audit).reject_project_week(
        actor_id, project_id, week_start, payload.reason, payload.tier
    )
    await db.commit()
    return _bulk_response(result)
