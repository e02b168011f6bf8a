"""Timesheet and time entry API endpoints."""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Body, Path, Query, status
from sqlalchemy import select

from timesheet_billing.api.dependencies import ActorId, Audit, DbSession
from timesheet_billing.api.schemas import (
    ApprovalHistoryResponse,
    EntryCreate,
    EntryResultResponse,
    EntryUpdate,
    ErrorResponse,
    SubmitResponse,
    TimeEntryResponse,
    TimesheetCreate,
    TimesheetDelete,
    TimesheetDetailResponse,
    TimesheetResponse,
)
from timesheet_billing.models import Timesheet
from timesheet_billing.services.approval_service import ApprovalService
from timesheet_billing.services.timesheet_service import EntryResult, TimesheetService

router = APIRouter(prefix="/timesheets", tags=["timesheets"])


def _entry_response(result: EntryResult) -> EntryResultResponse:
    return EntryResultResponse(
        entry=TimeEntryResponse.model_validate(result.entry),
        warnings=result.warnings,
    )


# ============================================================================
# Timesheets
# ============================================================================


@router.post(
    "",
    response_model=TimesheetResponse,
    status_code=status.HTTP_201_CREATED,
    responses={400: {"model": ErrorResponse}},
)
async def open_timesheet(
    db: DbSession,
    actor_id: ActorId,
    audit: Audit,
    payload: TimesheetCreate,
) -> TimesheetResponse:
    """Get or create the caller's timesheet for a week (Monday start)."""
    service = TimesheetService(db, audit)
    timesheet = await service.get_or_create_timesheet(actor_id, payload.week_start)
    await db.commit()
    return TimesheetResponse.model_validate(timesheet)


@router.get("", response_model=list[TimesheetResponse])
async def list_my_timesheets(
    db: DbSession,
    actor_id: ActorId,
    status_filter: Annotated[str | None, Query(alias="status")] = None,
) -> list[TimesheetResponse]:
    """List the caller's live timesheets, newest week first."""
    query = select(Timesheet).where(
        Timesheet.user_id == actor_id,
        Timesheet.deleted_at.is_(None),
    )
    if status_filter:
        query = query.where(Timesheet.status == status_filter)
    result = await db.execute(query.order_by(Timesheet.week_start_date.desc()))
    return [TimesheetResponse.model_validate(ts) for ts in result.scalars().all()]


@router.get(
    "/{timesheet_id}",
    response_model=TimesheetDetailResponse,
    responses={403: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def get_timesheet(
    db: DbSession,
    actor_id: ActorId,
    timesheet_id: Annotated[UUID, Path()],
) -> TimesheetDetailResponse:
    """Get a timesheet with its live entries."""
    service = TimesheetService(db)
    timesheet = await service.read_timesheet(actor_id, timesheet_id)
    entries = await service.list_entries(timesheet_id)
    return TimesheetDetailResponse(
        timesheet=TimesheetResponse.model_validate(timesheet),
        entries=[TimeEntryResponse.model_validate(e) for e in entries],
    )


@router.post(
    "/{timesheet_id}/submit",
    response_model=SubmitResponse,
    responses={400: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def submit_timesheet(
    db: DbSession,
    actor_id: ActorId,
    audit: Audit,
    timesheet_id: Annotated[UUID, Path()],
) -> SubmitResponse:
    """Submit a draft or rejected timesheet for approval."""
    result = await TimesheetService(db, audit).submit(actor_id, timesheet_id)
    await db.commit()
    return SubmitResponse(
        timesheet=TimesheetResponse.model_validate(result.timesheet),
        warnings=result.warnings,
    )


@router.delete(
    "/{timesheet_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def delete_timesheet(
    db: DbSession,
    actor_id: ActorId,
    audit: Audit,
    timesheet_id: Annotated[UUID, Path()],
    payload: Annotated[TimesheetDelete | None, Body()] = None,
) -> None:
    """Soft-delete a draft timesheet."""
    reason = payload.reason if payload else None
    await TimesheetService(db, audit).delete_timesheet(actor_id, timesheet_id, reason)
    await db.commit()


@router.get(
    "/{timesheet_id}/history",
    response_model=list[ApprovalHistoryResponse],
    responses={403: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def get_history(
    db: DbSession,
    actor_id: ActorId,
    timesheet_id: Annotated[UUID, Path()],
) -> list[ApprovalHistoryResponse]:
    """Approval history of a timesheet, oldest first."""
    history = await ApprovalService(db).get_history(timesheet_id, actor_id)
    return [ApprovalHistoryResponse.model_validate(h) for h in history]


# ============================================================================
# Entries
# ============================================================================


@router.post(
    "/{timesheet_id}/entries",
    response_model=EntryResultResponse,
    status_code=status.HTTP_201_CREATED,
    responses={400: {"model": ErrorResponse}, 403: {"model": ErrorResponse}},
)
async def add_entry(
    db: DbSession,
    actor_id: ActorId,
    audit: Audit,
    timesheet_id: Annotated[UUID, Path()],
    payload: Annotated[EntryCreate, Body()],
) -> EntryResultResponse:
    """Add a project-task or custom-task entry."""
    result = await TimesheetService(db, audit).add_entry(
        actor_id, timesheet_id, payload.to_domain()
    )
    await db.commit()
    return _entry_response(result)


@router.patch(
    "/entries/{entry_id}",
    response_model=EntryResultResponse,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def update_entry(
    db: DbSession,
    actor_id: ActorId,
    audit: Audit,
    entry_id: Annotated[UUID, Path()],
    payload: EntryUpdate,
) -> EntryResultResponse:
    """Change hours, date, billable flag or notes of an entry."""
    result = await TimesheetService(db, audit).update_entry(
        actor_id,
        entry_id,
        hours=payload.hours,
        work_date=payload.work_date,
        is_billable=payload.is_billable,
        notes=payload.notes,
    )
    await db.commit()
    return _entry_response(result)


@router.delete(
    "/entries/{entry_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def delete_entry(
    db: DbSession,
    actor_id: ActorId,
    audit: Audit,
    entry_id: Annotated[UUID, Path()],
) -> None:
    """Soft-delete an entry."""
    await TimesheetService(db, audit).delete_entry(actor_id, entry_id)
    await db.commit()
