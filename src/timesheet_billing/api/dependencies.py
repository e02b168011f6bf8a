"""Request-scoped dependencies: session, acting user, audit trail."""

from collections.abc import AsyncGenerator
from typing import Annotated
from uuid import UUID

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from timesheet_billing.database import init_db
from timesheet_billing.services.audit import AuditTrail


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """One session per request; routes commit, anything uncommitted is discarded."""
    _, sessions = init_db()
    async with sessions() as session:
        yield session


async def get_actor_id(x_user_id: Annotated[str | None, Header()] = None) -> UUID:
    """The user on whose behalf the request acts (``X-User-ID``)."""
    if not x_user_id:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, detail="X-User-ID header is required")
    try:
        return UUID(x_user_id)
    except ValueError:
        raise HTTPException(
            status.HTTP_400_BAD_REQUEST, detail=f"X-User-ID is not a UUID: {x_user_id!r}"
        ) from None


def get_audit_trail(request: Request) -> AuditTrail:
    return request.app.state.audit


DbSession = Annotated[AsyncSession, Depends(get_db_session)]
ActorId = Annotated[UUID, Depends(get_actor_id)]
Audit = Annotated[AuditTrail, Depends(get_audit_trail)]
