"""Engine/session wiring and the project-week lock."""

from __future__ import annotations

import asyncio
import weakref
from contextlib import asynccontextmanager
from datetime import date
from typing import TYPE_CHECKING, AsyncGenerator
from uuid import UUID

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from timesheet_billing.config import Settings, get_settings

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine


def build_engine(settings: Settings) -> AsyncEngine:
    """Engine for the configured URL; pooling options only apply to PostgreSQL."""
    options: dict = {"echo": settings.debug}
    if settings.is_postgres:
        options.update(pool_pre_ping=True, pool_size=10, max_overflow=20)
    return create_async_engine(settings.database_url, **options)


_engine: AsyncEngine | None = None
_sessions: async_sessionmaker[AsyncSession] | None = None


def init_db() -> tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    """Lazily create the process engine and its session factory."""
    global _engine, _sessions
    if _engine is None:
        _engine = build_engine(get_settings())
        _sessions = async_sessionmaker(_engine, expire_on_commit=False, autoflush=False)
    return _engine, _sessions


# Entries vanish once no task holds or awaits the lock
_locks: weakref.WeakValueDictionary[tuple[int, str], asyncio.Lock] = (
    weakref.WeakValueDictionary()
)


def project_week_key(project_id: UUID, week_start: date) -> str:
    return f"project-week:{project_id}:{week_start.isoformat()}"


def _loop_lock(key: str) -> asyncio.Lock:
    # asyncio locks are bound to the loop that first awaits them
    slot = (id(asyncio.get_running_loop()), key)
    lock = _locks.get(slot)
    if lock is None:
        lock = _locks[slot] = asyncio.Lock()
    return lock


@asynccontextmanager
async def project_week_lock(
    session: AsyncSession, project_id: UUID, week_start: date
) -> AsyncGenerator[None, None]:
    """Serialize aggregate updates for one (project, week).

    Holds an in-process lock for the block and, on PostgreSQL, a
    transaction-scoped advisory lock released at commit or rollback.
    """
    key = project_week_key(project_id, week_start)
    async with _loop_lock(key):
        if session.get_bind().dialect.name == "postgresql":
            await session.execute(
                text("SELECT pg_advisory_xact_lock(hashtext(:key))"), {"key": key}
            )
        yield
