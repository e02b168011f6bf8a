"""Read access to users, projects, memberships, tasks and holidays."""

from __future__ import annotations

from datetime import date
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from timesheet_billing.errors import NotFoundError
from timesheet_billing.models import Project, ProjectMember, Task, User
from timesheet_billing.services.permissions import effective_role


class DirectoryService:
    """Lookups against the directory tables owned by the host application."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_user(self, user_id: UUID) -> User:
        user = await self.session.get(User, user_id)
        if user is None or not user.is_active:
            raise NotFoundError("User", user_id)
        return user

    async def get_project(self, project_id: UUID) -> Project:
        project = await self.session.get(Project, project_id)
        if project is None:
            raise NotFoundError("Project", project_id)
        return project

    async def get_task(self, task_id: UUID) -> Task:
        task = await self.session.get(Task, task_id)
        if task is None or task.deleted_at is not None:
            raise NotFoundError("Task", task_id)
        return task

    async def memberships(self, project_id: UUID) -> list[ProjectMember]:
        """Live membership rows of a project."""
        result = await self.session.execute(
            select(ProjectMember).where(
                ProjectMember.project_id == project_id,
                ProjectMember.deleted_at.is_(None),
            )
        )
        return list(result.scalars().all())

    async def active_members(
        self, project_id: UUID, start: date, end: date
    ) -> list[ProjectMember]:
        """Members whose assignment overlaps [start, end]."""
        return [m for m in await self.memberships(project_id) if m.is_active_between(start, end)]

    async def project_role(
        self, user_id: UUID, project_id: UUID, as_of: date | None = None
    ) -> str | None:
        """Membership role of a user on a project, or None."""
        result = await self.session.execute(
            select(ProjectMember).where(
                ProjectMember.project_id == project_id,
                ProjectMember.user_id == user_id,
                ProjectMember.deleted_at.is_(None),
            )
        )
        members = list(result.scalars().all())
        if as_of is not None:
            members = [m for m in members if m.is_active_between(as_of, as_of)]
        if not members:
            return None
        # Highest privilege wins when a user holds several assignments
        rank = {"employee": 0, "lead": 1, "manager": 2}
        return max(members, key=lambda m: rank.get(m.project_role, 0)).project_role

    async def effective_role(self, user: User, project_id: UUID | None) -> str | None:
        """Role the user acts with on a project (global role for management)."""
        project_role = None
        if project_id is not None:
            project_role = await self.project_role(user.user_id, project_id)
        return effective_role(user.role, project_role)

    async def project_ids_for_client(self, client_id: UUID) -> list[UUID]:
        result = await self.session.execute(
            select(Project.project_id).where(Project.client_id == client_id)
        )
        return list(result.scalars().all())
