"""Per-project serialization.

Reconciliation and the milestone workflow both read-then-write mirror rows,
so calls for the same project must not interleave. Inside one process this
keyed lock queues them; across processes the ``SELECT ... FOR UPDATE`` on the
project row taken by ``lock_project`` does the same job.
"""

import asyncio
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.errors import ResourceNotFound
from app.models.project import Project


class KeyedLocks:
    def __init__(self) -> None:
        self._locks: dict[uuid.UUID, asyncio.Lock] = {}
        self._waiters: dict[uuid.UUID, int] = {}

    @asynccontextmanager
    async def hold(self, key: uuid.UUID) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                del self._locks[key]

    def __contains__(self, key: uuid.UUID) -> bool:
        return key in self._locks


project_locks = KeyedLocks()


async def lock_project(db: AsyncSession, project_id: uuid.UUID) -> Project:
    """Load a project with a row lock held until the session's transaction ends."""
    result = await db.execute(
        select(Project)
        .where(Project.project_id == project_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    project = result.scalar_one_or_none()
    if project is None:
        raise ResourceNotFound("Project not found")
    return project
