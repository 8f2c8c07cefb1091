"""Periodic ledger sync queue using a Redis sorted set.

When an escrow is funded we ZADD the project_id with score = next sync unix
timestamp. A single async consumer sleeps until the earliest entry is due,
reconciles that project against the ledger, and re-enqueues it while the
project is still active.
"""

import asyncio
import logging
import time
import uuid

import redis.asyncio as aioredis

from app.config import settings
from app.errors import EscrowError

logger = logging.getLogger(__name__)

SYNC_KEY = "escrow:sync"


async def enqueue_sync(
    redis: aioredis.Redis,
    project_id: uuid.UUID,
    due_timestamp: float | None = None,
) -> None:
    """Schedule a project for its next ledger sync."""
    if due_timestamp is None:
        due_timestamp = time.time() + settings.sync_interval_seconds
    await redis.zadd(SYNC_KEY, {str(project_id): due_timestamp})
    logger.debug("Enqueued sync for project %s at %s", project_id, due_timestamp)


async def cancel_sync(redis: aioredis.Redis, project_id: uuid.UUID) -> None:
    """Remove a project from the sync queue (e.g. on completion or cancellation)."""
    await redis.zrem(SYNC_KEY, str(project_id))


async def pop_due(redis: aioredis.Redis, now: float | None = None) -> uuid.UUID | None:
    """Claim the earliest due project, or None if nothing is due yet."""
    entries = await redis.zrangebyscore(
        SYNC_KEY, "-inf", now if now is not None else time.time(), start=0, num=1
    )
    if not entries:
        return None
    member = entries[0]
    if not await redis.zrem(SYNC_KEY, member):
        # Another consumer got it
        return None
    if isinstance(member, bytes):
        member = member.decode()
    return uuid.UUID(member)


async def run_sync_consumer() -> None:
    """Process projects as their sync times arrive."""
    from app.redis import redis_pool

    redis = aioredis.Redis(connection_pool=redis_pool)

    while True:
        try:
            project_id = await pop_due(redis)
            if project_id is None:
                await asyncio.sleep(min(settings.sync_interval_seconds, 10))
                continue
            await sync_project(redis, project_id)

        except asyncio.CancelledError:
            logger.info("Sync consumer shutting down")
            break
        except Exception:
            logger.exception("Sync consumer error, retrying in 5s")
            await asyncio.sleep(5)

    await redis.aclose()


async def sync_project(
    redis: aioredis.Redis,
    project_id: uuid.UUID,
    session_factory=None,
    ledger=None,
) -> str | None:
    """Reconcile a single project and re-enqueue it if it is still active.

    Returns the reconcile status, or None when the project was skipped.
    """
    from sqlalchemy import select

    from app.models.project import Project, ProjectStatus
    from app.services.reconcile import Reconciler

    if session_factory is None:
        from app.database import async_session_factory as session_factory
    if ledger is None:
        from app.ledger import build_ledger_client
        ledger = build_ledger_client()

    status = None
    try:
        async with session_factory() as db:
            result = await db.execute(
                select(Project.status).where(Project.project_id == project_id)
            )
            project_status = result.scalar_one_or_none()
            if project_status is None:
                logger.warning("Sync fired for nonexistent project %s", project_id)
                return None
            if project_status != ProjectStatus.ACTIVE:
                logger.info(
                    "Project %s is %s, dropping it from the sync queue",
                    project_id, project_status.value,
                )
                return None

            outcome = await Reconciler(ledger).reconcile_project(db, project_id)
            status = outcome.status
            if outcome.updates_applied:
                logger.info("Periodic sync corrected project %s", project_id)

            result = await db.execute(
                select(Project.status).where(Project.project_id == project_id)
            )
            if result.scalar_one() == ProjectStatus.ACTIVE:
                await enqueue_sync(redis, project_id)

    except EscrowError as exc:
        logger.warning("Periodic sync of project %s failed: %s", project_id, exc.detail)
        await enqueue_sync(redis, project_id)
    except Exception:
        logger.exception("Failed to sync project %s", project_id)
        await enqueue_sync(redis, project_id)

    return status
