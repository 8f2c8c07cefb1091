"""FastAPI application entry point."""

import asyncio
import logging
from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.errors import EscrowError
from app.routers import escrow, jobs, projects

logger = logging.getLogger(__name__)


async def _recover_sync_queue() -> None:
    """Re-enqueue every active project after a server restart.

    ZADD with a fresh score only moves an entry's next sync time, so this is
    safe to call unconditionally at startup.
    """
    from app.database import async_session_factory
    from app.models.project import Project, ProjectStatus
    from app.services.sync_queue import enqueue_sync
    from app.redis import redis_pool
    from sqlalchemy import select

    import redis.asyncio as aioredis

    try:
        async with async_session_factory() as db:
            result = await db.execute(
                select(Project.project_id).where(Project.status == ProjectStatus.ACTIVE)
            )
            project_ids = list(result.scalars().all())

        if not project_ids:
            logger.info("Sync recovery: no active projects")
            return

        redis = aioredis.Redis(connection_pool=redis_pool)
        try:
            for project_id in project_ids:
                await enqueue_sync(redis, project_id)
        finally:
            await redis.aclose()

        logger.info("Sync recovery: re-enqueued %d projects", len(project_ids))

    except Exception:
        logger.exception("Sync recovery failed")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: startup and shutdown."""
    from app.ledger import solana_client
    from app.services.sync_queue import run_sync_consumer

    logger.info(
        "Settlement API starting: network=%s rpc=%s program=%s",
        settings.solana_network, settings.resolved_rpc_url, settings.escrow_program_id,
    )
    sync_task = asyncio.create_task(run_sync_consumer())
    await _recover_sync_queue()

    yield

    sync_task.cancel()
    try:
        await sync_task
    except asyncio.CancelledError:
        pass
    await solana_client.close()


app = FastAPI(
    title="Escrow Settlement",
    description="Milestone escrow settlement mirrored from the Solana ledger",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS - restrict to configured origins
from app.config import settings
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(EscrowError)
async def escrow_error_handler(request: Request, exc: EscrowError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc.detail)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "code": exc.code},
    )


# Routers
app.include_router(escrow.router)
app.include_router(jobs.router)
app.include_router(projects.router)


@app.get("/health")
async def health() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "ok"}
