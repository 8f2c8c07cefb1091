"""Escrow funding verification and status endpoints."""

import uuid

import redis.asyncio as aioredis
from fastapi import APIRouter, Depends, Response
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.middleware import AuthenticatedWallet, verify_request
from app.database import get_db
from app.ledger import get_ledger
from app.redis import get_redis
from app.schemas.escrow import EscrowStatusResponse, EscrowSummary, EscrowVerifyRequest
from app.schemas.project import MilestoneResponse, ProjectResponse
from app.services import escrow as escrow_service
from app.services.ledger import EscrowLedgerClient
from app.services.sync_queue import enqueue_sync

router = APIRouter(prefix="/escrow", tags=["escrow"])


@router.post("/verify", response_model=EscrowSummary)
async def verify_escrow(
    data: EscrowVerifyRequest,
    response: Response,
    auth: AuthenticatedWallet = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
    redis: aioredis.Redis = Depends(get_redis),
    ledger: EscrowLedgerClient = Depends(get_ledger),
) -> EscrowSummary:
    """Payer reports a funding transaction; the mirror is created once it checks out."""
    project, created = await escrow_service.verify_funding(db, ledger, auth.profile, data)
    if created:
        response.status_code = 201
        await enqueue_sync(redis, project.project_id)
    return EscrowSummary(
        created=created,
        job_id=project.job_id,
        escrow_address=project.escrow_address,
        total_staked=project.staking.total_staked if project.staking else data.total_staked,
        project=ProjectResponse.model_validate(project),
    )


@router.get("/status/{job_id}", response_model=EscrowStatusResponse)
async def escrow_status(
    job_id: uuid.UUID,
    auth: AuthenticatedWallet = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> EscrowStatusResponse:
    """Mirror snapshot of a job's escrow. Parties only."""
    project = await escrow_service.escrow_status(db, job_id, auth.profile_id)
    staked = project.staking.total_staked if project.staking else sum(
        m.payment_amount for m in project.milestones
    )
    released = project.staking.total_released if project.staking else sum(
        m.payment_amount for m in project.milestones if m.payment_released
    )
    return EscrowStatusResponse(
        job_id=project.job_id,
        project_id=project.project_id,
        escrow_address=project.escrow_address,
        project_status=project.status.value,
        current_stage=project.current_stage,
        total_staked=staked,
        total_released=released,
        remaining=staked - released,
        milestones=[MilestoneResponse.model_validate(m) for m in project.milestones],
    )
