"""Project view and milestone workflow endpoints."""

import uuid

import redis.asyncio as aioredis
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.middleware import AuthenticatedWallet, verify_request
from app.database import get_db
from app.ledger import get_ledger
from app.models.project import ProjectStatus
from app.redis import get_redis
from app.schemas.project import (
    ClaimMilestone,
    MilestoneResponse,
    ProjectResponse,
    ReviewMilestone,
    SubmitMilestone,
)
from app.services import escrow as escrow_service
from app.services import milestone as milestone_service
from app.services.ledger import EscrowLedgerClient
from app.services.sync_queue import cancel_sync

router = APIRouter(prefix="/projects", tags=["projects"])


@router.get("/{project_id}", response_model=ProjectResponse)
async def get_project(
    project_id: uuid.UUID,
    auth: AuthenticatedWallet = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> ProjectResponse:
    """Project with its milestones and staking totals. Parties only."""
    project = await escrow_service.get_project(db, project_id, auth.profile_id)
    return ProjectResponse.model_validate(project)


@router.put("/milestone/{milestone_id}/submit", response_model=MilestoneResponse)
async def submit_milestone(
    milestone_id: uuid.UUID,
    data: SubmitMilestone,
    auth: AuthenticatedWallet = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> MilestoneResponse:
    """Payee submits work for a milestone."""
    milestone = await milestone_service.submit_milestone(
        db, milestone_id, auth.profile_id, data.description, data.links, data.files,
    )
    return MilestoneResponse.model_validate(milestone)


@router.put("/milestone/{milestone_id}/review", response_model=MilestoneResponse)
async def review_milestone(
    milestone_id: uuid.UUID,
    data: ReviewMilestone,
    auth: AuthenticatedWallet = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
    redis: aioredis.Redis = Depends(get_redis),
    ledger: EscrowLedgerClient = Depends(get_ledger),
) -> MilestoneResponse:
    """Payer approves a submission or requests a revision."""
    milestone = await milestone_service.review_milestone(
        db,
        milestone_id,
        auth.profile_id,
        milestone_service.ReviewAction(data.action),
        comments=data.comments,
        ledger=ledger,
        tx_ref=data.tx_ref,
    )
    project = await escrow_service.get_project(db, milestone.project_id, auth.profile_id)
    if project.status == ProjectStatus.COMPLETED:
        await cancel_sync(redis, project.project_id)
    return MilestoneResponse.model_validate(milestone)


@router.put("/milestone/{milestone_id}/claim", response_model=MilestoneResponse)
async def claim_milestone(
    milestone_id: uuid.UUID,
    data: ClaimMilestone,
    auth: AuthenticatedWallet = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
    ledger: EscrowLedgerClient = Depends(get_ledger),
) -> MilestoneResponse:
    """Payee records a confirmed on-chain claim for an approved milestone."""
    milestone = await milestone_service.claim_milestone(
        db, ledger, milestone_id, auth.profile_id, data.tx_ref,
    )
    return MilestoneResponse.model_validate(milestone)
