"""Job-level settlement endpoints: ledger sync, payment repair, cancellation."""

import uuid

import redis.asyncio as aioredis
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.middleware import AuthenticatedWallet, verify_request
from app.database import get_db
from app.errors import AccessDenied
from app.ledger import get_ledger
from app.redis import get_redis
from app.schemas.escrow import CancelEscrowRequest
from app.schemas.job import FixPaymentsResponse, SyncResponse
from app.schemas.project import ProjectResponse
from app.services import escrow as escrow_service
from app.services.ledger import EscrowLedgerClient
from app.services.reconcile import Reconciler
from app.services.sync_queue import cancel_sync

router = APIRouter(prefix="/jobs", tags=["jobs"])


@router.post("/{job_id}/sync-blockchain", response_model=SyncResponse)
async def sync_blockchain(
    job_id: uuid.UUID,
    auth: AuthenticatedWallet = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
    ledger: EscrowLedgerClient = Depends(get_ledger),
) -> SyncResponse:
    """Reconcile the job's mirror rows against the escrow on the ledger."""
    project = await escrow_service.project_for_job(db, job_id)
    if auth.profile_id not in (project.payer_id, project.payee_id):
        raise AccessDenied("Not a party to this project")
    result = await Reconciler(ledger).reconcile_project(db, project.project_id)
    return SyncResponse(
        status=result.status,
        message=result.message,
        project_id=result.project_id,
        updates_applied=result.updates_applied,
    )


@router.post("/{job_id}/fix-milestone-payments", response_model=FixPaymentsResponse)
async def fix_milestone_payments(
    job_id: uuid.UUID,
    auth: AuthenticatedWallet = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> FixPaymentsResponse:
    """Spread the job total over milestones that all carry a zero payment."""
    result = await escrow_service.fix_milestone_payments(db, job_id, auth.profile_id)
    return FixPaymentsResponse(status=result.status, total=result.total, amounts=result.amounts)


@router.post("/{job_id}/cancel", response_model=ProjectResponse)
async def cancel_job(
    job_id: uuid.UUID,
    data: CancelEscrowRequest,
    auth: AuthenticatedWallet = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
    redis: aioredis.Redis = Depends(get_redis),
    ledger: EscrowLedgerClient = Depends(get_ledger),
) -> ProjectResponse:
    """Payer records a confirmed ledger cancellation. Refused once any stage is approved."""
    project = await escrow_service.cancel_project(db, ledger, job_id, auth.profile_id, data.tx_ref)
    await cancel_sync(redis, project.project_id)
    return ProjectResponse.model_validate(project)
