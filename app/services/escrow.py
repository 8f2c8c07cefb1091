"""Escrow funding verification, mirror snapshots, cancellation and payment repair."""

import logging
import uuid
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.errors import (
    AccessDenied,
    CannotCancelAfterApproval,
    EscrowNotFound,
    InsufficientBalance,
    InvalidInput,
    InvalidState,
    ResourceNotFound,
    UnconfirmedLedgerOperation,
)
from app.models.escrow import EscrowTransaction, Staking, TransactionStatus, TransactionType
from app.models.job import VALID_TRANSITIONS, Job, JobStatus
from app.models.profile import Profile, ProfileRole
from app.models.project import Milestone, MilestoneStatus, Project, ProjectStatus
from app.schemas.escrow import EscrowVerifyRequest
from app.services.ledger import EscrowLedgerClient, from_lamports
from app.services.locks import lock_project, project_locks
from app.services.notifications import notify
from app.services.reconcile import HealResult, heal_milestone_payments

logger = logging.getLogger(__name__)


def _assert_job_transition(job: Job, target: JobStatus) -> None:
    if target not in VALID_TRANSITIONS.get(job.status, set()):
        raise InvalidState(f"Cannot transition job from {job.status.value} to {target.value}")


def _assert_party(project: Project, profile_id: uuid.UUID, allowed: str = "both") -> None:
    """allowed: 'payer', 'payee' or 'both'."""
    is_payer = project.payer_id == profile_id
    is_payee = project.payee_id == profile_id
    if allowed == "payer" and not is_payer:
        raise AccessDenied("Only the payer can perform this action")
    if allowed == "payee" and not is_payee:
        raise AccessDenied("Only the payee can perform this action")
    if allowed == "both" and not (is_payer or is_payee):
        raise AccessDenied("Not a party to this project")


async def _get_job(db: AsyncSession, job_id: uuid.UUID) -> Job:
    result = await db.execute(select(Job).where(Job.job_id == job_id))
    job = result.scalar_one_or_none()
    if job is None:
        raise ResourceNotFound("Job not found")
    return job


async def project_for_job(db: AsyncSession, job_id: uuid.UUID) -> Project:
    result = await db.execute(select(Project).where(Project.job_id == job_id))
    project = result.scalar_one_or_none()
    if project is None:
        raise ResourceNotFound("No project exists for this job")
    return project


async def get_project(db: AsyncSession, project_id: uuid.UUID, viewer_id: uuid.UUID) -> Project:
    result = await db.execute(select(Project).where(Project.project_id == project_id))
    project = result.scalar_one_or_none()
    if project is None:
        raise ResourceNotFound("Project not found")
    _assert_party(project, viewer_id)
    return project


async def _find_transaction(db: AsyncSession, tx_ref: str) -> EscrowTransaction | None:
    result = await db.execute(
        select(EscrowTransaction).where(EscrowTransaction.ledger_signature == tx_ref)
    )
    return result.scalar_one_or_none()


# ---------------------------------------------------------------------------
# Funding verification
# ---------------------------------------------------------------------------

async def verify_funding(
    db: AsyncSession,
    ledger: EscrowLedgerClient,
    payer: Profile,
    data: EscrowVerifyRequest,
) -> tuple[Project, bool]:
    """Verify an on-chain funding transaction and record the mirror rows.

    Returns (project, created). Verifying the same job again returns the
    existing project without writing anything.
    """
    job = await _get_job(db, data.job_id)
    if job.payer_id != payer.profile_id:
        raise AccessDenied("Only the job's payer can verify funding")

    async with project_locks.hold(job.job_id):
        existing = await db.execute(select(Project).where(Project.job_id == job.job_id))
        project = existing.scalar_one_or_none()
        if project is not None:
            recorded = await _find_transaction(db, data.tx_ref)
            if recorded is None or recorded.project_id != project.project_id:
                logger.warning(
                    "Funding for job %s already recorded; ignoring tx %s", job.job_id, data.tx_ref
                )
            return project, False

        if job.status != JobStatus.OPEN:
            raise InvalidState(f"Job is {job.status.value}; only open jobs can be funded")
        if await _find_transaction(db, data.tx_ref) is not None:
            raise InvalidInput(f"Ledger signature {data.tx_ref} is already recorded")

        result = await db.execute(select(Profile).where(Profile.profile_id == data.payee_id))
        payee = result.scalar_one_or_none()
        if payee is None:
            raise ResourceNotFound("Payee profile not found")
        if payee.role != ProfileRole.FREELANCER or payee.profile_id == payer.profile_id:
            raise InvalidInput("Payee must be a freelancer other than the payer")

        payer_wallet = job.payer_wallet or payer.wallet_address
        if payer_wallet != payer.wallet_address:
            raise AccessDenied("Job is bound to a different payer wallet")

        job_ref = str(job.job_id)
        address, _ = ledger.escrow_address(payer_wallet, job_ref)
        if str(address) != data.escrow_address:
            raise InvalidInput(
                f"Escrow address {data.escrow_address} does not match derived address {address}"
            )

        if not await ledger.verify_signature(data.tx_ref):
            raise UnconfirmedLedgerOperation(f"Transaction {data.tx_ref} is not confirmed on the ledger")

        verification = await ledger.verify_funding(payer_wallet, job_ref, expected_total=data.total_staked)
        account = verification.account
        if str(account.payer) != payer_wallet:
            raise AccessDenied("Escrow was funded by a different wallet")
        if str(account.payee) != payee.wallet_address:
            raise InvalidInput("Escrow payee does not match the selected freelancer")
        if account.job_id != job_ref:
            raise InvalidInput("Escrow job id does not match")

        on_chain_total = from_lamports(account.total_amount)
        if abs(on_chain_total - data.total_staked) >= settings.funding_total_tolerance:
            raise InvalidInput(
                f"Staked amount mismatch: ledger {on_chain_total} SOL, expected {data.total_staked} SOL"
            )
        if not verification.verified:
            raise InsufficientBalance(
                f"Escrow balance {verification.balance} SOL is below the staked total"
            )

        stage_names = {stage.stage_number: stage.name for stage in job.stages}
        milestones = [
            Milestone(
                milestone_id=uuid.uuid4(),
                stage_number=entry.index + 1,
                name=stage_names.get(entry.index + 1, f"Stage {entry.index + 1}"),
                payment_amount=entry.amount,
                status=MilestoneStatus.PENDING,
            )
            for entry in verification.milestones
        ]
        project = Project(
            project_id=uuid.uuid4(),
            job_id=job.job_id,
            job=job,
            payer_id=payer.profile_id,
            payee_id=payee.profile_id,
            escrow_address=str(address),
            current_stage=1,
            status=ProjectStatus.ACTIVE,
            milestones=milestones,
            staking=Staking(
                staking_id=uuid.uuid4(),
                payer_wallet=payer_wallet,
                total_staked=on_chain_total,
                total_released=Decimal(0),
                funding_signature=data.tx_ref,
            ),
        )
        db.add(project)
        await db.flush()

        db.add(EscrowTransaction(
            transaction_id=uuid.uuid4(),
            project_id=project.project_id,
            type=TransactionType.STAKE,
            status=TransactionStatus.CONFIRMED,
            amount=on_chain_total,
            from_wallet=payer_wallet,
            to_wallet=str(address),
            ledger_signature=data.tx_ref,
            metadata_={"milestone_amounts": [str(m.amount) for m in verification.milestones]},
        ))

        _assert_job_transition(job, JobStatus.ACTIVE)
        job.status = JobStatus.ACTIVE
        job.payer_wallet = payer_wallet

        notify(
            db, payee.profile_id, "escrow.funded",
            f"{on_chain_total} SOL is locked in escrow for \"{job.title}\"",
            {"job_id": job_ref, "project_id": str(project.project_id), "escrow_address": str(address)},
        )
        await db.commit()

    logger.info(
        "Recorded escrow funding for job %s: %s SOL at %s (tx: %s)",
        job.job_id, on_chain_total, address, data.tx_ref,
    )
    return project, True


async def escrow_status(db: AsyncSession, job_id: uuid.UUID, viewer_id: uuid.UUID) -> Project:
    """Mirror snapshot for a job's escrow. Parties only."""
    project = await project_for_job(db, job_id)
    _assert_party(project, viewer_id)
    return project


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------

async def cancel_project(
    db: AsyncSession,
    ledger: EscrowLedgerClient,
    job_id: uuid.UUID,
    payer_id: uuid.UUID,
    tx_ref: str,
) -> Project:
    """Record a confirmed ledger cancellation: the escrow is closed and refunded."""
    project_id = (await project_for_job(db, job_id)).project_id
    async with project_locks.hold(project_id):
        try:
            project = await lock_project(db, project_id)
            _assert_party(project, payer_id, "payer")

            recorded = await _find_transaction(db, tx_ref)
            if recorded is not None:
                if recorded.type == TransactionType.REFUND and recorded.project_id == project_id:
                    await db.commit()
                    return project
                raise InvalidInput(f"Ledger signature {tx_ref} is already recorded")

            if any(
                m.approved or m.payment_released or m.status in (
                    MilestoneStatus.APPROVED, MilestoneStatus.CLAIMED, MilestoneStatus.COMPLETED,
                )
                for m in project.milestones
            ):
                raise CannotCancelAfterApproval()
            if project.status != ProjectStatus.ACTIVE:
                raise InvalidState(f"Project is {project.status.value}, not active")

            if not await ledger.verify_signature(tx_ref):
                raise UnconfirmedLedgerOperation(f"Transaction {tx_ref} is not confirmed on the ledger")
            try:
                await ledger.fetch_escrow(project.job.payer_wallet, str(job_id))
            except EscrowNotFound:
                pass
            else:
                raise UnconfirmedLedgerOperation("Escrow account is still open on the ledger")

            staking = project.staking
            refunded = (
                staking.total_staked - staking.total_released if staking is not None
                else sum((m.payment_amount for m in project.milestones), Decimal(0))
            )
            project.status = ProjectStatus.CANCELLED
            project.completed_at = datetime.now(UTC)
            _assert_job_transition(project.job, JobStatus.CANCELLED)
            project.job.status = JobStatus.CANCELLED

            db.add(EscrowTransaction(
                transaction_id=uuid.uuid4(),
                project_id=project_id,
                type=TransactionType.REFUND,
                status=TransactionStatus.CONFIRMED,
                amount=refunded,
                from_wallet=project.escrow_address,
                to_wallet=project.job.payer_wallet,
                ledger_signature=tx_ref,
            ))
            notify(
                db, project.payee_id, "escrow.cancelled",
                f"The escrow for this project was cancelled and {refunded} SOL refunded",
                {"project_id": str(project_id), "tx_ref": tx_ref},
            )
            await db.commit()
        except Exception:
            await db.rollback()
            raise

    logger.info("Cancelled project %s, refunded %s SOL (tx: %s)", project_id, refunded, tx_ref)
    return project


# ---------------------------------------------------------------------------
# Payment repair
# ---------------------------------------------------------------------------

async def fix_milestone_payments(
    db: AsyncSession, job_id: uuid.UUID, payer_id: uuid.UUID
) -> HealResult:
    """Run the zero-payment self-heal on its own."""
    project_id = (await project_for_job(db, job_id)).project_id
    async with project_locks.hold(project_id):
        try:
            project = await lock_project(db, project_id)
            _assert_party(project, payer_id, "payer")
            milestones = sorted(project.milestones, key=lambda m: m.stage_number)
            result = heal_milestone_payments(project.job, milestones)
            await db.commit()
        except Exception:
            await db.rollback()
            raise
    return result
