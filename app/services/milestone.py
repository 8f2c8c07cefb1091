"""Milestone settlement workflow: submit, review, claim.

Every entry point takes the per-project lock, reloads the project with a row
lock and checks its preconditions before touching anything, so a failed call
leaves the mirror exactly as it was.
"""

import enum
import logging
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.errors import (
    AccessDenied,
    InvalidInput,
    InvalidState,
    MilestoneAlreadyApproved,
    MilestoneAlreadyClaimed,
    MilestoneNotApproved,
    ResourceNotFound,
    UnconfirmedLedgerOperation,
)
from app.models.escrow import EscrowTransaction, TransactionStatus, TransactionType
from app.models.job import JobStatus, VALID_TRANSITIONS
from app.models.profile import Profile
from app.models.project import (
    MILESTONE_TRANSITIONS,
    SETTLED_MILESTONE_STATUSES,
    TERMINAL_MILESTONE_STATUSES,
    Milestone,
    MilestoneStatus,
    Project,
    ProjectStatus,
)
from app.services.ledger import EscrowLedgerClient
from app.services.locks import lock_project, project_locks
from app.services.notifications import notify

logger = logging.getLogger(__name__)


class SubmissionPolicy(enum.Enum):
    STRICT = "strict"  # only the project's current stage
    ANY = "any"  # any non-terminal milestone


class ReviewAction(enum.Enum):
    APPROVE = "approve"
    REQUEST_REVISION = "request_revision"


SUBMITTABLE = {
    MilestoneStatus.PENDING,
    MilestoneStatus.REVISION_REQUESTED,
    MilestoneStatus.SUBMITTED,
}


def _assert_transition(current: MilestoneStatus, target: MilestoneStatus) -> None:
    if target not in MILESTONE_TRANSITIONS.get(current, set()):
        raise InvalidState(
            f"Cannot transition milestone from {current.value} to {target.value}"
        )


async def _get_milestone(db: AsyncSession, milestone_id: uuid.UUID) -> Milestone:
    result = await db.execute(select(Milestone).where(Milestone.milestone_id == milestone_id))
    milestone = result.scalar_one_or_none()
    if milestone is None:
        raise ResourceNotFound("Milestone not found")
    return milestone


async def _find_transaction(db: AsyncSession, tx_ref: str) -> EscrowTransaction | None:
    result = await db.execute(
        select(EscrowTransaction).where(EscrowTransaction.ledger_signature == tx_ref)
    )
    return result.scalar_one_or_none()


async def _wallet_of(db: AsyncSession, profile_id: uuid.UUID) -> str | None:
    result = await db.execute(select(Profile.wallet_address).where(Profile.profile_id == profile_id))
    return result.scalar_one_or_none()


@asynccontextmanager
async def _settling(
    db: AsyncSession, milestone_id: uuid.UUID
) -> AsyncIterator[tuple[Milestone, Project]]:
    """Serialize on the milestone's project; roll back on any failure."""
    project_id = (await _get_milestone(db, milestone_id)).project_id
    async with project_locks.hold(project_id):
        try:
            project = await lock_project(db, project_id)
            milestone = next(m for m in project.milestones if m.milestone_id == milestone_id)
            yield milestone, project
        except Exception:
            await db.rollback()
            raise


def _open_stage(project: Project) -> int | None:
    """Lowest stage still awaiting approval, None once every stage is settled."""
    return min(
        (m.stage_number for m in project.milestones if m.status not in SETTLED_MILESTONE_STATUSES),
        default=None,
    )


# ---------------------------------------------------------------------------
# Submit
# ---------------------------------------------------------------------------

async def submit_milestone(
    db: AsyncSession,
    milestone_id: uuid.UUID,
    payee_id: uuid.UUID,
    description: str,
    links: list[str] | None = None,
    files: list[str] | None = None,
    policy: SubmissionPolicy | None = None,
) -> Milestone:
    """Payee submits work for a milestone."""
    policy = policy or SubmissionPolicy(settings.milestone_submission_policy)

    async with _settling(db, milestone_id) as (milestone, project):
        if project.payee_id != payee_id:
            raise AccessDenied("Only the payee can submit milestones")
        if project.status != ProjectStatus.ACTIVE:
            raise InvalidState(f"Project is {project.status.value}, not active")
        if milestone.status not in SUBMITTABLE:
            raise InvalidState(f"Cannot submit a milestone in status {milestone.status.value}")
        if policy == SubmissionPolicy.STRICT and milestone.stage_number != project.current_stage:
            raise InvalidState(
                f"Only stage {project.current_stage} can be submitted, "
                f"not stage {milestone.stage_number}"
            )
        _assert_transition(milestone.status, MilestoneStatus.SUBMITTED)

        milestone.status = MilestoneStatus.SUBMITTED
        milestone.submission_description = description
        milestone.submission_links = list(links or [])
        milestone.submission_files = list(files or [])
        milestone.submitted_at = datetime.now(UTC)

        notify(
            db, project.payer_id, "milestone.submitted",
            f"Stage {milestone.stage_number} has been submitted for review",
            {"project_id": str(project.project_id), "milestone_id": str(milestone_id)},
        )
        await db.commit()

    logger.info("Milestone %s submitted (stage %d)", milestone_id, milestone.stage_number)
    return milestone


# ---------------------------------------------------------------------------
# Review
# ---------------------------------------------------------------------------

async def review_milestone(
    db: AsyncSession,
    milestone_id: uuid.UUID,
    payer_id: uuid.UUID,
    action: ReviewAction,
    comments: str | None = None,
    ledger: EscrowLedgerClient | None = None,
    tx_ref: str | None = None,
) -> Milestone:
    """Payer approves a submission or asks for a revision.

    Approval is optimistic in the mirror. When ``tx_ref`` names the ledger
    approval transaction it is verified first, and the mirrored ``approved``
    flag is raised with it.
    """
    async with _settling(db, milestone_id) as (milestone, project):
        if project.payer_id != payer_id:
            raise AccessDenied("Only the payer can review milestones")
        if project.status != ProjectStatus.ACTIVE:
            raise InvalidState(f"Project is {project.status.value}, not active")
        if milestone.status != MilestoneStatus.SUBMITTED:
            if action == ReviewAction.APPROVE and milestone.status in SETTLED_MILESTONE_STATUSES:
                raise MilestoneAlreadyApproved(f"Stage {milestone.stage_number} is already approved")
            raise InvalidState(f"Cannot review a milestone in status {milestone.status.value}")

        now = datetime.now(UTC)
        if action == ReviewAction.REQUEST_REVISION:
            _assert_transition(milestone.status, MilestoneStatus.REVISION_REQUESTED)
            milestone.status = MilestoneStatus.REVISION_REQUESTED
            milestone.review_comments = comments
            milestone.reviewed_at = now
            notify(
                db, project.payee_id, "milestone.revision_requested",
                f"Revision requested for stage {milestone.stage_number}",
                {"milestone_id": str(milestone_id), "comments": comments},
            )
            await db.commit()
            logger.info("Revision requested for milestone %s", milestone_id)
            return milestone

        confirmed = False
        if tx_ref:
            confirmed = await _confirm_ledger_flag(db, ledger, project, milestone, tx_ref, "approved")

        _assert_transition(milestone.status, MilestoneStatus.APPROVED)
        milestone.status = MilestoneStatus.APPROVED
        milestone.payment_released = True
        milestone.review_comments = comments
        milestone.reviewed_at = now
        if confirmed:
            milestone.approved = True

        if project.staking is not None:
            project.staking.total_released += milestone.payment_amount
        else:
            logger.warning("Project %s has no staking row; released total not tracked", project.project_id)

        db.add(EscrowTransaction(
            transaction_id=uuid.uuid4(),
            project_id=project.project_id,
            milestone_id=milestone.milestone_id,
            type=TransactionType.PAYMENT,
            status=TransactionStatus.CONFIRMED if confirmed else TransactionStatus.PENDING,
            amount=milestone.payment_amount,
            from_wallet=project.escrow_address,
            to_wallet=await _wallet_of(db, project.payee_id),
            ledger_signature=tx_ref if confirmed else None,
            metadata_={"stage_number": milestone.stage_number},
        ))

        next_stage = _open_stage(project)
        if next_stage is not None:
            project.current_stage = next_stage
        else:
            project.status = ProjectStatus.COMPLETED
            project.completed_at = now
            job = project.job
            if JobStatus.COMPLETED in VALID_TRANSITIONS.get(job.status, set()):
                job.status = JobStatus.COMPLETED
            notify(
                db, project.payee_id, "project.completed",
                "All milestones approved, project completed",
                {"project_id": str(project.project_id)},
            )

        notify(
            db, project.payee_id, "milestone.approved",
            f"Stage {milestone.stage_number} approved, {milestone.payment_amount} SOL released",
            {"milestone_id": str(milestone_id), "amount": str(milestone.payment_amount)},
        )
        await db.commit()

    logger.info(
        "Milestone %s approved (stage %d, %s SOL)",
        milestone_id, milestone.stage_number, milestone.payment_amount,
    )
    return milestone


async def _confirm_ledger_flag(
    db: AsyncSession,
    ledger: EscrowLedgerClient | None,
    project: Project,
    milestone: Milestone,
    tx_ref: str,
    flag: str,
) -> bool:
    """Check that ``tx_ref`` landed and the escrow shows ``flag`` for this stage."""
    if ledger is None:
        raise UnconfirmedLedgerOperation("No ledger client available to verify the transaction")
    if await _find_transaction(db, tx_ref) is not None:
        raise InvalidInput(f"Ledger signature {tx_ref} is already recorded")
    if not await ledger.verify_signature(tx_ref):
        raise UnconfirmedLedgerOperation(f"Transaction {tx_ref} is not confirmed on the ledger")
    snapshot = await ledger.status(project.job.payer_wallet, str(project.job_id))
    if not getattr(snapshot[milestone.stage_number - 1], flag):
        raise UnconfirmedLedgerOperation(
            f"Stage {milestone.stage_number} is not {flag} on the ledger"
        )
    return True


# ---------------------------------------------------------------------------
# Claim
# ---------------------------------------------------------------------------

async def claim_milestone(
    db: AsyncSession,
    ledger: EscrowLedgerClient,
    milestone_id: uuid.UUID,
    payee_id: uuid.UUID,
    tx_ref: str,
) -> Milestone:
    """Record a confirmed ledger claim. Re-ingesting the same signature is a no-op."""
    if not tx_ref:
        raise InvalidInput("A ledger transaction signature is required")

    async with _settling(db, milestone_id) as (milestone, project):
        if project.payee_id != payee_id:
            raise AccessDenied("Only the payee can claim milestones")

        existing = await _find_transaction(db, tx_ref)
        if existing is not None:
            if (
                existing.milestone_id == milestone.milestone_id
                and existing.type == TransactionType.MILESTONE_PAYMENT
            ):
                await db.commit()
                logger.info("Claim %s for milestone %s already recorded", tx_ref, milestone_id)
                return milestone
            raise InvalidInput(f"Ledger signature {tx_ref} is already recorded")

        if milestone.claimed or milestone.status in TERMINAL_MILESTONE_STATUSES:
            raise MilestoneAlreadyClaimed(f"Stage {milestone.stage_number} is already claimed")
        if milestone.status != MilestoneStatus.APPROVED:
            raise MilestoneNotApproved(f"Stage {milestone.stage_number} is not approved")

        if not await ledger.verify_signature(tx_ref):
            raise UnconfirmedLedgerOperation(f"Transaction {tx_ref} is not confirmed on the ledger")
        snapshot = await ledger.status(project.job.payer_wallet, str(project.job_id))
        if not snapshot[milestone.stage_number - 1].claimed:
            raise UnconfirmedLedgerOperation(
                f"Stage {milestone.stage_number} is not claimed on the ledger"
            )

        _assert_transition(milestone.status, MilestoneStatus.CLAIMED)
        milestone.status = MilestoneStatus.CLAIMED
        milestone.approved = True
        milestone.claimed = True
        milestone.payment_released = True
        milestone.claimed_at = datetime.now(UTC)

        db.add(EscrowTransaction(
            transaction_id=uuid.uuid4(),
            project_id=project.project_id,
            milestone_id=milestone.milestone_id,
            type=TransactionType.MILESTONE_PAYMENT,
            status=TransactionStatus.CONFIRMED,
            amount=milestone.payment_amount,
            from_wallet=project.escrow_address,
            to_wallet=await _wallet_of(db, payee_id),
            ledger_signature=tx_ref,
            metadata_={"stage_number": milestone.stage_number},
        ))
        notify(
            db, project.payer_id, "milestone.claimed",
            f"Stage {milestone.stage_number} payment of {milestone.payment_amount} SOL was claimed",
            {"milestone_id": str(milestone_id), "tx_ref": tx_ref},
        )
        await db.commit()

    logger.info("Milestone %s claimed (tx: %s)", milestone_id, tx_ref)
    return milestone
