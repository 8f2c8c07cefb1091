"""Tests for ledger reconciliation: drift policy, flags, completion, self-heal, idempotence."""

import uuid
from dataclasses import dataclass
from decimal import Decimal

import pytest
from solders.pubkey import Pubkey
from sqlalchemy import select

from app.config import settings
from app.errors import InvalidInput, InvalidState, LedgerUnreachable, ResourceNotFound
from app.models.escrow import Staking
from app.models.job import Job, JobStatus
from app.models.profile import ProfileRole
from app.models.project import Milestone, MilestoneStatus, Project, ProjectStatus
from app.services.ledger import to_lamports
from app.services.reconcile import (
    OUTDATED,
    SYNCED,
    DriftPolicy,
    Reconciler,
    even_split,
    heal_milestone_payments,
)
from tests.conftest import make_job, make_wallet, project_for

LEDGER_AMOUNTS = ("1.5", "2.0", "1.5")


@dataclass
class Mirror:
    project_id: uuid.UUID
    job_id: uuid.UUID
    payer_wallet: str
    escrow: Pubkey | None


async def _mirror(
    db,
    fake_ledger,
    mirror_amounts: tuple[str, ...] = LEDGER_AMOUNTS,
    ledger_amounts: tuple[str, ...] = LEDGER_AMOUNTS,
    approved: tuple[bool, bool, bool] = (False, False, False),
    claimed: tuple[bool, bool, bool] = (False, False, False),
    staked: str | None = None,
    released: str = "0",
    with_staking: bool = True,
    on_ledger: bool = True,
) -> Mirror:
    payer = await make_wallet(db, ProfileRole.RECRUITER, "Payer")
    payee = await make_wallet(db, ProfileRole.FREELANCER, "Payee")
    job = await make_job(db, payer)
    job.status = JobStatus.ACTIVE
    job.payer_wallet = payer.address

    address = None
    if on_ledger:
        address = fake_ledger.seed_escrow(
            payer.address, payee.address, str(job.job_id),
            [to_lamports(a) for a in ledger_amounts], approved, claimed,
        )

    project = Project(
        project_id=uuid.uuid4(),
        job_id=job.job_id,
        payer_id=payer.profile_id,
        payee_id=payee.profile_id,
        escrow_address=str(address) if address else "11111111111111111111111111111111",
        current_stage=1,
        status=ProjectStatus.ACTIVE,
        milestones=[
            Milestone(
                milestone_id=uuid.uuid4(),
                stage_number=i,
                name=f"Stage {i}",
                payment_amount=Decimal(amount),
            )
            for i, amount in enumerate(mirror_amounts, start=1)
        ],
    )
    if with_staking:
        project.staking = Staking(
            staking_id=uuid.uuid4(),
            payer_wallet=payer.address,
            total_staked=Decimal(staked) if staked else sum(Decimal(a) for a in mirror_amounts),
            total_released=Decimal(released),
        )
    db.add(project)
    await db.commit()
    return Mirror(project.project_id, job.job_id, payer.address, address)


async def _reconcile(session_factory, ledger, project_id, **kwargs):
    async with session_factory() as session:
        return await Reconciler(ledger, **kwargs).reconcile_project(session, project_id)


async def _load(session_factory, job_id) -> Project:
    async with session_factory() as session:
        return await project_for(session, job_id)


# --- Drift policy ---

def test_drift_policy_boundaries() -> None:
    policy = DriftPolicy(Decimal("0.04"), 1000)
    assert not policy.is_drift(Decimal("103.9"), Decimal("100"))
    assert policy.is_drift(Decimal("104"), Decimal("100"))
    assert policy.is_drift(Decimal("96"), Decimal("100"))
    # 500 lamports apart: within epsilon even at 50% relative drift
    assert not policy.is_drift(Decimal("0.0000015"), Decimal("0.000001"))
    assert policy.is_drift(Decimal("1"), Decimal("0"))
    assert not policy.is_drift(Decimal("0"), Decimal("0"))


def test_drift_policy_epsilon_only() -> None:
    policy = DriftPolicy(Decimal("0"), 1000)
    assert policy.is_drift(Decimal("100.000002"), Decimal("100"))
    assert not policy.is_drift(Decimal("100.000001"), Decimal("100"))


def test_drift_policy_from_settings() -> None:
    object.__setattr__(settings, "drift_relative_threshold", Decimal("0.1"))
    object.__setattr__(settings, "drift_epsilon_lamports", 5)
    assert DriftPolicy.from_settings() == DriftPolicy(Decimal("0.1"), 5)


# --- Self-heal helpers ---

def test_even_split_keeps_total() -> None:
    parts = even_split(Decimal("5"))
    assert parts == [Decimal("1.666666666"), Decimal("1.666666666"), Decimal("1.666666668")]
    assert sum(parts) == Decimal("5")


def test_heal_statuses() -> None:
    job = Job(job_id=uuid.uuid4(), total_payment=Decimal("3"))
    zero = [Milestone(stage_number=i, payment_amount=Decimal(0)) for i in (1, 2, 3)]
    assert heal_milestone_payments(job, zero).status == "fixed"
    assert [m.payment_amount for m in zero] == [Decimal(1)] * 3
    assert heal_milestone_payments(job, zero).status == "already_correct"

    empty_job = Job(job_id=uuid.uuid4(), total_payment=Decimal(0))
    zero = [Milestone(stage_number=i, payment_amount=Decimal(0)) for i in (1, 2, 3)]
    assert heal_milestone_payments(empty_job, zero).status == "nothing_to_distribute"


# --- Reconcile ---

@pytest.mark.asyncio
async def test_already_synchronized(db, session_factory, ledger, fake_ledger) -> None:
    mirror = await _mirror(db, fake_ledger)
    result = await _reconcile(session_factory, ledger, mirror.project_id)
    assert result.status == SYNCED
    assert result.message == "Already synchronized with the ledger"
    assert result.updates_applied == {}


@pytest.mark.asyncio
async def test_no_escrow_on_ledger(db, session_factory, ledger, fake_ledger) -> None:
    mirror = await _mirror(db, fake_ledger, on_ledger=False)
    result = await _reconcile(session_factory, ledger, mirror.project_id)
    assert result.status == SYNCED
    assert "No escrow" in result.message
    project = await _load(session_factory, mirror.job_id)
    assert project.status == ProjectStatus.ACTIVE


@pytest.mark.asyncio
async def test_below_threshold_not_corrected(db, session_factory, ledger, fake_ledger) -> None:
    mirror = await _mirror(
        db, fake_ledger,
        mirror_amounts=("100", "100", "100"),
        ledger_amounts=("103.9", "100", "100"),
    )
    result = await _reconcile(session_factory, ledger, mirror.project_id)
    assert result.status == SYNCED
    project = await _load(session_factory, mirror.job_id)
    assert project.milestones[0].payment_amount == Decimal("100")


@pytest.mark.asyncio
async def test_at_threshold_corrected(db, session_factory, ledger, fake_ledger) -> None:
    mirror = await _mirror(
        db, fake_ledger,
        mirror_amounts=("100", "100", "100"),
        ledger_amounts=("104", "100", "100"),
    )
    result = await _reconcile(session_factory, ledger, mirror.project_id)
    assert result.status == OUTDATED
    changes = result.updates_applied["milestones"]
    assert [c["stage_number"] for c in changes] == [1]
    payment = changes[0]["changes"]["payment_amount"]
    assert Decimal(payment["to"]) == Decimal("104")
    assert payment["drift_percent"] == "4.00"
    # total_staked drift is 1.33%, below threshold
    assert "total_staked" not in result.updates_applied["staking"]

    project = await _load(session_factory, mirror.job_id)
    assert project.milestones[0].payment_amount == Decimal("104")


@pytest.mark.asyncio
async def test_reconcile_is_idempotent(db, session_factory, ledger, fake_ledger) -> None:
    mirror = await _mirror(
        db, fake_ledger,
        mirror_amounts=("1", "1", "1"),
        approved=(True, False, False),
        claimed=(True, False, False),
    )
    first = await _reconcile(session_factory, ledger, mirror.project_id)
    assert first.status == OUTDATED
    second = await _reconcile(session_factory, ledger, mirror.project_id)
    assert second.status == SYNCED
    assert second.updates_applied == {}


@pytest.mark.asyncio
async def test_staking_totals_follow_ledger(db, session_factory, ledger, fake_ledger) -> None:
    mirror = await _mirror(db, fake_ledger, staked="4.0", approved=(True, False, False))
    result = await _reconcile(session_factory, ledger, mirror.project_id)
    assert result.status == OUTDATED
    assert Decimal(result.updates_applied["staking"]["total_staked"]["to"]) == Decimal("5")
    assert Decimal(result.updates_applied["staking"]["total_released"]["to"]) == Decimal("1.5")

    project = await _load(session_factory, mirror.job_id)
    assert project.staking.total_staked == Decimal("5")
    assert project.staking.total_released == Decimal("1.5")


@pytest.mark.asyncio
async def test_missing_staking_row_created(db, session_factory, ledger, fake_ledger) -> None:
    mirror = await _mirror(db, fake_ledger, with_staking=False)
    result = await _reconcile(session_factory, ledger, mirror.project_id)
    assert result.status == OUTDATED
    assert "created" in result.updates_applied["staking"]

    project = await _load(session_factory, mirror.job_id)
    assert project.staking.total_staked == Decimal("5")
    assert project.staking.payer_wallet == mirror.payer_wallet


@pytest.mark.asyncio
async def test_approved_flag_raised(db, session_factory, ledger, fake_ledger) -> None:
    mirror = await _mirror(db, fake_ledger, approved=(True, False, False))
    await _reconcile(session_factory, ledger, mirror.project_id)

    project = await _load(session_factory, mirror.job_id)
    first, second, _ = project.milestones
    assert first.approved is True
    assert first.status == MilestoneStatus.APPROVED
    assert second.approved is False
    assert second.status == MilestoneStatus.PENDING


@pytest.mark.asyncio
async def test_ledger_approval_advances_current_stage(db, session_factory, ledger, fake_ledger) -> None:
    mirror = await _mirror(db, fake_ledger, approved=(True, False, False))
    result = await _reconcile(session_factory, ledger, mirror.project_id)
    assert result.updates_applied["project"]["current_stage"] == {"from": "1", "to": "2"}

    project = await _load(session_factory, mirror.job_id)
    assert project.current_stage == 2
    assert project.status == ProjectStatus.ACTIVE

    again = await _reconcile(session_factory, ledger, mirror.project_id)
    assert again.status == SYNCED


@pytest.mark.asyncio
async def test_current_stage_never_moves_back(db, session_factory, ledger, fake_ledger) -> None:
    mirror = await _mirror(db, fake_ledger, approved=(False, True, False))
    async with session_factory() as session:
        project = await project_for(session, mirror.job_id)
        project.current_stage = 3
        await session.commit()

    result = await _reconcile(session_factory, ledger, mirror.project_id)
    assert "current_stage" not in result.updates_applied["project"]
    project = await _load(session_factory, mirror.job_id)
    assert project.current_stage == 3


@pytest.mark.asyncio
async def test_flags_never_lowered(db, session_factory, ledger, fake_ledger) -> None:
    mirror = await _mirror(db, fake_ledger)
    async with session_factory() as session:
        project = await project_for(session, mirror.job_id)
        project.milestones[1].approved = True
        project.milestones[1].claimed = True
        await session.commit()

    result = await _reconcile(session_factory, ledger, mirror.project_id)
    assert result.status == SYNCED

    project = await _load(session_factory, mirror.job_id)
    assert project.milestones[1].approved is True
    assert project.milestones[1].claimed is True


@pytest.mark.asyncio
async def test_claimed_on_ledger_completes_milestone(db, session_factory, ledger, fake_ledger) -> None:
    mirror = await _mirror(
        db, fake_ledger, approved=(True, False, False), claimed=(True, False, False)
    )
    await _reconcile(session_factory, ledger, mirror.project_id)

    project = await _load(session_factory, mirror.job_id)
    milestone = project.milestones[0]
    assert milestone.claimed is True
    assert milestone.payment_released is True
    assert milestone.status == MilestoneStatus.COMPLETED
    assert milestone.claimed_at is not None


@pytest.mark.asyncio
async def test_claimed_status_kept(db, session_factory, ledger, fake_ledger) -> None:
    mirror = await _mirror(
        db, fake_ledger, approved=(True, False, False), claimed=(True, False, False)
    )
    async with session_factory() as session:
        project = await project_for(session, mirror.job_id)
        project.milestones[0].status = MilestoneStatus.CLAIMED
        await session.commit()

    await _reconcile(session_factory, ledger, mirror.project_id)
    project = await _load(session_factory, mirror.job_id)
    assert project.milestones[0].status == MilestoneStatus.CLAIMED
    assert project.milestones[0].claimed is True


@pytest.mark.asyncio
async def test_all_approved_completes_project(db, session_factory, ledger, fake_ledger) -> None:
    mirror = await _mirror(db, fake_ledger, approved=(True, True, True))
    result = await _reconcile(session_factory, ledger, mirror.project_id)
    assert result.updates_applied["project"]["status"] == {"from": "active", "to": "completed"}

    project = await _load(session_factory, mirror.job_id)
    assert project.status == ProjectStatus.COMPLETED
    assert project.completed_at is not None
    assert project.job.status == JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_completed_project_sync_permitted(db, session_factory, ledger, fake_ledger) -> None:
    mirror = await _mirror(db, fake_ledger, approved=(True, True, True))
    await _reconcile(session_factory, ledger, mirror.project_id)

    again = await _reconcile(session_factory, ledger, mirror.project_id, permit_completed_jobs=True)
    assert again.status == SYNCED
    with pytest.raises(InvalidState):
        await _reconcile(session_factory, ledger, mirror.project_id, permit_completed_jobs=False)


@pytest.mark.asyncio
async def test_cancelled_project_refused(db, session_factory, ledger, fake_ledger) -> None:
    mirror = await _mirror(db, fake_ledger)
    async with session_factory() as session:
        project = await project_for(session, mirror.job_id)
        project.status = ProjectStatus.CANCELLED
        await session.commit()

    with pytest.raises(InvalidState):
        await _reconcile(session_factory, ledger, mirror.project_id)


@pytest.mark.asyncio
async def test_self_heal_then_converge(db, session_factory, ledger, fake_ledger) -> None:
    mirror = await _mirror(db, fake_ledger, mirror_amounts=("0", "0", "0"), staked="5.0")
    result = await _reconcile(session_factory, ledger, mirror.project_id)
    assert result.status == OUTDATED
    assert result.updates_applied["self_healed"] is True

    project = await _load(session_factory, mirror.job_id)
    assert [m.payment_amount for m in project.milestones] == [
        Decimal("1.5"), Decimal("2"), Decimal("1.5"),
    ]


@pytest.mark.asyncio
async def test_missing_payer_wallet(db, session_factory, ledger, fake_ledger) -> None:
    mirror = await _mirror(db, fake_ledger, with_staking=False)
    async with session_factory() as session:
        job = (await session.execute(select(Job).where(Job.job_id == mirror.job_id))).scalar_one()
        job.payer_wallet = None
        await session.commit()

    with pytest.raises(InvalidInput):
        await _reconcile(session_factory, ledger, mirror.project_id)


@pytest.mark.asyncio
async def test_unreachable_ledger_changes_nothing(db, session_factory, ledger, fake_ledger) -> None:
    mirror = await _mirror(db, fake_ledger, approved=(True, False, False))
    fake_ledger.fail_next["get_escrow"] = 3
    with pytest.raises(LedgerUnreachable):
        await _reconcile(session_factory, ledger, mirror.project_id)

    project = await _load(session_factory, mirror.job_id)
    assert project.milestones[0].approved is False


@pytest.mark.asyncio
async def test_reconcile_job_without_project(session_factory, ledger) -> None:
    async with session_factory() as session:
        with pytest.raises(ResourceNotFound):
            await Reconciler(ledger).reconcile_job(session, uuid.uuid4())
