"""Reconciliation engine: converge the relational mirror onto ledger truth.

The escrow account on the ledger is the only authority. One call:

1. locks the project (in-process lock + row lock) and checks it may be synced,
2. reads the ledger snapshot through the ledger client,
3. self-heals all-zero milestone payments from the job total,
4. corrects scalar drift (staking totals, milestone amounts) beyond the
   drift policy,
5. raises mirrored ``approved``/``claimed`` flags the ledger has set and moves
   ``current_stage`` past the stages it approved,
6. completes the project and job once every milestone is approved on-chain,

and commits every correction in one transaction, or nothing at all. A second
call with no ledger change in between finds nothing to do and writes nothing.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import ROUND_DOWN, Decimal
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.errors import EscrowNotFound, InvalidInput, InvalidState, ResourceNotFound
from app.models.escrow import Staking
from app.models.job import Job, JobStatus
from app.models.project import (
    SETTLED_MILESTONE_STATUSES,
    TERMINAL_MILESTONE_STATUSES,
    Milestone,
    MilestoneStatus,
    Project,
    ProjectStatus,
)
from app.services.ledger import EscrowLedgerClient, LedgerMilestone
from app.services.locks import lock_project, project_locks
from app.services.program import LAMPORTS_PER_SOL, MILESTONE_COUNT

logger = logging.getLogger(__name__)

SYNCED = "synced"
OUTDATED = "outdated"

_NINE_PLACES = Decimal("0.000000001")


@dataclass(frozen=True)
class DriftPolicy:
    """When a scalar mirror field counts as drifted from the ledger.

    Both limits must be crossed: the absolute difference must exceed
    ``epsilon_lamports`` and the relative drift must reach
    ``relative_threshold`` (inclusive).
    """

    relative_threshold: Decimal = Decimal("0.04")
    epsilon_lamports: int = 1000

    @classmethod
    def from_settings(cls) -> "DriftPolicy":
        return cls(
            relative_threshold=settings.drift_relative_threshold,
            epsilon_lamports=settings.drift_epsilon_lamports,
        )

    @staticmethod
    def relative_drift(ledger: Decimal, mirror: Decimal) -> Decimal:
        if mirror > 0:
            return abs(ledger - mirror) / mirror
        return Decimal(100) if ledger > 0 else Decimal(0)

    def is_drift(self, ledger: Decimal, mirror: Decimal) -> bool:
        if abs(ledger - mirror) * LAMPORTS_PER_SOL <= self.epsilon_lamports:
            return False
        return self.relative_drift(ledger, mirror) >= self.relative_threshold


@dataclass
class Corrections:
    staking: dict[str, dict[str, str]] = field(default_factory=dict)
    milestones: dict[int, dict[str, dict[str, Any]]] = field(default_factory=dict)
    project: dict[str, dict[str, str]] = field(default_factory=dict)
    self_healed: bool = False

    def __bool__(self) -> bool:
        return bool(self.staking or self.milestones or self.project or self.self_healed)

    def milestone(self, stage: int, name: str, old: Any, new: Any, **extra: Any) -> None:
        self.milestones.setdefault(stage, {})[name] = {"from": _plain(old), "to": _plain(new), **extra}

    def as_dict(self) -> dict[str, Any]:
        return {
            "staking": self.staking,
            "milestones": [
                {"stage_number": stage, "changes": changes}
                for stage, changes in sorted(self.milestones.items())
            ],
            "project": self.project,
            "self_healed": self.self_healed,
        }


def _plain(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if hasattr(value, "value"):
        return value.value
    return value


@dataclass
class ReconcileResult:
    status: str
    message: str
    project_id: uuid.UUID | None = None
    corrections: Corrections = field(default_factory=Corrections)

    @property
    def updates_applied(self) -> dict[str, Any]:
        return self.corrections.as_dict() if self.corrections else {}


@dataclass(frozen=True)
class HealResult:
    status: str  # "fixed", "already_correct" or "nothing_to_distribute"
    total: Decimal
    amounts: list[Decimal]


def even_split(total: Decimal, count: int = MILESTONE_COUNT) -> list[Decimal]:
    """Split a total into ``count`` parts at lamport precision; the last part takes the remainder."""
    share = (total / count).quantize(_NINE_PLACES, rounding=ROUND_DOWN)
    return [share] * (count - 1) + [total - share * (count - 1)]


def heal_milestone_payments(job: Job, milestones: list[Milestone]) -> HealResult:
    """Distribute the job total over milestones whose amounts are all zero."""
    current = sum((m.payment_amount for m in milestones), Decimal(0))
    if current > 0:
        return HealResult("already_correct", current, [m.payment_amount for m in milestones])
    total = job.total_payment or Decimal(0)
    if total <= 0 or not milestones:
        return HealResult("nothing_to_distribute", total, [m.payment_amount for m in milestones])
    amounts = even_split(total, len(milestones))
    for milestone, amount in zip(milestones, amounts):
        milestone.payment_amount = amount
    logger.info("Self-healed milestone payments for job %s: %s", job.job_id, amounts)
    return HealResult("fixed", total, amounts)


class Reconciler:
    def __init__(
        self,
        ledger: EscrowLedgerClient,
        policy: DriftPolicy | None = None,
        *,
        permit_completed_jobs: bool | None = None,
        verbose: bool | None = None,
    ) -> None:
        self.ledger = ledger
        self.policy = policy or DriftPolicy.from_settings()
        self.permit_completed_jobs = (
            settings.reconcile_permit_completed_jobs
            if permit_completed_jobs is None else permit_completed_jobs
        )
        self.verbose = settings.reconcile_verbose if verbose is None else verbose

    def _trace(self, msg: str, *args: Any) -> None:
        logger.log(logging.INFO if self.verbose else logging.DEBUG, msg, *args)

    async def reconcile_job(self, db: AsyncSession, job_id: uuid.UUID) -> ReconcileResult:
        result = await db.execute(select(Project.project_id).where(Project.job_id == job_id))
        project_id = result.scalar_one_or_none()
        if project_id is None:
            raise ResourceNotFound("No project exists for this job")
        return await self.reconcile_project(db, project_id)

    async def reconcile_project(self, db: AsyncSession, project_id: uuid.UUID) -> ReconcileResult:
        async with project_locks.hold(project_id):
            try:
                return await self._reconcile_locked(db, project_id)
            except Exception:
                await db.rollback()
                raise

    # ------------------------------------------------------------------

    def _check_syncable(self, project: Project) -> str:
        allowed = {ProjectStatus.ACTIVE}
        if self.permit_completed_jobs:
            allowed.add(ProjectStatus.COMPLETED)
        if project.status not in allowed:
            raise InvalidState(
                f"Cannot sync a {project.status.value} project; "
                f"allowed: {', '.join(sorted(s.value for s in allowed))}"
            )
        payer_wallet = project.job.payer_wallet or (
            project.staking.payer_wallet if project.staking is not None else None
        )
        if not payer_wallet:
            raise InvalidInput("No payer wallet recorded for this job")
        return payer_wallet

    async def _reconcile_locked(self, db: AsyncSession, project_id: uuid.UUID) -> ReconcileResult:
        project = await lock_project(db, project_id)
        payer_wallet = self._check_syncable(project)
        job = project.job

        try:
            snapshot = await self.ledger.status(payer_wallet, str(job.job_id))
        except EscrowNotFound:
            await db.commit()  # releases the row lock; nothing was written
            return ReconcileResult(SYNCED, "No escrow exists on the ledger yet", project_id)

        corrections = Corrections()
        milestones = sorted(project.milestones, key=lambda m: m.stage_number)

        heal = heal_milestone_payments(job, milestones)
        if heal.status == "fixed":
            corrections.self_healed = True
            for m, amount in zip(milestones, heal.amounts):
                corrections.milestone(m.stage_number, "payment_amount", Decimal(0), amount, reason="self_heal")
            await db.flush()

        self._reconcile_staking(db, project, payer_wallet, snapshot, corrections)
        self._reconcile_milestones(milestones, snapshot, corrections)
        self._reconcile_stage(project, milestones, corrections)
        self._reconcile_completion(project, job, snapshot, corrections)

        if not corrections:
            await db.commit()  # releases the row lock; nothing was written
            self._trace("Project %s already synchronized with escrow", project_id)
            return ReconcileResult(SYNCED, "Already synchronized with the ledger", project_id)

        await db.commit()
        logger.info(
            "Reconciled project %s with ledger: %s", project_id, corrections.as_dict()
        )
        return ReconcileResult(OUTDATED, "Mirror updated from ledger state", project_id, corrections)

    def _compare(self, label: str, ledger_value: Decimal, mirror_value: Decimal) -> Decimal | None:
        """Return the drift percentage when the field must be corrected, else None."""
        drift = self.policy.relative_drift(ledger_value, mirror_value)
        self._trace(
            "%s: ledger=%s mirror=%s drift=%.2f%%", label, ledger_value, mirror_value, drift * 100
        )
        if not self.policy.is_drift(ledger_value, mirror_value):
            return None
        return (drift * 100).quantize(Decimal("0.01"))

    def _reconcile_staking(
        self,
        db: AsyncSession,
        project: Project,
        payer_wallet: str,
        snapshot: list[LedgerMilestone],
        corrections: Corrections,
    ) -> None:
        ledger_staked = sum((m.amount for m in snapshot), Decimal(0))
        # Approved funds can no longer be refunded to the payer.
        ledger_released = sum((m.amount for m in snapshot if m.approved), Decimal(0))

        staking = project.staking
        if staking is None:
            staking = Staking(
                staking_id=uuid.uuid4(),
                project_id=project.project_id,
                payer_wallet=payer_wallet,
                total_staked=ledger_staked,
                total_released=ledger_released,
            )
            db.add(staking)
            project.staking = staking
            corrections.staking["created"] = {
                "total_staked": str(ledger_staked),
                "total_released": str(ledger_released),
            }
            return

        for name, ledger_value in (
            ("total_staked", ledger_staked),
            ("total_released", ledger_released),
        ):
            mirror_value = getattr(staking, name)
            drift = self._compare(f"staking.{name}", ledger_value, mirror_value)
            if drift is not None:
                corrections.staking[name] = {
                    "from": str(mirror_value),
                    "to": str(ledger_value),
                    "drift_percent": str(drift),
                }
                setattr(staking, name, ledger_value)

    def _reconcile_milestones(
        self,
        milestones: list[Milestone],
        snapshot: list[LedgerMilestone],
        corrections: Corrections,
    ) -> None:
        by_stage = {m.stage_number: m for m in milestones}
        for entry in snapshot:
            stage = entry.index + 1
            milestone = by_stage.get(stage)
            if milestone is None:
                logger.warning("Ledger milestone %d has no mirror row", entry.index)
                continue

            drift = self._compare(f"milestone[{stage}].payment_amount", entry.amount, milestone.payment_amount)
            if drift is not None:
                corrections.milestone(
                    stage, "payment_amount", milestone.payment_amount, entry.amount,
                    drift_percent=str(drift),
                )
                milestone.payment_amount = entry.amount

            # Flags only move False -> True; a True mirror flag is never touched.
            if entry.approved and not milestone.approved:
                corrections.milestone(stage, "approved", False, True)
                milestone.approved = True
                if not milestone.payment_released and milestone.status not in SETTLED_MILESTONE_STATUSES:
                    corrections.milestone(stage, "status", milestone.status, MilestoneStatus.APPROVED)
                    milestone.status = MilestoneStatus.APPROVED

            if entry.claimed and not milestone.claimed:
                corrections.milestone(stage, "claimed", False, True)
                milestone.claimed = True
                if not milestone.payment_released:
                    corrections.milestone(stage, "payment_released", False, True)
                    milestone.payment_released = True
                if milestone.status not in TERMINAL_MILESTONE_STATUSES:
                    corrections.milestone(stage, "status", milestone.status, MilestoneStatus.COMPLETED)
                    milestone.status = MilestoneStatus.COMPLETED
                if milestone.claimed_at is None:
                    milestone.claimed_at = datetime.now(UTC)

    def _reconcile_stage(
        self, project: Project, milestones: list[Milestone], corrections: Corrections
    ) -> None:
        """Move ``current_stage`` past stages the ledger has approved; never backwards."""
        open_stages = [
            m.stage_number for m in milestones
            if not m.approved and m.status not in SETTLED_MILESTONE_STATUSES
        ]
        if not open_stages or min(open_stages) <= project.current_stage:
            return
        stage = min(open_stages)
        corrections.project["current_stage"] = {"from": str(project.current_stage), "to": str(stage)}
        project.current_stage = stage

    def _reconcile_completion(
        self,
        project: Project,
        job: Job,
        snapshot: list[LedgerMilestone],
        corrections: Corrections,
    ) -> None:
        if not snapshot or not all(entry.approved for entry in snapshot):
            return
        if project.status != ProjectStatus.COMPLETED:
            corrections.project["status"] = {"from": project.status.value, "to": ProjectStatus.COMPLETED.value}
            project.status = ProjectStatus.COMPLETED
            project.completed_at = datetime.now(UTC)
        if job.status != JobStatus.COMPLETED:
            corrections.project["job_status"] = {"from": job.status.value, "to": JobStatus.COMPLETED.value}
            job.status = JobStatus.COMPLETED
