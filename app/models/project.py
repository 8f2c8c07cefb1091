"""Project and milestone mirror models."""

import enum
import uuid
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base
from app.models.escrow import Staking
from app.models.job import Job

JSONList = JSON().with_variant(JSONB(), "postgresql")


class ProjectStatus(enum.Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class MilestoneStatus(enum.Enum):
    PENDING = "pending"
    SUBMITTED = "submitted"
    REVISION_REQUESTED = "revision_requested"
    APPROVED = "approved"
    CLAIMED = "claimed"
    COMPLETED = "completed"


# Transitions the settlement workflow may drive. Reconciliation only ever moves
# a milestone forward into APPROVED or COMPLETED from ledger truth.
MILESTONE_TRANSITIONS: dict[MilestoneStatus, set[MilestoneStatus]] = {
    MilestoneStatus.PENDING: {MilestoneStatus.SUBMITTED},
    MilestoneStatus.SUBMITTED: {
        MilestoneStatus.SUBMITTED,
        MilestoneStatus.APPROVED,
        MilestoneStatus.REVISION_REQUESTED,
    },
    MilestoneStatus.REVISION_REQUESTED: {MilestoneStatus.SUBMITTED},
    MilestoneStatus.APPROVED: {MilestoneStatus.CLAIMED},
    MilestoneStatus.CLAIMED: set(),
    MilestoneStatus.COMPLETED: set(),
}

TERMINAL_MILESTONE_STATUSES = frozenset({MilestoneStatus.CLAIMED, MilestoneStatus.COMPLETED})
# Approved or beyond: the payer has nothing left to decide for the stage.
SETTLED_MILESTONE_STATUSES = TERMINAL_MILESTONE_STATUSES | {MilestoneStatus.APPROVED}


class Project(Base):
    __tablename__ = "projects"

    project_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    job_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("jobs.job_id", ondelete="RESTRICT"), unique=True, nullable=False
    )
    payer_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("profiles.profile_id", ondelete="RESTRICT"), nullable=False
    )
    payee_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("profiles.profile_id", ondelete="RESTRICT"), nullable=False
    )
    escrow_address: Mapped[str] = mapped_column(String(44), nullable=False)
    current_stage: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    status: Mapped[ProjectStatus] = mapped_column(
        Enum(ProjectStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=ProjectStatus.ACTIVE,
    )
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    job = relationship(Job, lazy="selectin")
    milestones = relationship(
        "Milestone", order_by="Milestone.stage_number", lazy="selectin"
    )
    staking = relationship(Staking, uselist=False, lazy="selectin")


class Milestone(Base):
    __tablename__ = "milestones"
    __table_args__ = (
        UniqueConstraint("project_id", "stage_number", name="uq_milestone_project_stage"),
    )

    milestone_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    project_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("projects.project_id", ondelete="CASCADE"), nullable=False
    )
    stage_number: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    payment_amount: Mapped[Decimal] = mapped_column(
        Numeric(18, 9), nullable=False, default=Decimal("0")
    )
    status: Mapped[MilestoneStatus] = mapped_column(
        Enum(MilestoneStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=MilestoneStatus.PENDING,
    )
    payment_released: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    # Mirrors of the escrow account's per-milestone flags; only ever flip to True.
    approved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    claimed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    submission_description: Mapped[str | None] = mapped_column(Text, nullable=True)
    submission_links: Mapped[list | None] = mapped_column(JSONList, nullable=True)
    submission_files: Mapped[list | None] = mapped_column(JSONList, nullable=True)
    submitted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    review_comments: Mapped[str | None] = mapped_column(Text, nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
