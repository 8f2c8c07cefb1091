"""Staking totals and the escrow transaction log."""

import enum
import uuid
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import JSON, DateTime, Enum, ForeignKey, Numeric, String, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base


class TransactionType(enum.Enum):
    STAKE = "stake"
    PAYMENT = "payment"
    MILESTONE_PAYMENT = "milestone_payment"
    REFUND = "refund"


class TransactionStatus(enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"


class Staking(Base):
    __tablename__ = "staking"

    staking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    project_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("projects.project_id", ondelete="CASCADE"), unique=True, nullable=False
    )
    payer_wallet: Mapped[str] = mapped_column(String(44), nullable=False)
    total_staked: Mapped[Decimal] = mapped_column(
        Numeric(18, 9), nullable=False, default=Decimal("0")
    )
    total_released: Mapped[Decimal] = mapped_column(
        Numeric(18, 9), nullable=False, default=Decimal("0")
    )
    funding_signature: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )


class EscrowTransaction(Base):
    """Append-only audit log. Never update or delete rows.

    ``ledger_signature`` is unique when present; mirror-only entries (an
    off-chain approval recorded before its ledger confirmation) leave it NULL.
    """
    __tablename__ = "transactions"

    transaction_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    project_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("projects.project_id", ondelete="RESTRICT"), nullable=False
    )
    milestone_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("milestones.milestone_id", ondelete="RESTRICT"), nullable=True
    )
    type: Mapped[TransactionType] = mapped_column(
        Enum(TransactionType, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )
    status: Mapped[TransactionStatus] = mapped_column(
        Enum(TransactionStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=TransactionStatus.CONFIRMED,
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 9), nullable=False)
    from_wallet: Mapped[str | None] = mapped_column(String(44), nullable=True)
    to_wallet: Mapped[str | None] = mapped_column(String(44), nullable=True)
    ledger_signature: Mapped[str | None] = mapped_column(
        String(128), unique=True, nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    metadata_: Mapped[dict | None] = mapped_column(
        "metadata", JSON().with_variant(JSONB(), "postgresql"), nullable=True
    )
