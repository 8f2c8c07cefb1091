"""Create staking and transactions tables.

Revision ID: 003
Revises: 002
Create Date: 2026-10-12
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB

revision: str = "003"
down_revision: Union[str, None] = "002"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "staking",
        sa.Column("staking_id", sa.Uuid(), primary_key=True),
        sa.Column(
            "project_id", sa.Uuid(),
            sa.ForeignKey("projects.project_id", ondelete="CASCADE"), unique=True, nullable=False,
        ),
        sa.Column("payer_wallet", sa.String(44), nullable=False),
        sa.Column("total_staked", sa.Numeric(18, 9), nullable=False, server_default="0"),
        sa.Column("total_released", sa.Numeric(18, 9), nullable=False, server_default="0"),
        sa.Column("funding_signature", sa.String(128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "transactions",
        sa.Column("transaction_id", sa.Uuid(), primary_key=True),
        sa.Column(
            "project_id", sa.Uuid(),
            sa.ForeignKey("projects.project_id", ondelete="RESTRICT"), nullable=False,
        ),
        sa.Column(
            "milestone_id", sa.Uuid(),
            sa.ForeignKey("milestones.milestone_id", ondelete="RESTRICT"), nullable=True,
        ),
        sa.Column(
            "type",
            sa.Enum("stake", "payment", "milestone_payment", "refund", name="transactiontype"),
            nullable=False,
        ),
        sa.Column(
            "status",
            sa.Enum("pending", "confirmed", name="transactionstatus"),
            nullable=False,
            server_default="confirmed",
        ),
        sa.Column("amount", sa.Numeric(18, 9), nullable=False),
        sa.Column("from_wallet", sa.String(44), nullable=True),
        sa.Column("to_wallet", sa.String(44), nullable=True),
        sa.Column("ledger_signature", sa.String(128), unique=True, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("metadata", JSONB(), nullable=True),
    )
    op.create_index("ix_transactions_project_id", "transactions", ["project_id"])


def downgrade() -> None:
    op.drop_index("ix_transactions_project_id")
    op.drop_table("transactions")
    op.drop_table("staking")
    op.execute("DROP TYPE IF EXISTS transactionstatus")
    op.execute("DROP TYPE IF EXISTS transactiontype")
