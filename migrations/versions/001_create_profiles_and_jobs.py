"""Create profiles, jobs and job_stages tables.

Revision ID: 001
Revises: None
Create Date: 2026-10-12
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "profiles",
        sa.Column("profile_id", sa.Uuid(), primary_key=True),
        sa.Column("wallet_address", sa.String(44), unique=True, nullable=False),
        sa.Column("display_name", sa.String(128), nullable=False),
        sa.Column(
            "role",
            sa.Enum("recruiter", "freelancer", name="profilerole"),
            nullable=False,
        ),
        sa.Column(
            "status",
            sa.Enum("active", "suspended", name="profilestatus"),
            nullable=False,
            server_default="active",
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "jobs",
        sa.Column("job_id", sa.Uuid(), primary_key=True),
        sa.Column(
            "payer_id", sa.Uuid(),
            sa.ForeignKey("profiles.profile_id", ondelete="RESTRICT"), nullable=False,
        ),
        sa.Column("title", sa.String(256), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("total_payment", sa.Numeric(18, 9), nullable=False, server_default="0"),
        sa.Column("payer_wallet", sa.String(44), nullable=True),
        sa.Column(
            "status",
            sa.Enum("open", "active", "completed", "cancelled", name="jobstatus"),
            nullable=False,
            server_default="open",
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_jobs_payer_id", "jobs", ["payer_id"])
    op.create_index("ix_jobs_status", "jobs", ["status"])

    op.create_table(
        "job_stages",
        sa.Column("stage_id", sa.Uuid(), primary_key=True),
        sa.Column(
            "job_id", sa.Uuid(),
            sa.ForeignKey("jobs.job_id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("stage_number", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(128), nullable=False),
        sa.Column("payment", sa.Numeric(18, 9), nullable=False, server_default="0"),
        sa.UniqueConstraint("job_id", "stage_number", name="uq_job_stage_number"),
    )


def downgrade() -> None:
    op.drop_table("job_stages")
    op.drop_index("ix_jobs_status")
    op.drop_index("ix_jobs_payer_id")
    op.drop_table("jobs")
    op.drop_table("profiles")
    op.execute("DROP TYPE IF EXISTS jobstatus")
    op.execute("DROP TYPE IF EXISTS profilestatus")
    op.execute("DROP TYPE IF EXISTS profilerole")
