"""Create projects and milestones tables.

Revision ID: 002
Revises: 001
Create Date: 2026-10-12
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB

revision: str = "002"
down_revision: Union[str, None] = "001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "projects",
        sa.Column("project_id", sa.Uuid(), primary_key=True),
        sa.Column(
            "job_id", sa.Uuid(),
            sa.ForeignKey("jobs.job_id", ondelete="RESTRICT"), unique=True, nullable=False,
        ),
        sa.Column(
            "payer_id", sa.Uuid(),
            sa.ForeignKey("profiles.profile_id", ondelete="RESTRICT"), nullable=False,
        ),
        sa.Column(
            "payee_id", sa.Uuid(),
            sa.ForeignKey("profiles.profile_id", ondelete="RESTRICT"), nullable=False,
        ),
        sa.Column("escrow_address", sa.String(44), nullable=False),
        sa.Column("current_stage", sa.Integer(), nullable=False, server_default="1"),
        sa.Column(
            "status",
            sa.Enum("active", "completed", "cancelled", name="projectstatus"),
            nullable=False,
            server_default="active",
        ),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_projects_payer_id", "projects", ["payer_id"])
    op.create_index("ix_projects_payee_id", "projects", ["payee_id"])
    op.create_index("ix_projects_status", "projects", ["status"])

    op.create_table(
        "milestones",
        sa.Column("milestone_id", sa.Uuid(), primary_key=True),
        sa.Column(
            "project_id", sa.Uuid(),
            sa.ForeignKey("projects.project_id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("stage_number", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(128), nullable=True),
        sa.Column("payment_amount", sa.Numeric(18, 9), nullable=False, server_default="0"),
        sa.Column(
            "status",
            sa.Enum(
                "pending", "submitted", "revision_requested", "approved", "claimed", "completed",
                name="milestonestatus",
            ),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("payment_released", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("approved", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("claimed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("submission_description", sa.Text(), nullable=True),
        sa.Column("submission_links", JSONB(), nullable=True),
        sa.Column("submission_files", JSONB(), nullable=True),
        sa.Column("submitted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("review_comments", sa.Text(), nullable=True),
        sa.Column("reviewed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("project_id", "stage_number", name="uq_milestone_project_stage"),
    )


def downgrade() -> None:
    op.drop_table("milestones")
    op.drop_index("ix_projects_status")
    op.drop_index("ix_projects_payee_id")
    op.drop_index("ix_projects_payer_id")
    op.drop_table("projects")
    op.execute("DROP TYPE IF EXISTS milestonestatus")
    op.execute("DROP TYPE IF EXISTS projectstatus")
