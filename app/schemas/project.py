"""Pydantic v2 schemas for projects and milestone workflow endpoints."""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _enum_value(v: object) -> str:
    if hasattr(v, "value"):
        return v.value
    return str(v)


class StakingResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    payer_wallet: str
    total_staked: Decimal
    total_released: Decimal
    funding_signature: str | None


class MilestoneResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    milestone_id: uuid.UUID
    project_id: uuid.UUID
    stage_number: int
    name: str | None
    payment_amount: Decimal
    status: str
    payment_released: bool
    approved: bool
    claimed: bool
    submission_description: str | None
    submission_links: list[str] | None
    submission_files: list[str] | None
    submitted_at: datetime | None
    review_comments: str | None
    reviewed_at: datetime | None
    claimed_at: datetime | None

    @field_validator("status", mode="before")
    @classmethod
    def serialize_status(cls, v: object) -> str:
        return _enum_value(v)


class ProjectResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    project_id: uuid.UUID
    job_id: uuid.UUID
    payer_id: uuid.UUID
    payee_id: uuid.UUID
    escrow_address: str
    current_stage: int
    status: str
    started_at: datetime
    completed_at: datetime | None
    milestones: list[MilestoneResponse]
    staking: StakingResponse | None

    @field_validator("status", mode="before")
    @classmethod
    def serialize_status(cls, v: object) -> str:
        return _enum_value(v)


class SubmitMilestone(BaseModel):
    description: str = Field(..., min_length=1, max_length=10_000)
    links: list[str] = Field(default_factory=list)
    files: list[str] = Field(default_factory=list)

    @field_validator("links", mode="before")
    @classmethod
    def split_links(cls, v: object) -> object:
        """Accept one link per line as well as a list."""
        if isinstance(v, str):
            return [line.strip() for line in v.splitlines() if line.strip()]
        return v


class ReviewMilestone(BaseModel):
    action: Literal["approve", "request_revision"]
    comments: str | None = Field(None, max_length=10_000)
    tx_ref: str | None = Field(None, min_length=32, max_length=128)


class ClaimMilestone(BaseModel):
    tx_ref: str = Field(..., min_length=32, max_length=128)
