"""Pydantic v2 schemas for escrow endpoints."""

import uuid
from decimal import Decimal

from pydantic import BaseModel, Field

from app.schemas.project import MilestoneResponse, ProjectResponse


class EscrowVerifyRequest(BaseModel):
    job_id: uuid.UUID
    escrow_address: str = Field(..., min_length=32, max_length=44)
    tx_ref: str = Field(..., min_length=32, max_length=128)
    payee_id: uuid.UUID
    total_staked: Decimal = Field(..., gt=0, max_digits=18, decimal_places=9)


class EscrowSummary(BaseModel):
    created: bool
    job_id: uuid.UUID
    escrow_address: str
    total_staked: Decimal
    project: ProjectResponse


class EscrowStatusResponse(BaseModel):
    job_id: uuid.UUID
    project_id: uuid.UUID
    escrow_address: str
    project_status: str
    current_stage: int
    total_staked: Decimal
    total_released: Decimal
    remaining: Decimal
    milestones: list[MilestoneResponse]


class CancelEscrowRequest(BaseModel):
    tx_ref: str = Field(..., min_length=32, max_length=128)
