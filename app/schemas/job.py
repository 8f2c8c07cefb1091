"""Pydantic v2 schemas for job-level settlement endpoints."""

import uuid
from decimal import Decimal
from typing import Any, Literal

from pydantic import BaseModel


class SyncResponse(BaseModel):
    status: Literal["synced", "outdated"]
    message: str
    project_id: uuid.UUID | None = None
    updates_applied: dict[str, Any] = {}


class FixPaymentsResponse(BaseModel):
    status: Literal["fixed", "already_correct", "nothing_to_distribute"]
    total: Decimal
    amounts: list[Decimal]
