"""Wallet-backed profile model."""

import enum
import uuid
from datetime import UTC, datetime

from sqlalchemy import DateTime, Enum, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base


class ProfileRole(enum.Enum):
    RECRUITER = "recruiter"
    FREELANCER = "freelancer"


class ProfileStatus(enum.Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"


class Profile(Base):
    __tablename__ = "profiles"

    profile_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    wallet_address: Mapped[str] = mapped_column(
        String(44), unique=True, nullable=False
    )
    display_name: Mapped[str] = mapped_column(String(128), nullable=False)
    role: Mapped[ProfileRole] = mapped_column(
        Enum(ProfileRole, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )
    status: Mapped[ProfileStatus] = mapped_column(
        Enum(ProfileStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=ProfileStatus.ACTIVE,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
