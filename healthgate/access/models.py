from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import Boolean, DateTime, ForeignKey, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from ..database import utcnow
from ..identity.models import Base, enum_column


class AccessScope(str, Enum):
    FULL = "full"
    EMERGENCY_ONLY = "emergency_only"
    SPECIFIC_RECORD = "specific_record"


class GrantStatus(str, Enum):
    PENDING = "pending"
    GRANTED = "granted"
    REJECTED = "rejected"
    REVOKED = "revoked"
    EXPIRED = "expired"


# Allowed lifecycle moves; everything else is terminal
TRANSITIONS = {
    GrantStatus.PENDING: frozenset({GrantStatus.GRANTED, GrantStatus.REJECTED}),
    GrantStatus.GRANTED: frozenset({GrantStatus.REVOKED, GrantStatus.EXPIRED}),
    GrantStatus.REJECTED: frozenset(),
    GrantStatus.REVOKED: frozenset(),
    GrantStatus.EXPIRED: frozenset(),
}


class ConsentGrant(Base):
    __tablename__ = "access_control"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    patient_id: Mapped[str] = mapped_column(ForeignKey("accounts.id"), nullable=False, index=True)
    requester_id: Mapped[str] = mapped_column(ForeignKey("accounts.id"), nullable=False, index=True)
    record_id: Mapped[Optional[str]] = mapped_column(ForeignKey("medical_records.id"), nullable=True)
    scope: Mapped[AccessScope] = mapped_column(enum_column(AccessScope), nullable=False)
    status: Mapped[GrantStatus] = mapped_column(
        enum_column(GrantStatus), nullable=False, default=GrantStatus.PENDING
    )
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_emergency: Mapped[bool] = mapped_column(Boolean, default=False)
    proof_image: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    proof_details: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    hospital_notified: Mapped[bool] = mapped_column(Boolean, default=False)
    requested_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    responded_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
