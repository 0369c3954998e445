from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import DateTime, ForeignKey, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from ..database import utcnow
from ..identity.models import Base, Role, enum_column


class CaseStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class VerificationCase(Base):
    __tablename__ = "kyc"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    account_id: Mapped[str] = mapped_column(ForeignKey("accounts.id"), nullable=False, index=True)
    full_name: Mapped[str] = mapped_column(String(255), nullable=False)
    date_of_birth: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    national_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    phone_number: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    address: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    # passport, national_id, drivers_license
    document_type: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    document_number: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    document_cid: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    professional_license: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    institution_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    requested_role: Mapped[Optional[Role]] = mapped_column(enum_column(Role), nullable=True)
    status: Mapped[CaseStatus] = mapped_column(
        enum_column(CaseStatus), nullable=False, default=CaseStatus.PENDING
    )
    submitted_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    reviewed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    reviewed_by: Mapped[Optional[str]] = mapped_column(ForeignKey("accounts.id"), nullable=True)
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
