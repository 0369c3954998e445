from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import DateTime, ForeignKey, Integer, JSON, String, event
from sqlalchemy.orm import Mapped, mapped_column

from ..database import utcnow
from ..identity.models import Base, enum_column


class AuditAction(str, Enum):
    USER_REGISTERED = "user_registered"
    USER_INFO_UPDATED = "user_info_updated"
    PROFILE_UPDATED = "profile_updated"
    PROFILE_PICTURE_UPDATED = "profile_picture_updated"
    ACCOUNT_STATUS_CHANGED = "account_status_changed"

    KYC_SUBMITTED = "kyc_submitted"
    ROLE_APPLICATION_SUBMITTED = "role_application_submitted"
    KYC_APPROVED = "kyc_approved"
    KYC_REJECTED = "kyc_rejected"
    ROLE_GRANTED = "role_granted"

    ACCESS_REQUESTED = "access_requested"
    EMERGENCY_ACCESS_REQUESTED = "emergency_access_requested"
    HOSPITAL_NOTIFIED_EMERGENCY = "hospital_notified_emergency"
    ACCESS_GRANTED = "access_granted"
    ACCESS_REJECTED = "access_rejected"
    ACCESS_REVOKED = "access_revoked"
    ACCESS_EXPIRED = "access_expired"

    RECORD_ADDED = "record_added"
    RECORDS_VIEWED = "records_viewed"
    EMERGENCY_RECORDS_VIEWED = "emergency_records_viewed"

    QR_GENERATED = "qr_generated"
    QR_SCANNED = "qr_scanned"


class AuditEntry(Base):
    __tablename__ = "audit_log"

    # Integer sequence keeps insertion order stable when timestamps tie
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    actor_id: Mapped[Optional[str]] = mapped_column(ForeignKey("accounts.id"), nullable=True, index=True)
    action: Mapped[AuditAction] = mapped_column(enum_column(AuditAction), nullable=False)
    target_type: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    target_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    details: Mapped[Optional[dict]] = mapped_column("metadata", JSON, nullable=True)
    ip_address: Mapped[Optional[str]] = mapped_column(String(45), nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)


class ImmutableAuditEntry(Exception):
    pass


@event.listens_for(AuditEntry, "before_update")
def _refuse_update(mapper, connection, target):  # noqa: ARG001
    raise ImmutableAuditEntry(f"audit entry {target.id} is append-only")


@event.listens_for(AuditEntry, "before_delete")
def _refuse_delete(mapper, connection, target):  # noqa: ARG001
    raise ImmutableAuditEntry(f"audit entry {target.id} is append-only")
