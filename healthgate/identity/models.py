from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import List, Optional

from sqlalchemy import (
    String,
    Boolean,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    JSON,
    Numeric,
    Text,
)
from sqlalchemy.orm import declarative_base, Mapped, mapped_column

from ..database import utcnow


Base = declarative_base()


def enum_column(enum_cls: type[Enum]) -> SAEnum:
    """Store a str Enum by value in a VARCHAR column with a CHECK constraint."""
    return SAEnum(
        enum_cls,
        native_enum=False,
        length=32,
        values_callable=lambda e: [m.value for m in e],
        validate_strings=True,
    )


class Role(str, Enum):
    PATIENT = "patient"
    DOCTOR = "doctor"
    HOSPITAL = "hospital"
    EMERGENCY_RESPONDER = "emergency_responder"
    INSURANCE_PROVIDER = "insurance_provider"
    ADMIN = "admin"


# Roles an account may apply for through the verification workflow
PROFESSIONAL_ROLES = frozenset(
    {
        Role.DOCTOR,
        Role.HOSPITAL,
        Role.EMERGENCY_RESPONDER,
        Role.INSURANCE_PROVIDER,
    }
)


class AccountStatus(str, Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    SUSPENDED = "suspended"


class Account(Base):
    __tablename__ = "accounts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    wallet_address: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    uid: Mapped[str] = mapped_column(String(32), unique=True, nullable=False, index=True)
    username: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    role: Mapped[Role] = mapped_column(enum_column(Role), nullable=False, default=Role.PATIENT)
    status: Mapped[AccountStatus] = mapped_column(
        enum_column(AccountStatus), nullable=False, default=AccountStatus.PENDING
    )
    hospital_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    profile_picture: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class HealthProfile(Base):
    __tablename__ = "health_profiles"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    account_id: Mapped[str] = mapped_column(ForeignKey("accounts.id"), unique=True, nullable=False)
    blood_type: Mapped[Optional[str]] = mapped_column(String(8), nullable=True)
    allergies: Mapped[List[str]] = mapped_column(JSON, default=list)
    chronic_conditions: Mapped[List[str]] = mapped_column(JSON, default=list)
    current_medications: Mapped[List[str]] = mapped_column(JSON, default=list)
    emergency_contact: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    emergency_phone: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    height_cm: Mapped[Optional[float]] = mapped_column(Numeric(6, 2, asdecimal=False), nullable=True)
    weight_kg: Mapped[Optional[float]] = mapped_column(Numeric(6, 2, asdecimal=False), nullable=True)
    organ_donor: Mapped[bool] = mapped_column(Boolean, default=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
