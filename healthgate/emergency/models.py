from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from ..database import utcnow
from ..identity.models import Base


class EmergencyCredential(Base):
    __tablename__ = "emergency_qr_codes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    # One live credential per account; regeneration overwrites in place
    account_id: Mapped[str] = mapped_column(ForeignKey("accounts.id"), unique=True, nullable=False)
    qr_data: Mapped[str] = mapped_column(Text, nullable=False)
    signed_token: Mapped[str] = mapped_column(Text, nullable=False)
    generated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    scan_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
