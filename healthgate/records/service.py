"""
Record catalog: ties uploaded documents to their owner and emergency flag.

Content itself is opaque here. The catalog hashes it for integrity,
assigns a content address, and optionally encrypts it at rest with
Fernet. Access decisions are delegated to ``ConsentService``; the only
path that bypasses consent is the emergency fast path, which is limited
to records flagged ``is_emergency``.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional
import hashlib
import hmac
import logging
import secrets

from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..access.models import AccessScope
from ..access.service import ConsentService
from ..audit.models import AuditAction
from ..audit.service import AuditLedger
from ..config import Settings, get_settings
from ..database import unit_of_work
from ..errors import AuthorizationError, NotFoundError, StorageError, ValidationError
from ..identity.models import Account
from .models import Record


logger = logging.getLogger(__name__)


def content_hash(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def new_content_address() -> str:
    return f"Qm{secrets.token_hex(16)}"


class RecordCatalog:
    def __init__(self, db: AsyncSession, settings: Optional[Settings] = None):
        self.db = db
        self.settings = settings or get_settings()
        self.audit = AuditLedger(db)
        key = self.settings.record_encryption_key
        self._cipher: Optional[Fernet] = Fernet(key.encode()) if key else None

    def _protect(self, content: str) -> str:
        if not self._cipher:
            return content
        return self._cipher.encrypt(content.encode("utf-8")).decode("utf-8")

    def read_content(self, record: Record) -> Optional[str]:
        if record.file_data is None:
            return None
        if not record.is_encrypted:
            return record.file_data
        if not self._cipher:
            raise StorageError("Record is encrypted but no RECORD_ENC_KEY is configured")
        try:
            return self._cipher.decrypt(record.file_data.encode("utf-8")).decode("utf-8")
        except InvalidToken as e:
            raise StorageError("Record content could not be decrypted") from e

    def verify_integrity(self, record: Record) -> bool:
        content = self.read_content(record)
        if content is None:
            return False
        return hmac.compare_digest(content_hash(content), record.content_hash)

    async def upload(
        self,
        owner: Account,
        content: Optional[str],
        metadata: Dict[str, Any],
        uploader: Optional[Account] = None,
    ) -> Record:
        if not content or not isinstance(content, str):
            raise ValidationError("Record content is required")
        title = (metadata.get("title") or "").strip()
        record_type = (metadata.get("record_type") or "").strip()
        if not title or not record_type:
            raise ValidationError("title and record_type are required")

        uploader = uploader or owner
        async with unit_of_work(self.db):
            record = Record(  # type: ignore[call-arg]
                owner_id=owner.id,
                uploaded_by=uploader.id,
                title=title,
                description=metadata.get("description"),
                record_type=record_type,
                content_address=new_content_address(),
                content_hash=content_hash(content),
                file_name=metadata.get("file_name"),
                file_type=metadata.get("file_type"),
                file_data=self._protect(content),
                is_encrypted=self._cipher is not None,
                is_emergency=bool(metadata.get("is_emergency", False)),
            )
            self.db.add(record)
            await self.db.flush()
            await self.audit.append(
                AuditAction.RECORD_ADDED,
                actor_id=uploader.id,
                target_type="record",
                target_id=record.id,
                metadata={
                    "owner_id": owner.id,
                    "record_type": record_type,
                    "is_emergency": record.is_emergency,
                },
            )
        logger.info(
            "Record %s added (%s, emergency=%s)",
            record.id,
            record_type,
            record.is_emergency,
            extra={"trace_id": uploader.id},
        )
        return record

    async def get(self, record_id: str) -> Record:
        record = await self.db.get(Record, record_id)
        if not record:
            raise NotFoundError("Record not found")
        return record

    async def list_for_owner(self, owner_id: str) -> List[Record]:
        stmt = (
            select(Record)
            .where(Record.owner_id == owner_id)
            .order_by(Record.uploaded_at.desc())
        )
        return list((await self.db.execute(stmt)).scalars().all())

    async def emergency_records(self, owner_id: str) -> List[Record]:
        return [r for r in await self.list_for_owner(owner_id) if r.is_emergency]

    async def release_to(
        self, requester: Account, patient_id: str, consent: ConsentService
    ) -> List[Record]:
        """Records of ``patient_id`` the requester may read under consent.

        Owners always see their own records. Anyone else needs a granted
        entry; the union of their granted scopes decides which records
        are released.
        """
        if requester.id == patient_id:
            return await self.list_for_owner(patient_id)
        if await self.db.get(Account, patient_id) is None:
            raise NotFoundError("Patient not found")
        if not await consent.check_access(patient_id, requester.id):
            raise AuthorizationError("No granted access to this patient's records")

        grants = await consent.active_grants(patient_id, requester.id)
        scopes = {g.scope for g in grants}
        linked = {g.record_id for g in grants if g.scope == AccessScope.SPECIFIC_RECORD}
        released = []
        for record in await self.list_for_owner(patient_id):
            if AccessScope.FULL in scopes:
                released.append(record)
            elif AccessScope.EMERGENCY_ONLY in scopes and record.is_emergency:
                released.append(record)
            elif record.id in linked:
                released.append(record)

        async with unit_of_work(self.db):
            await self.audit.append(
                AuditAction.RECORDS_VIEWED,
                actor_id=requester.id,
                target_type="user",
                target_id=patient_id,
                metadata={
                    "record_ids": [r.id for r in released],
                    "scopes": sorted(s.value for s in scopes),
                },
            )
        return released


def serialize_record(record: Record, content: Optional[str] = None) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        "id": record.id,
        "owner_id": record.owner_id,
        "uploaded_by": record.uploaded_by,
        "title": record.title,
        "description": record.description,
        "record_type": record.record_type,
        "file_cid": record.content_address,
        "file_hash": record.content_hash,
        "file_name": record.file_name,
        "file_type": record.file_type,
        "is_emergency": record.is_emergency,
        "uploaded_at": record.uploaded_at.isoformat() if record.uploaded_at else None,
    }
    if content is not None:
        data["file_data"] = content
    return data
