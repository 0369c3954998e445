"""
Emergency credential (QR) manager.

``generate`` snapshots the owner's identity and emergency profile fields
into a self-contained, sealed payload; later profile edits do not change
an issued credential. ``verify`` accepts the payload text a responder
scanned, checks its seal against the current credential, and counts the
scan atomically at the storage layer.
"""

from __future__ import annotations

from datetime import timedelta
import json
import logging
import time
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..audit.models import AuditAction
from ..audit.service import AuditLedger
from ..config import Settings, get_settings
from ..database import unit_of_work, utcnow
from ..errors import AuthorizationError, NotFoundError, ValidationError
from ..identity.models import Account, AccountStatus, Role
from ..identity.service import IdentityService
from ..monitoring.metrics import qr_scans_total
from ..records.models import Record
from ..records.service import RecordCatalog
from ..verification.service import VerificationService
from .models import EmergencyCredential
from .seal import check_seal, seal_payload


logger = logging.getLogger(__name__)

SIMULATED_SIGNATURE = "simulated_signature"


class EmergencyCredentialService:
    def __init__(self, db: AsyncSession, settings: Optional[Settings] = None):
        self.db = db
        self.settings = settings or get_settings()
        self.audit = AuditLedger(db)
        self.identity = IdentityService(db, self.settings)
        self.verification = VerificationService(db)

    async def _snapshot(self, account: Account) -> Dict[str, Any]:
        profile = await self.identity.get_health_profile(account.id)
        institution = account.hospital_name or await self.verification.institution_for(account.id)
        emergency_details = None
        if profile is not None:
            emergency_details = {
                "blood_type": profile.blood_type,
                "allergies": list(profile.allergies or []),
                "chronic_conditions": list(profile.chronic_conditions or []),
                "current_medications": list(profile.current_medications or []),
                "emergency_contact": profile.emergency_contact,
                "emergency_phone": profile.emergency_phone,
            }
        return {
            "username": account.username,
            "uid": account.uid,
            "wallet_address": account.wallet_address,
            "profile_picture": account.profile_picture,
            "role": account.role.value,
            "hospital_name": institution,
            "emergency_details": emergency_details,
            "timestamp": int(time.time() * 1000),
        }

    async def get_for_account(self, account_id: str) -> EmergencyCredential:
        credential = await self.db.scalar(
            select(EmergencyCredential).where(EmergencyCredential.account_id == account_id)
        )
        if not credential:
            raise NotFoundError("No emergency credential generated")
        return credential

    async def generate(
        self, account: Account, signature: Optional[str] = None
    ) -> EmergencyCredential:
        payload = await self._snapshot(account)
        payload["seal"] = seal_payload(
            payload, self.settings.qr_signing_key, self.settings.qr_ttl_hours
        )
        qr_data = json.dumps(payload, separators=(",", ":"))
        now = utcnow()
        expires_at = (
            now + timedelta(hours=self.settings.qr_ttl_hours)
            if self.settings.qr_ttl_hours
            else None
        )

        async with unit_of_work(self.db):
            credential = await self.db.scalar(
                select(EmergencyCredential).where(EmergencyCredential.account_id == account.id)
            )
            if credential is None:
                credential = EmergencyCredential(account_id=account.id)  # type: ignore[call-arg]
                self.db.add(credential)
            credential.qr_data = qr_data
            credential.signed_token = signature or SIMULATED_SIGNATURE
            credential.generated_at = now
            credential.expires_at = expires_at
            await self.db.flush()
            await self.audit.append(
                AuditAction.QR_GENERATED,
                actor_id=account.id,
                target_type="qr",
                target_id=credential.id,
            )
        logger.info("Emergency credential generated for %s", account.uid, extra={"trace_id": account.id})
        return credential

    def _parse(self, payload_text: Any) -> Tuple[Dict[str, Any], Optional[str]]:
        if not payload_text:
            raise ValidationError("QR data required")
        try:
            data = json.loads(payload_text)
        except (TypeError, ValueError) as e:
            raise ValidationError("Invalid QR data format") from e
        if not isinstance(data, dict) or not isinstance(data.get("uid"), str):
            raise ValidationError("Invalid QR data format")
        seal = data.pop("seal", None)
        return data, seal

    async def verify(self, payload_text: Any, verifier: Account) -> Dict[str, Any]:
        """Validate a scanned payload and count the scan; returns the snapshot."""
        data, seal = self._parse(payload_text)
        owner = await self.identity.get_by_uid(data["uid"])
        if not owner:
            raise NotFoundError("Patient not found")

        if self.settings.qr_require_seal:
            if not seal:
                raise ValidationError("Emergency credential is not sealed")
            check_seal(data, seal, self.settings.qr_signing_key)
            current = await self.get_for_account(owner.id)
            if json.loads(current.qr_data).get("seal") != seal:
                raise ValidationError("Emergency credential has been superseded")
            if current.expires_at and current.expires_at <= utcnow():
                raise ValidationError("Emergency credential has expired")
        else:
            logger.warning(
                "Accepting emergency credential for %s without seal check",
                owner.uid,
                extra={"trace_id": verifier.id},
            )

        async with unit_of_work(self.db):
            await self.db.execute(
                update(EmergencyCredential)
                .where(EmergencyCredential.account_id == owner.id)
                .values(scan_count=EmergencyCredential.scan_count + 1)
                .execution_options(synchronize_session=False)
            )
            await self.audit.append(
                AuditAction.QR_SCANNED,
                actor_id=verifier.id,
                target_type="qr",
                target_id=owner.id,
                metadata={"patient_uid": owner.uid, "timestamp": int(time.time() * 1000)},
            )
        qr_scans_total.inc()
        logger.info("Emergency credential for %s scanned", owner.uid, extra={"trace_id": verifier.id})
        return data

    async def scan_count(self, account_id: str) -> int:
        count = await self.db.scalar(
            select(EmergencyCredential.scan_count).where(
                EmergencyCredential.account_id == account_id
            )
        )
        return int(count or 0)

    async def scans_by(self, verifier_id: str):
        return await self.audit.query_by_actor(verifier_id, action=AuditAction.QR_SCANNED)

    async def release_emergency_records(
        self, payload_text: Any, responder: Account, catalog: RecordCatalog
    ) -> Tuple[Dict[str, Any], List[Record]]:
        """Emergency fast path: flagged records only, no consent grant needed."""
        if (
            responder.role != Role.EMERGENCY_RESPONDER
            or responder.status != AccountStatus.VERIFIED
        ):
            raise AuthorizationError("Only verified emergency responders may use this path")
        snapshot = await self.verify(payload_text, responder)
        owner = await self.identity.get_by_uid(snapshot["uid"])
        if not owner:
            raise NotFoundError("Patient not found")
        records = await catalog.emergency_records(owner.id)
        async with unit_of_work(self.db):
            await self.audit.append(
                AuditAction.EMERGENCY_RECORDS_VIEWED,
                actor_id=responder.id,
                target_type="user",
                target_id=owner.id,
                metadata={"record_ids": [r.id for r in records], "patient_uid": owner.uid},
            )
        return snapshot, records


def serialize_credential(credential: EmergencyCredential) -> Dict[str, Any]:
    return {
        "id": credential.id,
        "account_id": credential.account_id,
        "qr_data": credential.qr_data,
        "signed_token": credential.signed_token,
        "generated_at": credential.generated_at.isoformat() if credential.generated_at else None,
        "expires_at": credential.expires_at.isoformat() if credential.expires_at else None,
        "scan_count": credential.scan_count,
    }
