"""
Consent/access store: the requester-to-patient grant state machine.

Lifecycle::

    pending --approve--> granted --revoke--> revoked
       \\--reject--> rejected     \\--(expires_at passed)--> expired

``rejected``, ``revoked`` and ``expired`` are terminal; regaining access
needs a new request. Emergency requests are never auto-granted: the flag
only changes routing (hospital notification) and attached evidence.

Callers are responsible for checking that the acting account may perform
a transition (the patient approves/rejects/revokes); this service records
whatever it is asked to do once invoked.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Any, Dict, List, Optional, Union
import json
import logging

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..audit.models import AuditAction
from ..audit.service import AuditLedger
from ..config import Settings, get_settings
from ..database import unit_of_work, utcnow
from ..errors import NotFoundError, StateTransitionError, ValidationError
from ..identity.models import Account
from ..monitoring.metrics import access_decisions_total
from ..records.models import Record
from .models import TRANSITIONS, AccessScope, ConsentGrant, GrantStatus


logger = logging.getLogger(__name__)


class ConsentService:
    def __init__(self, db: AsyncSession, settings: Optional[Settings] = None):
        self.db = db
        self.settings = settings or get_settings()
        self.audit = AuditLedger(db)

    @staticmethod
    def _coerce_scope(scope: Union[AccessScope, str, None], is_emergency: bool) -> AccessScope:
        if scope is None or scope == "":
            return AccessScope.EMERGENCY_ONLY if is_emergency else AccessScope.FULL
        try:
            return AccessScope(scope)
        except ValueError as e:
            raise ValidationError(f"Unknown access scope: {scope}") from e

    async def request_access(
        self,
        requester: Account,
        patient_id: str,
        scope: Union[AccessScope, str, None] = None,
        justification: Optional[str] = None,
        is_emergency: bool = False,
        proof_image: Optional[str] = None,
        proof_details: Optional[str] = None,
        record_id: Optional[str] = None,
    ) -> ConsentGrant:
        if not patient_id:
            raise ValidationError("patient_id is required")
        patient = await self.db.get(Account, patient_id)
        if not patient:
            raise NotFoundError("Patient not found")
        if patient.id == requester.id:
            raise ValidationError("Cannot request access to your own records")

        resolved_scope = self._coerce_scope(scope, is_emergency)
        if resolved_scope == AccessScope.SPECIFIC_RECORD:
            if not record_id:
                raise ValidationError("record_id is required for specific_record access")
            record = await self.db.get(Record, record_id)
            if not record or record.owner_id != patient.id:
                raise NotFoundError("Record not found")
        elif record_id:
            raise ValidationError("record_id is only valid with specific_record access")

        is_emergency = bool(is_emergency)
        notify_hospital = is_emergency and bool(patient.hospital_name)

        async with unit_of_work(self.db):
            grant = ConsentGrant(  # type: ignore[call-arg]
                patient_id=patient.id,
                requester_id=requester.id,
                record_id=record_id,
                scope=resolved_scope,
                status=GrantStatus.PENDING,
                reason=justification,
                is_emergency=is_emergency,
                proof_image=proof_image or None,
                proof_details=proof_details or None,
                hospital_notified=notify_hospital,
            )
            self.db.add(grant)
            await self.db.flush()
            await self.audit.append(
                AuditAction.EMERGENCY_ACCESS_REQUESTED
                if is_emergency
                else AuditAction.ACCESS_REQUESTED,
                actor_id=requester.id,
                target_type="access",
                target_id=grant.id,
                metadata={
                    "patient_id": patient.id,
                    "scope": resolved_scope.value,
                    "reason": justification,
                    "is_emergency": is_emergency,
                    "hospital_notified": notify_hospital,
                },
            )
            if notify_hospital:
                # Durable signal for downstream notification delivery
                await self.audit.append(
                    AuditAction.HOSPITAL_NOTIFIED_EMERGENCY,
                    target_type="access",
                    target_id=grant.id,
                    metadata={
                        "patient_id": patient.id,
                        "requester_id": requester.id,
                        "hospital_name": patient.hospital_name,
                    },
                )

        logger.info(
            "Access requested grant=%s scope=%s emergency=%s",
            grant.id,
            resolved_scope.value,
            is_emergency,
            extra={"trace_id": requester.id},
        )
        return grant

    async def get(self, grant_id: str) -> ConsentGrant:
        grant = await self.db.get(ConsentGrant, grant_id)
        if not grant:
            raise NotFoundError("Access request not found")
        return grant

    async def _transition(
        self,
        grant_id: str,
        target: GrantStatus,
        action: AuditAction,
        actor_id: Optional[str],
    ) -> ConsentGrant:
        grant = await self.get(grant_id)
        # An overdue grant is expired first so it cannot be revoked as granted
        await self.expire_overdue(patient_id=grant.patient_id, requester_id=grant.requester_id)
        previous = grant.status
        if target not in TRANSITIONS[previous]:
            raise StateTransitionError(
                f"Cannot move access request from {previous.value} to {target.value}"
            )

        now = utcnow()
        values: Dict[str, Any] = {"status": target, "responded_at": now}
        if target == GrantStatus.GRANTED and self.settings.access_grant_ttl_hours:
            values["expires_at"] = now + timedelta(hours=self.settings.access_grant_ttl_hours)

        async with unit_of_work(self.db):
            # Compare-and-set on the stored status; a concurrent decision wins exactly once
            result = await self.db.execute(
                update(ConsentGrant)
                .where(ConsentGrant.id == grant.id, ConsentGrant.status == previous)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise StateTransitionError(
                    f"Access request {grant.id} is no longer {previous.value}"
                )
            await self.audit.append(
                action,
                actor_id=actor_id,
                target_type="access",
                target_id=grant.id,
                metadata={
                    "patient_id": grant.patient_id,
                    "requester_id": grant.requester_id,
                    "from": previous.value,
                },
            )
        await self.db.refresh(grant)
        logger.info(
            "Access request %s: %s -> %s",
            grant.id,
            previous.value,
            target.value,
            extra={"trace_id": actor_id or "system"},
        )
        return grant

    async def approve(self, grant_id: str, actor_id: Optional[str] = None) -> ConsentGrant:
        return await self._transition(
            grant_id, GrantStatus.GRANTED, AuditAction.ACCESS_GRANTED, actor_id
        )

    async def reject(self, grant_id: str, actor_id: Optional[str] = None) -> ConsentGrant:
        return await self._transition(
            grant_id, GrantStatus.REJECTED, AuditAction.ACCESS_REJECTED, actor_id
        )

    async def revoke(self, grant_id: str, actor_id: Optional[str] = None) -> ConsentGrant:
        return await self._transition(
            grant_id, GrantStatus.REVOKED, AuditAction.ACCESS_REVOKED, actor_id
        )

    async def expire_overdue(
        self, patient_id: Optional[str] = None, requester_id: Optional[str] = None
    ) -> int:
        """Move granted entries whose expiry has passed to ``expired``.

        Runs at read time; there is no background sweep.
        """
        stmt = select(ConsentGrant).where(
            ConsentGrant.status == GrantStatus.GRANTED,
            ConsentGrant.expires_at.is_not(None),
            ConsentGrant.expires_at <= utcnow(),
        )
        if patient_id:
            stmt = stmt.where(ConsentGrant.patient_id == patient_id)
        if requester_id:
            stmt = stmt.where(ConsentGrant.requester_id == requester_id)
        overdue = list((await self.db.execute(stmt)).scalars().all())
        if not overdue:
            return 0
        expired = []
        async with unit_of_work(self.db):
            for grant in overdue:
                result = await self.db.execute(
                    update(ConsentGrant)
                    .where(
                        ConsentGrant.id == grant.id,
                        ConsentGrant.status == GrantStatus.GRANTED,
                    )
                    .values(status=GrantStatus.EXPIRED)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    continue
                expired.append(grant)
                await self.audit.append(
                    AuditAction.ACCESS_EXPIRED,
                    target_type="access",
                    target_id=grant.id,
                    metadata={
                        "patient_id": grant.patient_id,
                        "requester_id": grant.requester_id,
                        "expired_at": grant.expires_at.isoformat() if grant.expires_at else None,
                    },
                )
        for grant in overdue:
            await self.db.refresh(grant)
        if expired:
            logger.info("Expired %d access grant(s)", len(expired))
        return len(expired)

    async def active_grants(self, patient_id: str, requester_id: str) -> List[ConsentGrant]:
        """All currently granted entries for the pair (duplicates tolerated)."""
        await self.expire_overdue(patient_id=patient_id, requester_id=requester_id)
        stmt = select(ConsentGrant).where(
            ConsentGrant.patient_id == patient_id,
            ConsentGrant.requester_id == requester_id,
            ConsentGrant.status == GrantStatus.GRANTED,
        )
        return list((await self.db.execute(stmt)).scalars().all())

    async def check_access(self, patient_id: str, requester_id: str) -> bool:
        """Authoritative gate: true iff a granted entry exists for the pair."""
        allowed = bool(await self.active_grants(patient_id, requester_id))
        decision = "allow" if allowed else "deny"
        access_decisions_total.labels(decision=decision).inc()
        logger.info(
            "access_decision=%s",
            json.dumps(
                {"patient_id": patient_id, "requester_id": requester_id, "decision": decision},
                separators=(",", ":"),
            ),
            extra={"trace_id": requester_id},
        )
        return allowed

    async def list_for_patient(self, patient_id: str) -> List[ConsentGrant]:
        await self.expire_overdue(patient_id=patient_id)
        stmt = (
            select(ConsentGrant)
            .where(ConsentGrant.patient_id == patient_id)
            .order_by(ConsentGrant.requested_at.desc())
        )
        return list((await self.db.execute(stmt)).scalars().all())

    async def list_for_requester(self, requester_id: str) -> List[ConsentGrant]:
        await self.expire_overdue(requester_id=requester_id)
        stmt = (
            select(ConsentGrant)
            .where(ConsentGrant.requester_id == requester_id)
            .order_by(ConsentGrant.requested_at.desc())
        )
        return list((await self.db.execute(stmt)).scalars().all())

    async def list_granted(self, patient_id: str) -> List[ConsentGrant]:
        await self.expire_overdue(patient_id=patient_id)
        stmt = (
            select(ConsentGrant)
            .where(
                ConsentGrant.patient_id == patient_id,
                ConsentGrant.status == GrantStatus.GRANTED,
            )
            .order_by(ConsentGrant.responded_at.desc())
        )
        return list((await self.db.execute(stmt)).scalars().all())


def serialize_grant(grant: ConsentGrant, **extra: Any) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        "id": grant.id,
        "patient_id": grant.patient_id,
        "requester_id": grant.requester_id,
        "record_id": grant.record_id,
        "access_type": grant.scope.value,
        "status": grant.status.value,
        "reason": grant.reason,
        "is_emergency": grant.is_emergency,
        "proof_image": grant.proof_image,
        "proof_details": grant.proof_details,
        "hospital_notified": grant.hospital_notified,
        "requested_at": grant.requested_at.isoformat() if grant.requested_at else None,
        "responded_at": grant.responded_at.isoformat() if grant.responded_at else None,
        "expires_at": grant.expires_at.isoformat() if grant.expires_at else None,
    }
    data.update(extra)
    return data
