"""
Append-only audit ledger.

Every state-changing operation in the other services appends its entry
through ``AuditLedger.append`` on the same session, inside the same
``unit_of_work``, so the primary change and its audit record commit or
roll back together. ``append`` never commits on its own.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Union
import json
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import ValidationError
from ..monitoring.metrics import audit_entries_total
from .models import AuditAction, AuditEntry


logger = logging.getLogger(__name__)


class AuditLedger:
    # Keys whose values never reach the log line (the row keeps them)
    SENSITIVE_KEYS = {
        "wallet_address",
        "walletaddress",
        "reason",
        "proof_details",
        "proof_image",
        "hospital_name",
        "phone",
        "emergency_phone",
        "national_id",
        "date_of_birth",
        "address",
        "diagnosis",
    }

    def __init__(self, db: AsyncSession):
        self.db = db

    @classmethod
    def _sanitize(cls, data: Any) -> Any:
        """Recursively redact sensitive values for the structured log line."""
        if isinstance(data, dict):
            out: Dict[str, Any] = {}
            for k, v in data.items():
                if str(k).lower() in cls.SENSITIVE_KEYS:
                    out[k] = "[REDACTED]"
                else:
                    out[k] = cls._sanitize(v)
            return out
        if isinstance(data, list):
            return [cls._sanitize(x) for x in data[:50]]
        if isinstance(data, (str, int, float, bool)) or data is None:
            return data
        return str(data)

    @staticmethod
    def _coerce_action(action: Union[AuditAction, str, None]) -> AuditAction:
        if isinstance(action, AuditAction):
            return action
        if not action:
            raise ValidationError("Audit action tag is required")
        try:
            return AuditAction(str(action))
        except ValueError as e:
            raise ValidationError(f"Unknown audit action: {action}") from e

    async def append(
        self,
        action: Union[AuditAction, str],
        *,
        actor_id: Optional[str] = None,
        target_type: Optional[str] = None,
        target_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
    ) -> AuditEntry:
        tag = self._coerce_action(action)
        entry = AuditEntry(
            actor_id=actor_id,
            action=tag,
            target_type=target_type,
            target_id=target_id,
            details=metadata,
            ip_address=ip_address,
        )
        self.db.add(entry)
        await self.db.flush()

        payload = {
            "id": entry.id,
            "action": tag.value,
            "actor_id": actor_id,
            "target_type": target_type,
            "target_id": target_id,
            "details": self._sanitize(metadata or {}),
            "ts": entry.timestamp.isoformat() if entry.timestamp else None,
        }
        logger.info(
            "audit_event=%s",
            json.dumps(payload, separators=(",", ":"), default=str),
            extra={"trace_id": actor_id or "system"},
        )
        audit_entries_total.labels(action=tag.value).inc()
        return entry

    async def query_by_actor(
        self,
        account_id: str,
        action: Optional[AuditAction] = None,
        limit: Optional[int] = None,
    ) -> List[AuditEntry]:
        """Entries written by one account, newest first."""
        stmt = select(AuditEntry).where(AuditEntry.actor_id == account_id)
        if action is not None:
            stmt = stmt.where(AuditEntry.action == action)
        stmt = stmt.order_by(AuditEntry.timestamp.desc(), AuditEntry.id.desc())
        if limit is not None:
            stmt = stmt.limit(limit)
        return list((await self.db.execute(stmt)).scalars().all())

    async def query_by_target(self, target_type: str, target_id: str) -> List[AuditEntry]:
        stmt = (
            select(AuditEntry)
            .where(AuditEntry.target_type == target_type, AuditEntry.target_id == target_id)
            .order_by(AuditEntry.timestamp.desc(), AuditEntry.id.desc())
        )
        return list((await self.db.execute(stmt)).scalars().all())

    async def query_recent(self, limit: int = 1000) -> List[AuditEntry]:
        """Global tail of the ledger, newest first."""
        stmt = (
            select(AuditEntry)
            .order_by(AuditEntry.timestamp.desc(), AuditEntry.id.desc())
            .limit(limit)
        )
        return list((await self.db.execute(stmt)).scalars().all())


def serialize_entry(entry: AuditEntry) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "actor_id": entry.actor_id,
        "action": entry.action.value,
        "target_type": entry.target_type,
        "target_id": entry.target_id,
        "metadata": entry.details,
        "timestamp": entry.timestamp.isoformat() if entry.timestamp else None,
    }
