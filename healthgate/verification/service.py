"""
KYC and role-application review workflow.

Cases move ``pending -> approved | rejected`` exactly once. Approving a
case verifies the owning account; it never changes the account's role.
Role elevation is the separate admin action ``grant_role`` because
identity verification and professional trust are different decisions.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Union
import logging

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..audit.models import AuditAction
from ..audit.service import AuditLedger
from ..database import unit_of_work, utcnow
from ..errors import AuthorizationError, NotFoundError, StateTransitionError, ValidationError
from ..identity.models import PROFESSIONAL_ROLES, Account, AccountStatus, Role
from ..records.service import new_content_address
from .models import CaseStatus, VerificationCase


logger = logging.getLogger(__name__)

KYC_FIELDS = (
    "full_name",
    "date_of_birth",
    "national_id",
    "phone_number",
    "address",
    "document_type",
    "document_number",
    "professional_license",
    "institution_name",
)


def _coerce_role(role: Union[Role, str, None]) -> Role:
    try:
        return Role(role)
    except ValueError as e:
        raise ValidationError(f"Unknown role: {role}") from e


class VerificationService:
    def __init__(self, db: AsyncSession):
        self.db = db
        self.audit = AuditLedger(db)

    async def submit_kyc(self, account: Account, attrs: Dict[str, Any]) -> VerificationCase:
        fields = {k: v for k, v in attrs.items() if k in KYC_FIELDS}
        if not (fields.get("full_name") or "").strip():
            raise ValidationError("full_name is required")
        async with unit_of_work(self.db):
            case = VerificationCase(  # type: ignore[call-arg]
                account_id=account.id,
                document_cid=new_content_address(),
                status=CaseStatus.PENDING,
                **fields,
            )
            self.db.add(case)
            await self.db.flush()
            await self.audit.append(
                AuditAction.KYC_SUBMITTED,
                actor_id=account.id,
                target_type="kyc",
                target_id=case.id,
            )
        return case

    async def apply_for_role(
        self, account: Account, role: Union[Role, str, None], attrs: Dict[str, Any]
    ) -> VerificationCase:
        requested = _coerce_role(role)
        if requested not in PROFESSIONAL_ROLES:
            raise ValidationError(f"Role {requested.value} cannot be applied for")
        fields = {k: v for k, v in attrs.items() if k in KYC_FIELDS}
        fields["full_name"] = fields.get("full_name") or f"{requested.value} Application"
        async with unit_of_work(self.db):
            case = VerificationCase(  # type: ignore[call-arg]
                account_id=account.id,
                requested_role=requested,
                status=CaseStatus.PENDING,
                **fields,
            )
            self.db.add(case)
            await self.db.flush()
            await self.audit.append(
                AuditAction.ROLE_APPLICATION_SUBMITTED,
                actor_id=account.id,
                target_type="user",
                target_id=account.id,
                metadata={"requested_role": requested.value, "case_id": case.id},
            )
        return case

    async def get(self, case_id: str) -> VerificationCase:
        case = await self.db.get(VerificationCase, case_id)
        if not case:
            raise NotFoundError("KYC not found")
        return case

    async def latest_for_account(self, account_id: str) -> Optional[VerificationCase]:
        return await self.db.scalar(
            select(VerificationCase)
            .where(VerificationCase.account_id == account_id)
            .order_by(VerificationCase.submitted_at.desc())
            .limit(1)
        )

    async def institution_for(self, account_id: str) -> Optional[str]:
        return await self.db.scalar(
            select(VerificationCase.institution_name)
            .where(
                VerificationCase.account_id == account_id,
                VerificationCase.institution_name.is_not(None),
                VerificationCase.institution_name != "",
            )
            .order_by(VerificationCase.submitted_at.desc())
            .limit(1)
        )

    async def pending_queue(self, role_applications_only: bool = False) -> List[VerificationCase]:
        stmt = select(VerificationCase).where(VerificationCase.status == CaseStatus.PENDING)
        if role_applications_only:
            stmt = stmt.where(VerificationCase.requested_role.is_not(None))
        stmt = stmt.order_by(VerificationCase.submitted_at.desc())
        return list((await self.db.execute(stmt)).scalars().all())

    @staticmethod
    def _require_admin(admin: Account) -> None:
        if admin.role != Role.ADMIN or admin.status == AccountStatus.SUSPENDED:
            raise AuthorizationError("Unauthorized")

    async def _review(
        self,
        case_id: str,
        admin: Account,
        outcome: CaseStatus,
        reason: Optional[str] = None,
    ) -> VerificationCase:
        self._require_admin(admin)
        case = await self.get(case_id)
        if case.status != CaseStatus.PENDING:
            raise StateTransitionError(f"KYC case already {case.status.value}")
        owner = await self.db.get(Account, case.account_id)
        if not owner:
            raise NotFoundError("User not found")
        values: Dict[str, Any] = {
            "status": outcome,
            "reviewed_by": admin.id,
            "reviewed_at": utcnow(),
        }
        metadata: Dict[str, Any] = {"kyc_user_id": case.account_id}
        if outcome == CaseStatus.APPROVED:
            if case.requested_role:
                metadata["requested_role"] = case.requested_role.value
            action = AuditAction.KYC_APPROVED
        else:
            values["rejection_reason"] = reason or "Application denied"
            metadata["reason"] = values["rejection_reason"]
            action = AuditAction.KYC_REJECTED

        async with unit_of_work(self.db):
            # Only one reviewer can move the case out of pending
            result = await self.db.execute(
                update(VerificationCase)
                .where(
                    VerificationCase.id == case.id,
                    VerificationCase.status == CaseStatus.PENDING,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise StateTransitionError("KYC case already reviewed")
            if outcome == CaseStatus.APPROVED:
                owner.status = AccountStatus.VERIFIED
            await self.audit.append(
                action,
                actor_id=admin.id,
                target_type="kyc",
                target_id=case.id,
                metadata=metadata,
            )
        await self.db.refresh(case)
        logger.info(
            "KYC case %s %s", case.id, outcome.value, extra={"trace_id": admin.id}
        )
        return case

    async def approve(self, case_id: str, admin: Account) -> VerificationCase:
        return await self._review(case_id, admin, CaseStatus.APPROVED)

    async def reject(
        self, case_id: str, admin: Account, reason: Optional[str] = None
    ) -> VerificationCase:
        return await self._review(case_id, admin, CaseStatus.REJECTED, reason)

    async def grant_role(
        self, account_id: str, role: Union[Role, str, None], admin: Account
    ) -> Account:
        self._require_admin(admin)
        new_role = _coerce_role(role)
        account = await self.db.get(Account, account_id)
        if not account:
            raise NotFoundError("User not found")
        async with unit_of_work(self.db):
            previous = account.role
            account.role = new_role
            account.status = AccountStatus.VERIFIED
            await self.audit.append(
                AuditAction.ROLE_GRANTED,
                actor_id=admin.id,
                target_type="user",
                target_id=account.id,
                metadata={
                    "user_id": account.id,
                    "new_role": new_role.value,
                    "previous_role": previous.value,
                },
            )
        logger.info(
            "Role %s granted to %s", new_role.value, account.uid, extra={"trace_id": admin.id}
        )
        return account

    async def set_status(
        self, account_id: str, status: Union[AccountStatus, str, None], admin: Account
    ) -> Account:
        self._require_admin(admin)
        try:
            new_status = AccountStatus(status)
        except ValueError as e:
            raise ValidationError(f"Unknown status: {status}") from e
        if account_id == admin.id:
            raise ValidationError("Admins cannot change their own status")
        account = await self.db.get(Account, account_id)
        if not account:
            raise NotFoundError("User not found")
        async with unit_of_work(self.db):
            previous = account.status
            account.status = new_status
            await self.audit.append(
                AuditAction.ACCOUNT_STATUS_CHANGED,
                actor_id=admin.id,
                target_type="user",
                target_id=account.id,
                metadata={"from": previous.value, "to": new_status.value},
            )
        return account


def serialize_case(case: VerificationCase) -> Dict[str, Any]:
    data: Dict[str, Any] = {f: getattr(case, f) for f in KYC_FIELDS}
    data.update(
        {
            "id": case.id,
            "account_id": case.account_id,
            "document_cid": case.document_cid,
            "requested_role": case.requested_role.value if case.requested_role else None,
            "status": case.status.value,
            "submitted_at": case.submitted_at.isoformat() if case.submitted_at else None,
            "reviewed_at": case.reviewed_at.isoformat() if case.reviewed_at else None,
            "reviewed_by": case.reviewed_by,
            "rejection_reason": case.rejection_reason,
        }
    )
    return data
