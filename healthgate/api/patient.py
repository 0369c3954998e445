"""
Patient-side surface: own records, KYC, role applications, consent
decisions and the personal audit trail.
"""

from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from ..access.models import ConsentGrant
from ..access.service import ConsentService, serialize_grant
from ..audit.service import AuditLedger, serialize_entry
from ..database import get_session
from ..errors import AuthorizationError
from ..identity.models import Account
from ..identity.service import IdentityService
from ..records.service import RecordCatalog, serialize_record
from ..verification.service import VerificationService, serialize_case
from .dependencies import get_current_account
from .models import KYCSubmission, RecordUpload, RoleApplication

patient_router = APIRouter(prefix="/patient", tags=["patient"])

AUDIT_LOG_LIMIT = 1000


async def _with_requesters(session: AsyncSession, grants: List[ConsentGrant]):
    requesters = await IdentityService(session).get_many(g.requester_id for g in grants)
    out = []
    for grant in grants:
        requester = requesters.get(grant.requester_id)
        out.append(
            serialize_grant(
                grant,
                requester_name=requester.username if requester else None,
                requester_role=requester.role.value if requester else None,
            )
        )
    return out


async def _own_grant(consent: ConsentService, grant_id: str, account: Account) -> ConsentGrant:
    grant = await consent.get(grant_id)
    if grant.patient_id != account.id:
        raise AuthorizationError("Unauthorized")
    return grant


@patient_router.get("/records")
async def list_records(
    account: Account = Depends(get_current_account),
    session: AsyncSession = Depends(get_session),
):
    records = await RecordCatalog(session).list_for_owner(account.id)
    return [serialize_record(r) for r in records]


@patient_router.post("/records")
async def upload_record(
    payload: RecordUpload,
    account: Account = Depends(get_current_account),
    session: AsyncSession = Depends(get_session),
):
    record = await RecordCatalog(session).upload(
        account,
        payload.file_data,
        payload.model_dump(exclude={"file_data"}),
    )
    return serialize_record(record)


@patient_router.get("/kyc")
async def get_kyc(
    account: Account = Depends(get_current_account),
    session: AsyncSession = Depends(get_session),
):
    case = await VerificationService(session).latest_for_account(account.id)
    return serialize_case(case) if case else None


@patient_router.post("/kyc")
async def submit_kyc(
    payload: KYCSubmission,
    account: Account = Depends(get_current_account),
    session: AsyncSession = Depends(get_session),
):
    case = await VerificationService(session).submit_kyc(
        account, payload.model_dump(exclude_none=True)
    )
    return serialize_case(case)


@patient_router.post("/apply-role")
async def apply_role(
    payload: RoleApplication,
    account: Account = Depends(get_current_account),
    session: AsyncSession = Depends(get_session),
):
    case = await VerificationService(session).apply_for_role(
        account, payload.role, payload.model_dump(exclude={"role"}, exclude_none=True)
    )
    return {"success": True, "application": serialize_case(case)}


@patient_router.get("/access-requests")
async def access_requests(
    account: Account = Depends(get_current_account),
    session: AsyncSession = Depends(get_session),
):
    grants = await ConsentService(session).list_for_patient(account.id)
    return await _with_requesters(session, grants)


@patient_router.get("/access-granted")
async def access_granted(
    account: Account = Depends(get_current_account),
    session: AsyncSession = Depends(get_session),
):
    grants = await ConsentService(session).list_granted(account.id)
    return await _with_requesters(session, grants)


@patient_router.post("/access-requests/{grant_id}/approve")
async def approve_request(
    grant_id: str,
    account: Account = Depends(get_current_account),
    session: AsyncSession = Depends(get_session),
):
    consent = ConsentService(session)
    await _own_grant(consent, grant_id, account)
    grant = await consent.approve(grant_id, actor_id=account.id)
    return serialize_grant(grant)


@patient_router.post("/access-requests/{grant_id}/reject")
async def reject_request(
    grant_id: str,
    account: Account = Depends(get_current_account),
    session: AsyncSession = Depends(get_session),
):
    consent = ConsentService(session)
    await _own_grant(consent, grant_id, account)
    grant = await consent.reject(grant_id, actor_id=account.id)
    return serialize_grant(grant)


@patient_router.post("/access/{grant_id}/revoke")
async def revoke_access(
    grant_id: str,
    account: Account = Depends(get_current_account),
    session: AsyncSession = Depends(get_session),
):
    consent = ConsentService(session)
    await _own_grant(consent, grant_id, account)
    grant = await consent.revoke(grant_id, actor_id=account.id)
    return serialize_grant(grant)


@patient_router.get("/audit-logs")
async def audit_logs(
    account: Account = Depends(get_current_account),
    session: AsyncSession = Depends(get_session),
):
    entries = await AuditLedger(session).query_by_actor(account.id, limit=AUDIT_LOG_LIMIT)
    return [serialize_entry(e) for e in entries]
