"""
Requester-side surface used by doctors, hospitals and other professionals:
patient lookup, outgoing requests and consent-gated record reads.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from ..access.service import ConsentService, serialize_grant
from ..database import get_session
from ..identity.models import Account
from ..identity.service import IdentityService
from ..records.service import RecordCatalog, serialize_record
from .dependencies import REQUESTER_ROLES, get_current_account, require_role

requester_router = APIRouter(tags=["requester"])


@requester_router.get("/doctor/search")
@requester_router.get("/hospital/search-patient")
async def search_patient(
    query: str = Query(default=""),
    account: Account = Depends(require_role(*REQUESTER_ROLES)),
    session: AsyncSession = Depends(get_session),
):
    patient = await IdentityService(session).find(query.strip())
    records = await RecordCatalog(session).list_for_owner(patient.id)
    has_access = await ConsentService(session).check_access(patient.id, account.id)
    return {
        "id": patient.id,
        "username": patient.username,
        "uid": patient.uid,
        "status": patient.status.value,
        "record_count": len(records),
        "has_access": has_access,
    }


@requester_router.get("/doctor/access-requests")
async def outgoing_requests(
    account: Account = Depends(get_current_account),
    session: AsyncSession = Depends(get_session),
):
    grants = await ConsentService(session).list_for_requester(account.id)
    patients = await IdentityService(session).get_many(g.patient_id for g in grants)
    out = []
    for grant in grants:
        patient = patients.get(grant.patient_id)
        out.append(
            serialize_grant(
                grant,
                patient_uid=patient.uid if patient else None,
                patient_username=patient.username if patient else None,
            )
        )
    return out


@requester_router.get("/records/patients/{patient_id}")
async def patient_records(
    patient_id: str,
    account: Account = Depends(get_current_account),
    session: AsyncSession = Depends(get_session),
):
    catalog = RecordCatalog(session)
    records = await catalog.release_to(account, patient_id, ConsentService(session))
    return [serialize_record(r, catalog.read_content(r)) for r in records]
