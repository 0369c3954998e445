from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from ..audit.service import serialize_entry
from ..database import get_session
from ..emergency.service import EmergencyCredentialService
from ..identity.models import Account
from ..records.service import RecordCatalog, serialize_record
from .dependencies import get_current_account
from .models import QRVerifyRequest

emergency_router = APIRouter(prefix="/emergency", tags=["emergency"])


@emergency_router.post("/verify-qr")
async def verify_qr(
    payload: QRVerifyRequest,
    account: Account = Depends(get_current_account),
    session: AsyncSession = Depends(get_session),
):
    data = await EmergencyCredentialService(session).verify(payload.qr_data, account)
    return {"success": True, "patient": data}


@emergency_router.get("/scans")
async def scans(
    account: Account = Depends(get_current_account),
    session: AsyncSession = Depends(get_session),
):
    entries = await EmergencyCredentialService(session).scans_by(account.id)
    return [serialize_entry(e) for e in entries]


@emergency_router.post("/records")
async def emergency_records(
    payload: QRVerifyRequest,
    account: Account = Depends(get_current_account),
    session: AsyncSession = Depends(get_session),
):
    catalog = RecordCatalog(session)
    snapshot, records = await EmergencyCredentialService(session).release_emergency_records(
        payload.qr_data, account, catalog
    )
    return {
        "patient": snapshot,
        "records": [serialize_record(r, catalog.read_content(r)) for r in records],
    }
