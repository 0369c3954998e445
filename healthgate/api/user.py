"""
Account self-service: profile, health profile, avatar, emergency QR and
outgoing access requests.

Several paths are kept under both ``/user`` and ``/patient`` for older
clients; each pair is served by a single handler.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from ..access.service import ConsentService, serialize_grant
from ..database import get_session
from ..emergency.service import EmergencyCredentialService, serialize_credential
from ..identity.models import Account
from ..identity.service import IdentityService, serialize_account, serialize_health_profile
from .dependencies import get_current_account
from .models import (
    AccessRequestCreate,
    HealthProfileUpdate,
    ProfilePictureRequest,
    QRGenerateRequest,
    UserInfoUpdate,
)

user_router = APIRouter(tags=["user"])


@user_router.get("/user/me")
async def me(account: Account = Depends(get_current_account)):
    return serialize_account(account)


@user_router.put("/user/info")
async def update_info(
    payload: UserInfoUpdate,
    account: Account = Depends(get_current_account),
    session: AsyncSession = Depends(get_session),
):
    kwargs = {"username": payload.username}
    if "hospital_name" in payload.model_fields_set:
        kwargs["hospital_name"] = payload.hospital_name
    updated = await IdentityService(session).update_info(account, **kwargs)
    return serialize_account(updated)


@user_router.get("/user/health-profile")
@user_router.get("/patient/profile")
async def get_health_profile(
    account: Account = Depends(get_current_account),
    session: AsyncSession = Depends(get_session),
):
    profile = await IdentityService(session).get_health_profile(account.id)
    return serialize_health_profile(profile) if profile else None


@user_router.put("/user/health-profile")
@user_router.put("/patient/profile")
async def put_health_profile(
    payload: HealthProfileUpdate,
    account: Account = Depends(get_current_account),
    session: AsyncSession = Depends(get_session),
):
    profile = await IdentityService(session).upsert_health_profile(
        account, payload.model_dump(exclude_unset=True)
    )
    return serialize_health_profile(profile)


@user_router.post("/user/profile-picture")
@user_router.post("/patient/profile-picture")
async def set_profile_picture(
    payload: ProfilePictureRequest,
    account: Account = Depends(get_current_account),
    session: AsyncSession = Depends(get_session),
):
    updated = await IdentityService(session).set_profile_picture(
        account, payload.profile_picture
    )
    return {"success": True, "profile_picture": updated.profile_picture}


@user_router.get("/user/qr")
@user_router.get("/patient/qr")
async def get_qr(
    account: Account = Depends(get_current_account),
    session: AsyncSession = Depends(get_session),
):
    credential = await EmergencyCredentialService(session).get_for_account(account.id)
    return serialize_credential(credential)


@user_router.post("/user/qr")
@user_router.post("/patient/qr")
async def generate_qr(
    payload: QRGenerateRequest,
    account: Account = Depends(get_current_account),
    session: AsyncSession = Depends(get_session),
):
    credential = await EmergencyCredentialService(session).generate(account, payload.signature)
    return serialize_credential(credential)


@user_router.post("/user/request-access")
@user_router.post("/doctor/request-access")
async def request_access(
    payload: AccessRequestCreate,
    account: Account = Depends(get_current_account),
    session: AsyncSession = Depends(get_session),
):
    grant = await ConsentService(session).request_access(
        account,
        payload.patient_id,
        scope=payload.access_type,
        justification=payload.reason,
        is_emergency=payload.is_emergency,
        proof_image=payload.proof_image,
        proof_details=payload.proof_details,
        record_id=payload.record_id,
    )
    return serialize_grant(grant)
