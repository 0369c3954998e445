"""
Admin surface: KYC and role-application review, role grants and account
status. Every route requires the caller to hold the ``admin`` role.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from ..database import get_session
from ..identity.models import Account
from ..identity.service import IdentityService, serialize_account
from ..verification.service import VerificationService, serialize_case
from .dependencies import require_admin
from .models import KYCRejectRequest, RoleGrantRequest, StatusChangeRequest

admin_router = APIRouter(prefix="/admin", tags=["admin"])


@admin_router.get("/kyc-queue")
async def kyc_queue(
    admin: Account = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
):
    cases = await VerificationService(session).pending_queue()
    return [serialize_case(c) for c in cases]


@admin_router.get("/role-applications")
async def role_applications(
    admin: Account = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
):
    cases = await VerificationService(session).pending_queue(role_applications_only=True)
    return [serialize_case(c) for c in cases]


@admin_router.get("/users")
async def list_users(
    admin: Account = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
):
    return [serialize_account(a) for a in await IdentityService(session).list_accounts()]


@admin_router.post("/kyc/{case_id}/approve")
async def approve_kyc(
    case_id: str,
    admin: Account = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
):
    case = await VerificationService(session).approve(case_id, admin)
    return serialize_case(case)


@admin_router.post("/kyc/{case_id}/reject")
async def reject_kyc(
    case_id: str,
    payload: KYCRejectRequest,
    admin: Account = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
):
    case = await VerificationService(session).reject(case_id, admin, payload.reason)
    return serialize_case(case)


@admin_router.post("/users/{account_id}/role")
async def grant_role(
    account_id: str,
    payload: RoleGrantRequest,
    admin: Account = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
):
    account = await VerificationService(session).grant_role(account_id, payload.role, admin)
    return serialize_account(account)


@admin_router.post("/users/{account_id}/status")
async def set_status(
    account_id: str,
    payload: StatusChangeRequest,
    admin: Account = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
):
    account = await VerificationService(session).set_status(account_id, payload.status, admin)
    return serialize_account(account)
