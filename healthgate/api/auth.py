from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from ..database import get_session
from ..identity.service import IdentityService
from .models import ConnectRequest

logger = logging.getLogger(__name__)

auth_router = APIRouter(prefix="/auth", tags=["auth"])


@auth_router.post("/connect")
async def connect(payload: ConnectRequest, session: AsyncSession = Depends(get_session)):
    """Resolve the caller's wallet address to an account, creating it on first contact."""
    account = await IdentityService(session).resolve(payload.wallet_address)
    return {
        "uid": account.uid,
        "role": account.role.value,
        "status": account.status.value,
    }
