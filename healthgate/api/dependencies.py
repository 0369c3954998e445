"""
Request-scoped dependencies: session, caller resolution and role checks.

Every call after ``/auth/connect`` carries the caller's wallet address in
``X-Wallet-Address``; it is resolved (lookup only) on each request.
"""

from __future__ import annotations

from typing import Callable, Optional

from fastapi import Depends, Header
from sqlalchemy.ext.asyncio import AsyncSession

from ..database import get_session
from ..errors import AuthenticationError, AuthorizationError
from ..identity.models import Account, AccountStatus, Role
from ..identity.service import IdentityService

CALLER_HEADER = "X-Wallet-Address"


async def get_current_account(
    x_wallet_address: Optional[str] = Header(default=None, alias=CALLER_HEADER),
    session: AsyncSession = Depends(get_session),
) -> Account:
    if not x_wallet_address:
        raise AuthenticationError(f"Missing {CALLER_HEADER} header")
    account = await IdentityService(session).require_by_credential(x_wallet_address)
    if account.status == AccountStatus.SUSPENDED:
        raise AuthorizationError("Account suspended")
    return account


def require_role(*roles: Role) -> Callable[..., "Account"]:
    """Dependency returning the caller when their role is one of ``roles``.

    Admin is always allowed.
    """

    async def _dep(account: Account = Depends(get_current_account)) -> Account:
        if account.role == Role.ADMIN or account.role in roles:
            return account
        raise AuthorizationError("Forbidden: insufficient role")

    return _dep


require_admin = require_role(Role.ADMIN)

# Roles that look patients up and request access on their behalf
REQUESTER_ROLES = (
    Role.DOCTOR,
    Role.HOSPITAL,
    Role.EMERGENCY_RESPONDER,
    Role.INSURANCE_PROVIDER,
)
