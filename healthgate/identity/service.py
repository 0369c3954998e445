from __future__ import annotations

from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional
import logging
import re
import secrets
import time

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..audit.models import AuditAction
from ..audit.service import AuditLedger
from ..config import Settings, get_settings
from ..database import unit_of_work, utcnow
from ..errors import ConflictError, NotFoundError, StorageError, ValidationError
from ..monitoring.metrics import accounts_created_total
from .models import Account, AccountStatus, HealthProfile, Role


logger = logging.getLogger(__name__)

WALLET_RE = re.compile(r"^0x[0-9a-f]{40}$")
UID_RE = re.compile(r"^HID\d{9,}$")

# Whole-account insert retries when a concurrent first contact wins the race
ACCOUNT_CREATE_RETRIES = 3

HEALTH_PROFILE_FIELDS = (
    "blood_type",
    "allergies",
    "chronic_conditions",
    "current_medications",
    "emergency_contact",
    "emergency_phone",
    "height_cm",
    "weight_kg",
    "organ_donor",
)

_UNSET: Any = object()


def normalize_credential(raw: Optional[str]) -> str:
    """Case-fold a wallet-style address and check its shape."""
    if not raw or not isinstance(raw, str):
        raise ValidationError("Wallet address required")
    address = raw.strip().lower()
    if not WALLET_RE.match(address):
        raise ValidationError("Malformed wallet address")
    return address


def _random_uid_suffix() -> int:
    return secrets.randbelow(900_000_000) + 100_000_000


async def allocate_uid(
    is_taken: Callable[[str], Awaitable[bool]],
    *,
    max_attempts: int = 10,
    rng: Callable[[], int] = _random_uid_suffix,
) -> str:
    """Pick a random ``HID`` + 9-digit UID not yet in use.

    After ``max_attempts`` collisions falls back to a millisecond timestamp
    suffix so allocation always terminates. The storage-level unique index
    remains the final arbiter.
    """
    for _ in range(max_attempts):
        uid = f"HID{rng()}"
        if not await is_taken(uid):
            return uid
    logger.warning("UID space collision after %d attempts; using timestamp UID", max_attempts)
    return f"HID{int(time.time() * 1000)}{secrets.randbelow(1000)}"


class IdentityService:
    def __init__(
        self,
        db: AsyncSession,
        settings: Optional[Settings] = None,
        uid_rng: Callable[[], int] = _random_uid_suffix,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.audit = AuditLedger(db)
        self.uid_rng = uid_rng

    async def resolve(self, credential: Optional[str]) -> Account:
        """Return the account for a credential, creating it on first contact."""
        address = normalize_credential(credential)
        existing = await self.get_by_credential(address)
        if existing:
            return existing

        for attempt in range(ACCOUNT_CREATE_RETRIES):
            uid = await allocate_uid(
                self._uid_taken,
                max_attempts=self.settings.uid_max_attempts,
                rng=self.uid_rng,
            )
            username = await self._default_username(address, uid)
            is_admin = self.settings.is_admin_credential(address)
            try:
                async with unit_of_work(self.db):
                    account = Account(  # type: ignore[call-arg]
                        wallet_address=address,
                        uid=uid,
                        username=username,
                        role=Role.ADMIN if is_admin else Role.PATIENT,
                        status=AccountStatus.VERIFIED if is_admin else AccountStatus.PENDING,
                    )
                    self.db.add(account)
                    await self.db.flush()
                    await self.audit.append(
                        AuditAction.USER_REGISTERED,
                        actor_id=account.id,
                        target_type="user",
                        target_id=account.id,
                        metadata={"wallet_address": address, "is_admin": is_admin},
                    )
            except ConflictError:
                # Either the credential was registered concurrently or the UID raced
                winner = await self.get_by_credential(address)
                if winner:
                    return winner
                logger.info("Account insert conflict (attempt %d); retrying", attempt + 1)
                continue

            accounts_created_total.inc()
            logger.info(
                "Account registered uid=%s role=%s",
                account.uid,
                account.role.value,
                extra={"trace_id": account.id},
            )
            return account

        raise StorageError("Unable to create account after repeated conflicts")

    async def _uid_taken(self, uid: str) -> bool:
        return await self.get_by_uid(uid) is not None

    async def _default_username(self, address: str, uid: str) -> str:
        short = f"user_{address[2:8]}"
        full = f"user_{address[2:]}"
        for candidate in (short, full):
            if await self.get_by_username(candidate) is None:
                return candidate
        # Both taken by renamed accounts; the UID is unique
        return f"{short}_{uid}"

    async def get(self, account_id: str) -> Account:
        account = await self.db.get(Account, account_id)
        if not account:
            raise NotFoundError("User not found")
        return account

    async def get_by_credential(self, address: str) -> Optional[Account]:
        return await self.db.scalar(
            select(Account).where(Account.wallet_address == address.lower())
        )

    async def require_by_credential(self, credential: Optional[str]) -> Account:
        """Lookup-only authentication used by every call after connect."""
        account = await self.get_by_credential(normalize_credential(credential))
        if not account:
            raise NotFoundError("User not found")
        return account

    async def get_by_uid(self, uid: str) -> Optional[Account]:
        return await self.db.scalar(select(Account).where(Account.uid == uid))

    async def get_by_username(self, username: str) -> Optional[Account]:
        return await self.db.scalar(select(Account).where(Account.username == username))

    async def find(self, query: str) -> Account:
        """Look an account up by UID, then by display name."""
        if not query:
            raise ValidationError("Search query required")
        account = await self.get_by_uid(query) or await self.get_by_username(query)
        if not account:
            raise NotFoundError("Patient not found")
        return account

    async def get_many(self, account_ids: Iterable[str]) -> Dict[str, Account]:
        ids = set(account_ids)
        if not ids:
            return {}
        result = await self.db.execute(select(Account).where(Account.id.in_(ids)))
        return {a.id: a for a in result.scalars().all()}

    async def list_accounts(self) -> List[Account]:
        result = await self.db.execute(select(Account).order_by(Account.created_at.desc()))
        return list(result.scalars().all())

    async def update_info(
        self,
        account: Account,
        username: Optional[str] = None,
        hospital_name: Optional[str] = _UNSET,
    ) -> Account:
        if username:
            other = await self.get_by_username(username)
            if other and other.id != account.id:
                raise ConflictError("Username already taken")
        async with unit_of_work(self.db):
            if username:
                account.username = username
            if hospital_name is not _UNSET:
                account.hospital_name = hospital_name or None
            await self.audit.append(
                AuditAction.USER_INFO_UPDATED,
                actor_id=account.id,
                target_type="user",
                target_id=account.id,
            )
        return account

    async def set_profile_picture(self, account: Account, picture: Any) -> Account:
        if not picture or not isinstance(picture, str):
            raise ValidationError(
                "Profile picture is required and must be a string (base64 or URL)"
            )
        if len(picture) > self.settings.max_avatar_bytes:
            limit_mb = self.settings.max_avatar_bytes // (1024 * 1024)
            raise ValidationError(f"Profile picture size exceeds {limit_mb}MB limit")
        async with unit_of_work(self.db):
            account.profile_picture = picture
            await self.audit.append(
                AuditAction.PROFILE_PICTURE_UPDATED,
                actor_id=account.id,
                target_type="user",
                target_id=account.id,
            )
        return account

    async def get_health_profile(self, account_id: str) -> Optional[HealthProfile]:
        return await self.db.scalar(
            select(HealthProfile).where(HealthProfile.account_id == account_id)
        )

    async def upsert_health_profile(
        self, account: Account, fields: Dict[str, Any]
    ) -> HealthProfile:
        changes = {k: v for k, v in fields.items() if k in HEALTH_PROFILE_FIELDS}
        async with unit_of_work(self.db):
            profile = await self.get_health_profile(account.id)
            if profile is None:
                profile = HealthProfile(account_id=account.id)  # type: ignore[call-arg]
                self.db.add(profile)
            for key, value in changes.items():
                setattr(profile, key, value)
            profile.updated_at = utcnow()
            await self.db.flush()
            await self.audit.append(
                AuditAction.PROFILE_UPDATED,
                actor_id=account.id,
                target_type="profile",
                target_id=profile.id,
                metadata={"fields": sorted(changes)},
            )
        return profile


def serialize_account(account: Account) -> Dict[str, Any]:
    return {
        "id": account.id,
        "uid": account.uid,
        "username": account.username,
        "wallet_address": account.wallet_address,
        "role": account.role.value,
        "status": account.status.value,
        "profile_picture": account.profile_picture,
        "hospital_name": account.hospital_name,
        "created_at": account.created_at.isoformat() if account.created_at else None,
    }


def serialize_health_profile(profile: HealthProfile) -> Dict[str, Any]:
    data: Dict[str, Any] = {f: getattr(profile, f) for f in HEALTH_PROFILE_FIELDS}
    data["account_id"] = profile.account_id
    data["updated_at"] = profile.updated_at.isoformat() if profile.updated_at else None
    return data
