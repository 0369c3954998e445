"""
Process-wide settings loaded from the environment.

Settings are read once and cached; the resulting object is frozen so the
privileged-credential allowlist and signing keys cannot drift while the
process runs. Tests call ``get_settings.cache_clear()`` after changing
the environment.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from functools import lru_cache
from typing import FrozenSet, Optional
import logging
import os

logger = logging.getLogger(__name__)

_WEAK_QR_KEY = "change-this-qr-signing-key-before-deploying"


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes"}


def _env_float(name: str) -> Optional[float]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return None
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring non-numeric %s=%r", name, raw)
        return None


def _parse_credentials(raw: str) -> FrozenSet[str]:
    return frozenset(p.strip().lower() for p in raw.split(",") if p.strip())


@dataclass(frozen=True)
class Settings:
    admin_credentials: FrozenSet[str] = field(default_factory=frozenset)
    qr_signing_key: str = _WEAK_QR_KEY
    qr_require_seal: bool = True
    qr_ttl_hours: Optional[float] = None
    access_grant_ttl_hours: Optional[float] = None
    record_encryption_key: Optional[str] = None
    max_avatar_bytes: int = 10 * 1024 * 1024
    uid_max_attempts: int = 10
    db_init: bool = False
    dev_mode: bool = False

    def is_admin_credential(self, credential: str) -> bool:
        return credential.lower() in self.admin_credentials

    @classmethod
    def from_env(cls) -> "Settings":
        qr_key = os.getenv("QR_SIGNING_KEY", _WEAK_QR_KEY)
        if qr_key == _WEAK_QR_KEY:
            logger.warning(
                "Using default/weak QR signing key. Set QR_SIGNING_KEY in production."
            )
        return cls(
            admin_credentials=_parse_credentials(os.getenv("ADMIN_CREDENTIALS", "")),
            qr_signing_key=qr_key,
            qr_require_seal=_env_bool("QR_REQUIRE_SEAL", "true"),
            qr_ttl_hours=_env_float("QR_TTL_HOURS"),
            access_grant_ttl_hours=_env_float("ACCESS_GRANT_TTL_HOURS"),
            record_encryption_key=os.getenv("RECORD_ENC_KEY") or None,
            max_avatar_bytes=int(os.getenv("MAX_AVATAR_BYTES", str(10 * 1024 * 1024))),
            uid_max_attempts=int(os.getenv("UID_MAX_ATTEMPTS", "10")),
            db_init=_env_bool("DB_INIT"),
            dev_mode=_env_bool("DEV_MODE"),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    settings = Settings.from_env()
    logger.info(
        "Settings loaded: %d privileged credential(s), seal required=%s",
        len(settings.admin_credentials),
        settings.qr_require_seal,
    )
    return settings
