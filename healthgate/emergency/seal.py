"""
HS256 seal for emergency credential payloads.

The seal is a JWT whose claims bind the owner's UID to a SHA-256 digest
of the canonical payload, so any edit to the snapshot fields or a
payload minted without the server key fails verification.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional
import hashlib
import json

import jwt

from ..errors import ValidationError


def payload_digest(payload: Dict[str, Any]) -> str:
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def seal_payload(
    payload: Dict[str, Any], key: str, ttl_hours: Optional[float] = None
) -> str:
    now = datetime.now(tz=timezone.utc)
    claims: Dict[str, Any] = {
        "sub": payload.get("uid"),
        "type": "emergency_qr",
        "digest": payload_digest(payload),
        "iat": int(now.timestamp()),
    }
    if ttl_hours:
        claims["exp"] = int((now + timedelta(hours=ttl_hours)).timestamp())
    return jwt.encode(claims, key, algorithm="HS256")


def check_seal(payload: Dict[str, Any], seal: str, key: str) -> Dict[str, Any]:
    try:
        claims = jwt.decode(seal, key, algorithms=["HS256"])
    except jwt.ExpiredSignatureError as e:
        raise ValidationError("Emergency credential has expired") from e
    except jwt.InvalidTokenError as e:
        raise ValidationError("Emergency credential seal is invalid") from e
    if claims.get("type") != "emergency_qr" or claims.get("sub") != payload.get("uid"):
        raise ValidationError("Emergency credential seal does not match its owner")
    if claims.get("digest") != payload_digest(payload):
        raise ValidationError("Emergency credential payload was altered")
    return claims
