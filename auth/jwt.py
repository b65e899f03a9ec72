"""
JWT-style token creation and verification for calling principals.

Tokens are base64-encoded JSON payloads signed with HMAC-SHA256 and carry the
caller's ``user_id`` and ``tenant_id``.  Secret key is loaded from
``config.jwt_secret`` (env var: ``JWT_SECRET``).
"""

from __future__ import annotations

import hashlib
import hmac
import json
import time
from base64 import b64decode, b64encode

from fastapi import HTTPException, status

from auth.models import Principal
from config.settings import config

_TOKEN_SECRET = config.jwt_secret
_TOKEN_EXPIRY_SECONDS = config.jwt_expiry_seconds


def create_token(user_id: str, tenant_id: str) -> str:
    """Create a signed token for ``user_id`` within ``tenant_id``."""
    payload = {
        "user_id": user_id,
        "tenant_id": tenant_id,
        "exp": int(time.time()) + _TOKEN_EXPIRY_SECONDS,
    }
    raw = json.dumps(payload).encode()
    sig = hmac.new(_TOKEN_SECRET.encode(), raw, hashlib.sha256).hexdigest()
    return b64encode(raw).decode() + "." + sig


def verify_token(token: str) -> Principal:
    """
    Verify token and return the principal.

    Raises ``HTTPException(401)`` on invalid or expired tokens.
    """
    try:
        parts = token.split(".", 1)
        if len(parts) != 2:
            raise ValueError("bad format")
        raw = b64decode(parts[0])
        expected_sig = hmac.new(
            _TOKEN_SECRET.encode(), raw, hashlib.sha256
        ).hexdigest()
        if not hmac.compare_digest(parts[1].encode(), expected_sig.encode()):
            raise ValueError("bad signature")
        payload = json.loads(raw)
        if payload.get("exp", 0) < time.time():
            raise ValueError("token expired")
        return Principal(user_id=payload["user_id"], tenant_id=payload["tenant_id"])
    except (ValueError, KeyError, TypeError, AttributeError) as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid or expired token: {exc}",
        )
