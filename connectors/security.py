"""
Random tokens, PKCE and HMAC helpers used by the OAuth handshake and the
webhook endpoint.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import secrets


def generate_state_token() -> str:
    """Opaque CSRF state: 32 random bytes (256 bits), base64url without padding."""
    return secrets.token_urlsafe(32)


def generate_code_verifier() -> str:
    """PKCE verifier: 43 chars from the unreserved alphabet (RFC 7636 §4.1)."""
    return secrets.token_urlsafe(32)


def code_challenge_s256(code_verifier: str) -> str:
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def compute_signature(payload: bytes | str, secret: str) -> str:
    """Hex HMAC-SHA256 of ``payload`` keyed by ``secret``."""
    if isinstance(payload, str):
        payload = payload.encode()
    return hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()


def verify_signature(payload: bytes | str, signature: str, secret: str) -> bool:
    """Constant-time comparison of a hex digest against the expected one."""
    expected = compute_signature(payload, secret)
    return hmac.compare_digest(expected.encode(), signature.strip().lower().encode())
