"""
Token encryption — encrypt / decrypt OAuth tokens at rest.

Uses Fernet (AES-128-CBC + HMAC-SHA256) from the ``cryptography`` library.
Keys come from ``config.token_encryption_key`` (env var:
``TOKEN_ENCRYPTION_KEY``) as a comma-separated list: the first key encrypts,
every key can decrypt, so keys can be rotated without re-encrypting rows.

If no key is configured, one is derived from ``JWT_SECRET`` with HKDF and a
startup warning is logged.  Generate a key with::

    python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"
"""

from __future__ import annotations

import base64
import logging
from typing import List, Sequence

from cryptography.fernet import Fernet, InvalidToken, MultiFernet
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from connectors.exceptions import TokenDecryptionError

logger = logging.getLogger(__name__)

_HKDF_INFO = b"platform-connection-token-encryption"


def derive_key(secret: str) -> bytes:
    """Derive a Fernet key from an arbitrary secret string."""
    hkdf = HKDF(algorithm=hashes.SHA256(), length=32, salt=None, info=_HKDF_INFO)
    return base64.urlsafe_b64encode(hkdf.derive(secret.encode()))


class TokenCipher:
    """Encrypts tokens for database storage."""

    def __init__(self, keys: Sequence[str | bytes]):
        if not keys:
            raise ValueError("TokenCipher needs at least one key")
        fernets: List[Fernet] = [
            Fernet(k.encode() if isinstance(k, str) else k) for k in keys
        ]
        self._fernet = MultiFernet(fernets)

    @classmethod
    def from_settings(cls, settings) -> "TokenCipher":
        keys = [k.strip() for k in settings.token_encryption_key.split(",") if k.strip()]
        if not keys:
            logger.warning(
                "TOKEN_ENCRYPTION_KEY not set, deriving the token key from JWT_SECRET. "
                "Generate a key: python -c \"from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())\""
            )
            return cls([derive_key(settings.jwt_secret)])
        logger.info("Token encryption enabled with %d key(s)", len(keys))
        return cls(keys)

    def encrypt_token(self, plaintext: str) -> str:
        """Return the Fernet ciphertext (URL-safe base64)."""
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt_token(self, ciphertext: str) -> str:
        try:
            return self._fernet.decrypt(ciphertext.encode()).decode()
        except InvalidToken as exc:
            raise TokenDecryptionError("Stored token could not be decrypted") from exc

