"""
Token encryption — encrypt / decrypt marketplace tokens at rest.

Uses Fernet (AES-128-CBC + HMAC-SHA256) from the ``cryptography`` library.
Key material comes from ``settings.token_encryption_key``
(env var: ``TOKEN_ENCRYPTION_KEY``) and is stretched with SHA-256 into a
Fernet key, so any sufficiently long random string works.  Older keys listed
in ``TOKEN_ENCRYPTION_PREVIOUS_KEYS`` stay readable during a rotation.

Decryption never falls back to returning its input: a tampered value or a
value written under an unknown key raises ``TokenDecryptionError``.
"""

from __future__ import annotations

import base64
import hashlib
import logging
from typing import Iterable, Optional

from cryptography.fernet import Fernet, InvalidToken, MultiFernet

from config.settings import ConfigurationError, Settings
from connectors.errors import TokenDecryptionError

logger = logging.getLogger(__name__)


def derive_key(secret: str) -> bytes:
    """Stretch an arbitrary secret into a urlsafe-base64 Fernet key."""
    digest = hashlib.sha256(secret.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest)


class TokenVault:
    """Authenticated symmetric encryption for access / refresh tokens."""

    def __init__(self, secret: str, previous_secrets: Optional[Iterable[str]] = None) -> None:
        if not secret:
            raise ValueError("Token encryption secret must be provided.")
        keys = [Fernet(derive_key(secret))]
        keys.extend(Fernet(derive_key(s)) for s in (previous_secrets or []) if s)
        self._primary = keys[0]
        self._fernet = MultiFernet(keys)

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenVault":
        """
        Build the process-wide vault.

        Production refuses to start without a key.  Development gets an
        ephemeral key, so anything encrypted is lost on restart.
        """
        key = settings.token_encryption_key
        if not key:
            if settings.is_production:
                raise ConfigurationError(
                    "TOKEN_ENCRYPTION_KEY is required in production for token encryption."
                )
            logger.warning(
                "TOKEN_ENCRYPTION_KEY not set — using an ephemeral key; stored tokens "
                "will be unreadable after restart."
            )
            return cls(Fernet.generate_key().decode())
        return cls(key, settings.previous_encryption_keys)

    # ── bytes API ───────────────────────────────────────────────────────

    def encrypt_bytes(self, plaintext: bytes) -> bytes:
        return self._primary.encrypt(plaintext)

    def decrypt_bytes(self, ciphertext: bytes) -> bytes:
        try:
            return self._fernet.decrypt(ciphertext)
        except InvalidToken as exc:
            raise TokenDecryptionError(
                "Failed to decrypt token; ciphertext is corrupt or the key is wrong."
            ) from exc

    # ── str API (what the repository stores) ────────────────────────────

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a token string for database storage."""
        return self.encrypt_bytes(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, ciphertext: str) -> str:
        """Decrypt a token string read from the database."""
        try:
            raw = ciphertext.encode("ascii")
        except UnicodeEncodeError as exc:
            raise TokenDecryptionError("Ciphertext is not valid Fernet data.") from exc
        return self.decrypt_bytes(raw).decode("utf-8")

    def rotate(self, ciphertext: str) -> str:
        """Re-encrypt a stored value under the primary key."""
        try:
            return self._fernet.rotate(ciphertext.encode("ascii")).decode("ascii")
        except InvalidToken as exc:
            raise TokenDecryptionError("Cannot rotate an unreadable token.") from exc


__all__ = ["TokenVault", "derive_key"]
