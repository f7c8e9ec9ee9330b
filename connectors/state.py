"""
Nonce / state store — CSRF correlation and PKCE secrets for pending
authorizations.

Nothing is kept server-side: the nonce and the PKCE verifier travel in
short-lived, HMAC-signed, httpOnly cookies.  The callback always clears
them, so a pending authorization validates at most one callback.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
from typing import Optional, Tuple

from starlette.responses import Response

STATE_TTL_SECONDS = 600  # 10 minutes


def nonce_cookie(provider: str) -> str:
    return f"{provider}_nonce"


def verifier_cookie(provider: str) -> str:
    return f"{provider}_code_verifier"


def pending_connect_cookie(provider: str) -> str:
    return f"pending_{provider}_connect"


def code_challenge_for(verifier: str) -> str:
    """S256 PKCE challenge: unpadded base64url of sha256(verifier)."""
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def constant_time_equals(presented: Optional[str], expected: Optional[str]) -> bool:
    """
    Timing-safe comparison for shared secrets.

    Both sides are hashed first so the comparison never leaks the length
    of the expected secret.
    """
    if not presented or not expected:
        return False
    return hmac.compare_digest(
        hashlib.sha256(presented.encode("utf-8")).digest(),
        hashlib.sha256(expected.encode("utf-8")).digest(),
    )


class StateStore:
    """Issues, seals and validates per-attempt nonces and PKCE verifiers."""

    def __init__(self, secret: str, *, secure_cookies: bool = False, ttl: int = STATE_TTL_SECONDS) -> None:
        if not secret:
            raise ValueError("OAuth state secret must be provided.")
        self._secret = secret.encode("utf-8")
        self._secure = secure_cookies
        self._ttl = ttl

    # ── Generation ──────────────────────────────────────────────────────

    @staticmethod
    def issue() -> str:
        """256-bit random, URL-safe nonce."""
        return secrets.token_urlsafe(32)

    @staticmethod
    def create_pkce_pair() -> Tuple[str, str]:
        """Return ``(code_verifier, code_challenge)``; the verifier is 43 chars."""
        verifier = secrets.token_urlsafe(32)
        return verifier, code_challenge_for(verifier)

    # ── Signed cookie payloads ──────────────────────────────────────────

    def _sign(self, raw: bytes) -> str:
        return hmac.new(self._secret, raw, hashlib.sha256).hexdigest()

    def seal(self, value: str, *, issued_at: Optional[int] = None) -> str:
        payload = {"v": value, "iat": int(time.time()) if issued_at is None else issued_at}
        raw = json.dumps(payload, separators=(",", ":")).encode()
        return base64.urlsafe_b64encode(raw).decode() + "." + self._sign(raw)

    def unseal(self, sealed: Optional[str]) -> Optional[str]:
        """Return the sealed value, or ``None`` if forged, malformed or expired."""
        if not sealed:
            return None
        try:
            encoded, sig = sealed.split(".", 1)
            raw = base64.urlsafe_b64decode(encoded.encode())
        except (ValueError, TypeError):
            return None
        if not hmac.compare_digest(sig.encode("utf-8"), self._sign(raw).encode("utf-8")):
            return None
        try:
            payload = json.loads(raw)
            value, issued_at = payload["v"], int(payload["iat"])
        except (ValueError, KeyError, TypeError):
            return None
        age = time.time() - issued_at
        if age < 0 or age > self._ttl:
            return None
        return value if isinstance(value, str) else None

    # ── Validation ──────────────────────────────────────────────────────

    @staticmethod
    def validate(presented_state: Optional[str], stored_nonce: Optional[str]) -> bool:
        """Constant-time state check; a missing side is a failure, not an error."""
        if not presented_state or not stored_nonce:
            return False
        return hmac.compare_digest(presented_state.encode("utf-8"), stored_nonce.encode("utf-8"))

    # ── Cookies ─────────────────────────────────────────────────────────

    def set_cookie(self, response: Response, name: str, value: str) -> None:
        response.set_cookie(
            key=name,
            value=value,
            max_age=self._ttl,
            path="/",
            secure=self._secure,
            httponly=True,
            samesite="lax",
        )

    def clear_cookie(self, response: Response, name: str) -> None:
        response.delete_cookie(
            key=name,
            path="/",
            secure=self._secure,
            httponly=True,
            samesite="lax",
        )


__all__ = [
    "STATE_TTL_SECONDS",
    "StateStore",
    "code_challenge_for",
    "constant_time_equals",
    "nonce_cookie",
    "pending_connect_cookie",
    "verifier_cookie",
]
