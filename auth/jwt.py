"""
JWT-style session token creation and verification.

Tokens are base64-encoded JSON payloads signed with HMAC-SHA256.  The secret
comes from ``Settings.jwt_secret`` (env var: ``JWT_SECRET``) and is passed in
by the caller.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import time
from base64 import b64decode, b64encode
from typing import Optional

from fastapi import HTTPException, status


def create_token(user_id: str, secret: str, expiry_seconds: int) -> str:
    """Create a signed token containing ``user_id`` and expiry."""
    payload = {
        "user_id": user_id,
        "exp": int(time.time()) + expiry_seconds,
    }
    raw = json.dumps(payload).encode()
    sig = hmac.new(secret.encode(), raw, hashlib.sha256).hexdigest()
    return b64encode(raw).decode() + "." + sig


def decode_token(token: Optional[str], secret: str) -> Optional[str]:
    """Return ``user_id`` for a valid token, ``None`` otherwise."""
    if not token:
        return None
    parts = token.split(".", 1)
    if len(parts) != 2:
        return None
    try:
        raw = b64decode(parts[0], validate=True)
    except ValueError:
        return None
    expected_sig = hmac.new(secret.encode(), raw, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(parts[1].encode("utf-8"), expected_sig.encode("utf-8")):
        return None
    try:
        payload = json.loads(raw)
    except ValueError:
        return None
    if not isinstance(payload, dict) or payload.get("exp", 0) < time.time():
        return None
    user_id = payload.get("user_id")
    return user_id if isinstance(user_id, str) and user_id else None


def verify_token(token: str, secret: str) -> str:
    """
    Verify token and return ``user_id``.

    Raises ``HTTPException(401)`` on invalid or expired tokens.
    """
    user_id = decode_token(token, secret)
    if user_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )
    return user_id
