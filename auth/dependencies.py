"""
FastAPI dependencies for authentication.

A session is identified by the ``session`` cookie set at login, or by an
``Authorization: Bearer`` header for API clients.
"""

from __future__ import annotations

from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from api.dependencies import get_settings_dep
from auth.jwt import decode_token
from config.settings import Settings

SESSION_COOKIE = "session"

_bearer_scheme = HTTPBearer(auto_error=False)


async def get_optional_user_id(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer_scheme),
    settings: Settings = Depends(get_settings_dep),
) -> Optional[str]:
    """Authenticated ``user_id``, or ``None`` when there is no valid session."""
    token = credentials.credentials if credentials else request.cookies.get(SESSION_COOKIE)
    return decode_token(token, settings.jwt_secret)


async def get_current_user_id(
    user_id: Optional[str] = Depends(get_optional_user_id),
) -> str:
    """Like ``get_optional_user_id`` but answers 401 without a session."""
    if user_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )
    return user_id
