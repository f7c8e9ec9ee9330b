"""
Auth API routes — register, login, logout.

Route prefix: /api/auth
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from pydantic import BaseModel, Field, field_validator
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import db_session, get_registry, get_settings_dep, get_state_store
from auth.dependencies import SESSION_COOKIE
from auth.jwt import create_token
from auth.password import hash_password, needs_rehash, password_too_long, verify_password
from config.settings import Settings
from connectors.registry import ConnectorRegistry
from connectors.state import StateStore, pending_connect_cookie
from database.models import User

logger = logging.getLogger(__name__)

router = APIRouter(tags=["auth"])


# ── Request / response schemas ─────────────────────────────────────────


class RegisterRequest(BaseModel):
    username: str = Field(..., min_length=2, max_length=64)
    email: str = Field(..., min_length=5, max_length=255)
    password: str = Field(..., min_length=8, max_length=128)

    @field_validator("password")
    @classmethod
    def _fits_bcrypt(cls, value: str) -> str:
        if password_too_long(value):
            raise ValueError("password must be at most 72 bytes")
        return value


class LoginRequest(BaseModel):
    email: str
    password: str


class AuthResponse(BaseModel):
    user_id: str
    display_name: str
    email: str
    token: str
    resume_path: Optional[str] = None


# ── Helpers ────────────────────────────────────────────────────────────


def _start_session(response: Response, user: User, settings: Settings) -> str:
    token = create_token(user.user_id, settings.jwt_secret, settings.jwt_expiry_seconds)
    response.set_cookie(
        key=SESSION_COOKIE,
        value=token,
        max_age=settings.jwt_expiry_seconds,
        path="/",
        secure=settings.is_production,
        httponly=True,
        samesite="lax",
    )
    return token


def _resume_pending_connect(
    request: Request,
    response: Response,
    states: StateStore,
    registry: ConnectorRegistry,
) -> Optional[str]:
    """
    Find a connect attempt interrupted by an expired session.

    The pending cookie is cleared either way; only a valid one yields a path
    the client should send the user back to.
    """
    for info in registry.list_providers():
        name = pending_connect_cookie(info.provider.value)
        sealed = request.cookies.get(name)
        if sealed is None:
            continue
        states.clear_cookie(response, name)
        if states.unseal(sealed) == info.provider.value:
            return f"/onboarding/connect?{info.provider.value}_restart=true"
    return None


def _auth_body(user: User, token: str, resume_path: Optional[str] = None) -> Dict[str, Any]:
    return {
        "user_id": user.user_id,
        "display_name": user.display_name,
        "email": user.email,
        "token": token,
        "resume_path": resume_path,
    }


# ── Endpoints ──────────────────────────────────────────────────────────


@router.post("/register", response_model=AuthResponse)
async def register(
    req: RegisterRequest,
    response: Response,
    session: AsyncSession = Depends(db_session),
    settings: Settings = Depends(get_settings_dep),
) -> Dict[str, Any]:
    """Register a new user."""
    email = req.email.strip().lower()
    result = await session.execute(select(User).where(User.email == email))
    if result.scalar_one_or_none() is not None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Email already registered",
        )

    user = User(
        email=email,
        display_name=req.username,
        password_hash=hash_password(req.password),
    )
    session.add(user)
    await session.commit()

    token = _start_session(response, user, settings)
    logger.info("Registered user %s", user.user_id)
    return _auth_body(user, token)


@router.post("/login", response_model=AuthResponse)
async def login(
    req: LoginRequest,
    request: Request,
    response: Response,
    session: AsyncSession = Depends(db_session),
    settings: Settings = Depends(get_settings_dep),
    states: StateStore = Depends(get_state_store),
    registry: ConnectorRegistry = Depends(get_registry),
) -> Dict[str, Any]:
    """Login with email + password."""
    result = await session.execute(
        select(User).where(User.email == req.email.strip().lower())
    )
    user = result.scalar_one_or_none()

    if user is None or not verify_password(req.password, user.password_hash):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password",
        )

    if needs_rehash(user.password_hash):
        user.password_hash = hash_password(req.password)
        await session.commit()

    token = _start_session(response, user, settings)
    resume_path = _resume_pending_connect(request, response, states, registry)
    logger.info("Login: %s%s", user.user_id, " (resuming connect)" if resume_path else "")
    return _auth_body(user, token, resume_path)


@router.post("/logout")
async def logout(
    response: Response,
    settings: Settings = Depends(get_settings_dep),
) -> Dict[str, str]:
    response.delete_cookie(
        key=SESSION_COOKIE,
        path="/",
        secure=settings.is_production,
        httponly=True,
        samesite="lax",
    )
    return {"status": "logged_out"}
