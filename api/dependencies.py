"""
FastAPI dependencies (shared across routes).

Long-lived components (settings, vault, state store, connector registry,
session factory) are built once in ``main.create_app`` and kept on
``app.state``; the per-request pieces (DB session, repository, flow
controller, token manager) are assembled here.
"""

from __future__ import annotations

from typing import AsyncGenerator, Optional

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import Settings
from connectors.encryption import TokenVault
from connectors.flow import AuthorizationFlow
from connectors.registry import ConnectorRegistry
from connectors.repository import ConnectionRepository
from connectors.state import StateStore, constant_time_equals
from connectors.token_manager import TokenManager


def get_settings_dep(request: Request) -> Settings:
    return request.app.state.settings


def get_vault(request: Request) -> TokenVault:
    return request.app.state.vault


def get_state_store(request: Request) -> StateStore:
    return request.app.state.states


def get_registry(request: Request) -> ConnectorRegistry:
    return request.app.state.registry


async def db_session(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """Yield a DB session; roll back whatever the handler left uncommitted."""
    async with request.app.state.session_factory() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


def get_repository(
    session: AsyncSession = Depends(db_session),
    vault: TokenVault = Depends(get_vault),
) -> ConnectionRepository:
    return ConnectionRepository(session, vault)


def get_flow(
    settings: Settings = Depends(get_settings_dep),
    registry: ConnectorRegistry = Depends(get_registry),
    states: StateStore = Depends(get_state_store),
    repository: ConnectionRepository = Depends(get_repository),
) -> AuthorizationFlow:
    return AuthorizationFlow(settings, registry, states, repository)


def get_token_manager(
    request: Request,
    repository: ConnectionRepository = Depends(get_repository),
    registry: ConnectorRegistry = Depends(get_registry),
) -> TokenManager:
    return TokenManager(
        repository,
        registry,
        failure_policy=getattr(request.app.state, "refresh_failure_policy", None),
    )


async def require_internal_secret(
    settings: Settings = Depends(get_settings_dep),
    x_internal_secret: Optional[str] = Header(default=None, alias="X-Internal-Secret"),
) -> None:
    """Guard for worker-only endpoints; an unset secret disables them."""
    if not settings.internal_api_secret:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Internal API is not configured",
        )
    if not constant_time_equals(x_internal_secret, settings.internal_api_secret):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid internal secret",
        )
