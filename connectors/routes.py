"""
Connector API routes — marketplace connect/callback, list connections,
disconnect, and the worker-only token health check.

Two routers:
  • ``auth_router``        mounted at /api/auth          (browser redirects)
  • ``marketplace_router`` mounted at /api                (JSON API)
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import RedirectResponse

from api.dependencies import (
    get_flow,
    get_registry,
    get_repository,
    get_state_store,
    get_token_manager,
    require_internal_secret,
)
from auth.dependencies import get_current_user_id, get_optional_user_id
from connectors.errors import (
    IncompleteIdentity,
    InvalidConnectionState,
    InvalidStaticCredentials,
    NoConnection,
    RefreshFailed,
    TokenDecryptionError,
    UnknownProvider,
    UpstreamExchangeFailed,
)
from connectors.flow import AuthorizationFlow
from connectors.registry import ConnectorRegistry
from connectors.repository import ConnectionRepository
from connectors.state import StateStore
from connectors.token_manager import TokenManager
from utils.schemas import (
    ConnectionView,
    DisconnectRequest,
    Provider,
    ProviderInfo,
    StaticConnectRequest,
    TokenHealth,
)

logger = logging.getLogger(__name__)

auth_router = APIRouter(tags=["marketplace-auth"])
marketplace_router = APIRouter(tags=["marketplaces"])


def _not_found(provider: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=f"Provider '{provider}' not found",
    )


# ── Redirect flow ──────────────────────────────────────────────────────


@auth_router.post("/prestashop", response_model=ConnectionView)
async def connect_prestashop(
    req: StaticConnectRequest,
    user_id: str = Depends(get_current_user_id),
    flow: AuthorizationFlow = Depends(get_flow),
) -> ConnectionView:
    """Connect a PrestaShop store with its webservice key."""
    try:
        return await flow.connect_static(Provider.PRESTASHOP.value, user_id, req.store_url, req.api_key)
    except InvalidStaticCredentials as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    except (UpstreamExchangeFailed, IncompleteIdentity) as exc:
        logger.warning("PrestaShop connection test failed: %s", exc)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Could not connect to your PrestaShop store. "
            "Please check your store URL and API key.",
        )


@auth_router.get("/{provider}")
async def initiate(
    provider: str,
    request: Request,
    user_id: Optional[str] = Depends(get_optional_user_id),
    flow: AuthorizationFlow = Depends(get_flow),
    states: StateStore = Depends(get_state_store),
) -> RedirectResponse:
    """Start the provider's authorization redirect."""
    try:
        outcome = flow.initiate(provider, user_id, request.query_params)
    except UnknownProvider:
        raise _not_found(provider)
    return outcome.to_response(states)


@auth_router.get("/{provider}/callback")
async def callback(
    provider: str,
    request: Request,
    user_id: Optional[str] = Depends(get_optional_user_id),
    flow: AuthorizationFlow = Depends(get_flow),
    states: StateStore = Depends(get_state_store),
) -> RedirectResponse:
    """Provider redirects here after consent."""
    try:
        outcome = await flow.complete(provider, request.query_params, request.cookies, user_id)
    except UnknownProvider:
        raise _not_found(provider)
    return outcome.to_response(states)


# ── Marketplace JSON API ───────────────────────────────────────────────


@marketplace_router.get("/marketplaces/providers", response_model=List[ProviderInfo])
async def list_providers(
    registry: ConnectorRegistry = Depends(get_registry),
) -> List[ProviderInfo]:
    """
    List all marketplace providers and their configuration status.
    No auth required — used by the frontend to show connect buttons.
    """
    return registry.list_providers()


@marketplace_router.get("/marketplaces/connections", response_model=List[ConnectionView])
async def list_connections(
    user_id: str = Depends(get_current_user_id),
    repository: ConnectionRepository = Depends(get_repository),
) -> List[ConnectionView]:
    """List the authenticated user's connections (no token material)."""
    return await repository.list_for_user(user_id)


@marketplace_router.post("/marketplaces/disconnect")
async def disconnect(
    req: DisconnectRequest,
    user_id: str = Depends(get_current_user_id),
    repository: ConnectionRepository = Depends(get_repository),
) -> Dict[str, Any]:
    """Disconnect a marketplace; the row stays, the tokens are dropped."""
    if not await repository.mark_disconnected(user_id, req.provider):
        raise HTTPException(status.HTTP_404_NOT_FOUND, "Connection not found")
    await repository.commit()
    logger.info("Disconnected %s", req.provider.value)
    return {"status": "disconnected", "provider": req.provider.value}


@marketplace_router.post(
    "/internal/connections/{user_id}/{provider}/validate",
    response_model=TokenHealth,
    dependencies=[Depends(require_internal_secret)],
)
async def validate_connection(
    user_id: str,
    provider: Provider,
    manager: TokenManager = Depends(get_token_manager),
    repository: ConnectionRepository = Depends(get_repository),
) -> TokenHealth:
    """
    Make sure the stored token is usable, refreshing it if due.

    Used by sync workers as a health check; never returns the token.
    """
    try:
        await manager.get_valid_token(user_id, provider.value)
    except NoConnection:
        raise HTTPException(status.HTTP_404_NOT_FOUND, "Connection not found")
    except (InvalidConnectionState, TokenDecryptionError) as exc:
        raise HTTPException(status.HTTP_409_CONFLICT, exc.code)
    except RefreshFailed as exc:
        raise HTTPException(status.HTTP_502_BAD_GATEWAY, exc.code)

    view = await repository.get(user_id, provider)
    return TokenHealth(provider=provider, status=view.status, token_expiry=view.token_expiry)
