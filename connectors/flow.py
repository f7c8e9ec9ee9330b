"""
Authorization flow controller — initiate and complete marketplace connects.

The controller owns the decision logic; routes only translate requests into
calls and a ``FlowOutcome`` back into a redirect with cookie changes.  Every
failure the browser sees is reduced to a short error code.

    INITIATED ──► AWAITING_CALLBACK ──► VALIDATED ──► CONNECTED
         │                │                 │
         └────────────────┴─────────────────┴──────► REJECTED
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional
from urllib.parse import urlencode

from sqlalchemy.exc import SQLAlchemyError
from starlette.responses import RedirectResponse

from config.settings import Settings
from connectors.base import BaseConnector
from connectors.errors import (
    AuthenticationRequired,
    ConnectorError,
    CsrfValidationFailed,
    MissingCallbackParams,
    ProviderConfigMissing,
    UnknownProvider,
)
from connectors.prestashop import PrestaShopConnector
from connectors.registry import ConnectorRegistry
from connectors.repository import ConnectionRepository
from connectors.state import (
    StateStore,
    nonce_cookie,
    pending_connect_cookie,
    verifier_cookie,
)
from utils.schemas import AuthModel, ConnectionView, FlowState

logger = logging.getLogger(__name__)

DEFAULT_RETURN_PATH = "/onboarding/connect"
RETURN_PATH_ALLOWLIST = frozenset({"/onboarding/connect", "/trial/connect"})
RETURN_COOKIE = "oauth_return"


@dataclass
class FlowOutcome:
    """What the HTTP layer should do: where to go and which cookies to touch."""

    state: FlowState
    location: str
    error: Optional[str] = None
    set_cookies: Dict[str, str] = field(default_factory=dict)
    clear_cookies: List[str] = field(default_factory=list)

    def to_response(self, states: StateStore) -> RedirectResponse:
        response = RedirectResponse(self.location, status_code=302)
        for name in self.clear_cookies:
            states.clear_cookie(response, name)
        for name, value in self.set_cookies.items():
            states.set_cookie(response, name, value)
        return response


def error_location(code: str) -> str:
    return f"/?{urlencode({'error': code})}"


class AuthorizationFlow:
    """Coordinates state store, connectors and repository for one request."""

    def __init__(
        self,
        settings: Settings,
        registry: ConnectorRegistry,
        states: StateStore,
        repository: ConnectionRepository,
    ) -> None:
        self._settings = settings
        self._registry = registry
        self._states = states
        self._repo = repository

    def _connector(self, provider: str) -> BaseConnector:
        connector = self._registry.get(provider)
        if connector is None:
            raise UnknownProvider(f"unknown provider {provider!r}")
        return connector

    # ── Initiate ────────────────────────────────────────────────────────

    def initiate(
        self,
        provider: str,
        user_id: Optional[str],
        query: Mapping[str, str],
    ) -> FlowOutcome:
        """
        Start a redirect-based authorization.

        Raises ``UnknownProvider`` for providers that do not exist or have no
        redirect handshake; everything else becomes a redirect.
        """
        connector = self._connector(provider)
        if connector.auth_model == AuthModel.STATIC_BEARER:
            raise UnknownProvider(f"{provider} does not use redirect authorization")

        if user_id is None:
            return FlowOutcome(
                FlowState.REJECTED,
                f"/signin?redirect=/api/auth/{provider}",
                error=AuthenticationRequired.code,
            )

        try:
            connector.ensure_configured()
            context = connector.prepare_initiate(query)
        except ProviderConfigMissing as exc:
            logger.error("Cannot start %s authorization: %s", provider, exc)
            return self._reject(exc.code)
        except ConnectorError as exc:
            logger.info("Rejected %s initiate: %s", provider, exc)
            return self._reject(exc.code)

        nonce = self._states.issue()
        cookies = {nonce_cookie(provider): self._states.seal(nonce)}
        challenge = None
        if connector.uses_pkce:
            verifier, challenge = self._states.create_pkce_pair()
            cookies[verifier_cookie(provider)] = self._states.seal(verifier)

        location = connector.get_auth_url(nonce, code_challenge=challenge, context=context)
        logger.info("Started %s authorization", provider)
        return FlowOutcome(FlowState.AWAITING_CALLBACK, location, set_cookies=cookies)

    # ── Complete ────────────────────────────────────────────────────────

    async def complete(
        self,
        provider: str,
        query: Mapping[str, str],
        cookies: Mapping[str, str],
        user_id: Optional[str],
    ) -> FlowOutcome:
        """
        Validate the callback, exchange, identify and persist.

        The nonce and verifier cookies are cleared on every outcome, so a
        pending authorization is usable for one callback at most.
        """
        connector = self._connector(provider)
        if connector.auth_model == AuthModel.STATIC_BEARER:
            raise UnknownProvider(f"{provider} does not use redirect authorization")
        spent = [nonce_cookie(provider), verifier_cookie(provider)]

        try:
            return await self._complete(connector, query, cookies, user_id, spent)
        except ConnectorError as exc:
            logger.warning("%s authorization rejected (%s): %s", provider, exc.code, exc)
            return self._reject(exc.code, spent)
        except SQLAlchemyError:
            logger.exception("Persisting %s connection failed", provider)
            await self._repo.rollback()
            return self._reject("oauth_failed", spent)
        except Exception:
            logger.exception("Unexpected failure completing %s authorization", provider)
            await self._repo.rollback()
            return self._reject("oauth_failed", spent)

    async def _complete(
        self,
        connector: BaseConnector,
        query: Mapping[str, str],
        cookies: Mapping[str, str],
        user_id: Optional[str],
        spent: List[str],
    ) -> FlowOutcome:
        provider = connector.provider
        connector.ensure_configured()

        if query.get("error"):
            logger.info("%s returned error=%s", provider, query.get("error"))
            return self._reject("oauth_failed", spent)

        credential = connector.extract_credential(query)
        presented_state = query.get(connector.state_param)
        if not presented_state:
            raise MissingCallbackParams(f"{provider} callback is missing state")

        stored_nonce = self._states.unseal(cookies.get(nonce_cookie(provider)))
        if not self._states.validate(presented_state, stored_nonce):
            raise CsrfValidationFailed("state mismatch, expired or missing")

        verifier = None
        if connector.uses_pkce:
            verifier = self._states.unseal(cookies.get(verifier_cookie(provider)))
            if not verifier:
                raise CsrfValidationFailed("PKCE verifier missing or expired")

        context = connector.prepare_callback(query)
        # VALIDATED

        if user_id is None:
            logger.info("%s callback without a session; asking for sign-in", provider)
            location = f"/signin?redirect={DEFAULT_RETURN_PATH}&{provider}_restart=true"
            return FlowOutcome(
                FlowState.REJECTED,
                location,
                error=AuthenticationRequired.code,
                set_cookies={pending_connect_cookie(provider): self._states.seal(provider)},
                clear_cookies=spent,
            )

        grant = await connector.exchange_code(credential, code_verifier=verifier, context=context)
        identity_context = {**context, **grant.provider_meta}
        identity = await connector.identify(
            grant.access_token.get_secret_value(), context=identity_context
        )

        await self._repo.upsert(user_id, provider, grant, identity)
        await self._repo.commit()
        logger.info("Connected %s account %s", provider, identity.external_name)

        return FlowOutcome(
            FlowState.CONNECTED,
            self._success_location(provider, cookies),
            clear_cookies=spent + [RETURN_COOKIE],
        )

    # ── Static bearer ───────────────────────────────────────────────────

    async def connect_static(
        self,
        provider: str,
        user_id: str,
        store_url: str,
        api_key: str,
    ) -> ConnectionView:
        """Verify pasted store credentials and persist them as CONNECTED."""
        connector = self._connector(provider)
        if not isinstance(connector, PrestaShopConnector):
            raise UnknownProvider(f"{provider} does not accept static credentials")
        grant, identity = await connector.verify_static(store_url, api_key)
        view = await self._repo.upsert(user_id, provider, grant, identity)
        await self._repo.commit()
        logger.info("Connected %s store %s", provider, identity.external_id)
        return view

    # ── Helpers ─────────────────────────────────────────────────────────

    def _success_location(self, provider: str, cookies: Mapping[str, str]) -> str:
        if self._settings.legacy_sync_enabled:
            return f"/sync?{urlencode({'marketplace': provider})}"
        requested = cookies.get(RETURN_COOKIE)
        return requested if requested in RETURN_PATH_ALLOWLIST else DEFAULT_RETURN_PATH

    @staticmethod
    def _reject(code: str, clear: Optional[List[str]] = None) -> FlowOutcome:
        return FlowOutcome(
            FlowState.REJECTED,
            error_location(code),
            error=code,
            clear_cookies=list(clear or []),
        )


__all__ = [
    "AuthorizationFlow",
    "FlowOutcome",
    "RETURN_COOKIE",
    "RETURN_PATH_ALLOWLIST",
    "error_location",
]
