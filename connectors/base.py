"""
BaseConnector — abstract interface for all marketplace connectors.

Every provider (Shopify, Square, Etsy, …) subclasses this.  A connector is a
pure adapter: it builds URLs and talks to the provider over HTTP, but never
touches the database, the vault or cookies.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import timedelta
from typing import Any, Dict, List, Mapping, Optional, Tuple, Type

import httpx
from pydantic import BaseModel, ValidationError

from config.settings import Settings
from connectors import http
from connectors.errors import (
    IncompleteIdentity,
    MissingCallbackParams,
    ProviderConfigMissing,
    UpstreamExchangeFailed,
)
from utils.schemas import AuthModel, ExternalIdentity, TokenGrant

DEFAULT_REFRESH_BUFFER = timedelta(days=1)


class BaseConnector(ABC):
    """Abstract base for all marketplace connectors."""

    # ── Identity ────────────────────────────────────────────────────────
    provider: str = ""
    display_name: str = ""
    scopes: List[str] = []
    auth_model: AuthModel = AuthModel.AUTH_CODE_SECRET
    supports_refresh: bool = False
    refresh_buffer: timedelta = DEFAULT_REFRESH_BUFFER

    # Query parameters carried by the callback: what holds the credential,
    # and what holds the echoed nonce.
    callback_token_params: Tuple[str, ...] = ("code",)
    state_param: str = "state"

    def __init__(
        self,
        settings: Settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._settings = settings
        self._transport = transport

    @property
    def uses_pkce(self) -> bool:
        return self.auth_model == AuthModel.AUTH_CODE_PKCE

    @property
    def redirect_uri(self) -> str:
        return self._settings.callback_url(self.provider)

    # ── Configuration ───────────────────────────────────────────────────

    def required_settings(self) -> Dict[str, str]:
        """Map of ENV_NAME -> configured value; empty values are missing."""
        return {}

    def missing_config(self) -> List[str]:
        return [name for name, value in self.required_settings().items() if not value]

    def is_configured(self) -> bool:
        return not self.missing_config()

    def ensure_configured(self) -> None:
        missing = self.missing_config()
        if missing:
            raise ProviderConfigMissing(self.provider, missing)

    # ── OAuth flow ──────────────────────────────────────────────────────

    def prepare_initiate(self, query: Mapping[str, str]) -> Dict[str, Any]:
        """
        Validate initiate-time query parameters and return the context the
        adapter needs later (Shopify's shop domain, for example).
        """
        return {}

    def prepare_callback(self, query: Mapping[str, str]) -> Dict[str, Any]:
        """Validate callback-only parameters (e.g. a signed query string)."""
        return {}

    def extract_credential(self, query: Mapping[str, str]) -> str:
        """Return the code / token carried by the callback."""
        for name in self.callback_token_params:
            value = query.get(name)
            if value:
                return value
        raise MissingCallbackParams(
            f"{self.provider} callback is missing {' or '.join(self.callback_token_params)}"
        )

    @abstractmethod
    def get_auth_url(
        self,
        state: str,
        code_challenge: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> str:
        """
        Build the provider's authorization URL.

        Parameters
        ----------
        state : str
            The per-attempt nonce, echoed back on the callback.
        code_challenge : str, optional
            S256 PKCE challenge; required by PKCE providers.
        context : dict, optional
            Output of ``prepare_initiate``.
        """
        ...

    @abstractmethod
    async def exchange_code(
        self,
        code: str,
        code_verifier: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> TokenGrant:
        """Exchange the authorization code (or implicit token) for a grant."""
        ...

    async def refresh_access_token(
        self,
        refresh_token: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> TokenGrant:
        """Exchange a refresh token for a new grant (refreshable providers only)."""
        raise NotImplementedError(f"{self.provider} tokens cannot be refreshed")

    @abstractmethod
    async def identify(
        self,
        access_token: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> ExternalIdentity:
        """Fetch the seller identity the token belongs to."""
        ...

    # ── Helpers ─────────────────────────────────────────────────────────

    async def _request(self, operation: str, method: str, url: str, **kwargs: Any) -> httpx.Response:
        return await http.request(
            self.provider, operation, method, url, transport=self._transport, **kwargs
        )

    async def _json(self, operation: str, method: str, url: str, **kwargs: Any) -> Dict[str, Any]:
        resp = await self._request(operation, method, url, **kwargs)
        return http.json_body(self.provider, operation, resp)

    def _parse_identity(self, schema: Type[BaseModel], payload: Dict[str, Any]) -> ExternalIdentity:
        """Validate an identity response through its tagged schema."""
        try:
            return schema.model_validate(payload).to_identity()
        except (ValidationError, ValueError) as exc:
            raise IncompleteIdentity(
                f"{self.provider} identity response is missing required fields"
            ) from exc

    def _grant(
        self,
        operation: str,
        data: Dict[str, Any],
        *,
        fallback_refresh: Optional[str] = None,
        **extra: Any,
    ) -> TokenGrant:
        """Build a ``TokenGrant`` from a standard OAuth token response."""
        access = http.require_str(self.provider, operation, data, "access_token")
        refresh = http.optional_str(data, "refresh_token") or fallback_refresh
        try:
            return TokenGrant(
                access_token=access,
                refresh_token=refresh,
                expires_in=http.optional_positive_int(data, "expires_in"),
                **extra,
            )
        except ValidationError as exc:
            raise UpstreamExchangeFailed(
                self.provider, operation, None, "malformed token response"
            ) from exc

    def __repr__(self) -> str:
        return f"<{type(self).__name__} provider={self.provider!r}>"
