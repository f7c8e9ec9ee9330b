"""
EbayConnector — authorization code with HTTP Basic client credentials.

eBay access tokens live about two hours.  The refresh token is long-lived
and is not rotated, so a refresh only replaces the access token.  The
``redirect_uri`` sent to eBay is the app's RuName, not a URL.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import httpx
from pydantic import ValidationError

from connectors import http
from connectors.base import BaseConnector
from connectors.errors import UpstreamExchangeFailed
from utils.schemas import AuthModel, EbayUserResponse, ExternalIdentity, Provider, TokenGrant

logger = logging.getLogger(__name__)

_AUTH_URL = "https://auth.ebay.com/oauth2/authorize"
_TOKEN_URL = "https://api.ebay.com/identity/v1/oauth2/token"
_API_BASE = "https://api.ebay.com"
DEFAULT_EXPIRES_IN = 7200


class EbayConnector(BaseConnector):
    """OAuth connector for eBay sellers."""

    provider = Provider.EBAY.value
    display_name = "eBay"
    scopes = [
        "https://api.ebay.com/oauth/api_scope",
        "https://api.ebay.com/oauth/api_scope/sell.fulfillment",
        "https://api.ebay.com/oauth/api_scope/sell.inventory",
        "https://api.ebay.com/oauth/api_scope/sell.analytics.readonly",
        "https://api.ebay.com/oauth/api_scope/sell.finances",
        "https://api.ebay.com/oauth/api_scope/commerce.identity.readonly",
    ]
    auth_model = AuthModel.AUTH_CODE_SECRET
    supports_refresh = True
    refresh_buffer = timedelta(minutes=10)

    def required_settings(self) -> Dict[str, str]:
        return {
            "EBAY_CLIENT_ID": self._settings.ebay_client_id,
            "EBAY_CLIENT_SECRET": self._settings.ebay_client_secret,
            "EBAY_RU_NAME": self._settings.ebay_ru_name,
        }

    @property
    def redirect_uri(self) -> str:
        return self._settings.ebay_ru_name

    def _client_auth(self) -> httpx.BasicAuth:
        return httpx.BasicAuth(self._settings.ebay_client_id, self._settings.ebay_client_secret)

    def get_auth_url(
        self,
        state: str,
        code_challenge: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> str:
        params = {
            "client_id": self._settings.ebay_client_id,
            "response_type": "code",
            "redirect_uri": self.redirect_uri,
            "scope": " ".join(self.scopes),
            "state": state,
        }
        return f"{_AUTH_URL}?{urlencode(params)}"

    async def exchange_code(
        self,
        code: str,
        code_verifier: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> TokenGrant:
        data = await self._json(
            "token exchange",
            "POST",
            _TOKEN_URL,
            auth=self._client_auth(),
            data={
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self.redirect_uri,
            },
        )
        # The first grant must carry the refresh token every later refresh reuses.
        refresh = http.require_str(self.provider, "token exchange", data, "refresh_token")
        return self._ebay_grant("token exchange", data, refresh)

    async def refresh_access_token(
        self,
        refresh_token: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> TokenGrant:
        data = await self._json(
            "token refresh",
            "POST",
            _TOKEN_URL,
            auth=self._client_auth(),
            data={
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "scope": " ".join(self.scopes),
            },
        )
        return self._ebay_grant("token refresh", data, http.optional_str(data, "refresh_token"))

    async def identify(
        self,
        access_token: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> ExternalIdentity:
        data = await self._json(
            "identity",
            "GET",
            f"{_API_BASE}/commerce/identity/v1/user/",
            headers={"Authorization": f"Bearer {access_token}"},
        )
        return self._parse_identity(EbayUserResponse, data)

    # ── Helpers ─────────────────────────────────────────────────────────

    def _ebay_grant(self, operation: str, data: Dict[str, Any], refresh: Optional[str]) -> TokenGrant:
        access = http.require_str(self.provider, operation, data, "access_token")
        # Missing or non-positive lifetimes fall back to eBay's documented two hours.
        expires_in = http.optional_positive_int(data, "expires_in") or DEFAULT_EXPIRES_IN
        try:
            return TokenGrant(access_token=access, refresh_token=refresh, expires_in=expires_in)
        except ValidationError as exc:
            raise UpstreamExchangeFailed(self.provider, operation, None, "malformed token response") from exc
