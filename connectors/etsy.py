"""
EtsyConnector — Open API v3, public-client OAuth with PKCE.

Etsy issues one-hour access tokens and rotates the refresh token on every
refresh, so the refresh buffer here is minutes rather than a day.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Dict, Optional
from urllib.parse import urlencode

from connectors import http
from connectors.base import BaseConnector
from connectors.errors import UpstreamExchangeFailed
from utils.schemas import AuthModel, EtsyUserResponse, ExternalIdentity, Provider, TokenGrant

logger = logging.getLogger(__name__)

_AUTH_URL = "https://www.etsy.com/oauth/connect"
_TOKEN_URL = "https://api.etsy.com/v3/public/oauth/token"
_API_BASE = "https://api.etsy.com/v3"


class EtsyConnector(BaseConnector):
    """OAuth connector for Etsy shops."""

    provider = Provider.ETSY.value
    display_name = "Etsy"
    scopes = ["shops_r", "transactions_r", "listings_r", "profile_r", "email_r"]
    auth_model = AuthModel.AUTH_CODE_PKCE
    supports_refresh = True
    refresh_buffer = timedelta(minutes=5)

    def required_settings(self) -> Dict[str, str]:
        return {"ETSY_API_KEY": self._settings.etsy_api_key}

    def get_auth_url(
        self,
        state: str,
        code_challenge: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> str:
        params = {
            "response_type": "code",
            "client_id": self._settings.etsy_api_key,
            "redirect_uri": self.redirect_uri,
            "scope": " ".join(self.scopes),
            "state": state,
            "code_challenge": code_challenge,
            "code_challenge_method": "S256",
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
            data={
                "grant_type": "authorization_code",
                "client_id": self._settings.etsy_api_key,
                "redirect_uri": self.redirect_uri,
                "code": code,
                "code_verifier": code_verifier or "",
            },
        )
        return self._etsy_grant("token exchange", data)

    async def refresh_access_token(
        self,
        refresh_token: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> TokenGrant:
        data = await self._json(
            "token refresh",
            "POST",
            _TOKEN_URL,
            data={
                "grant_type": "refresh_token",
                "client_id": self._settings.etsy_api_key,
                "refresh_token": refresh_token,
            },
        )
        return self._etsy_grant("token refresh", data)

    async def identify(
        self,
        access_token: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> ExternalIdentity:
        data = await self._json(
            "identity",
            "GET",
            f"{_API_BASE}/application/users/me",
            headers={
                "Authorization": f"Bearer {access_token}",
                "x-api-key": self._settings.etsy_api_key,
            },
        )
        return self._parse_identity(EtsyUserResponse, data)

    def _etsy_grant(self, operation: str, data: Dict[str, Any]) -> TokenGrant:
        # Both tokens and a positive lifetime are mandatory on every response.
        http.require_str(self.provider, operation, data, "refresh_token")
        if http.optional_positive_int(data, "expires_in") is None:
            raise UpstreamExchangeFailed(self.provider, operation, None, "invalid expires_in")
        return self._grant(operation, data)
