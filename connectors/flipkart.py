"""
FlipkartConnector — authorization code with HTTP Basic client credentials.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import httpx

from connectors.base import BaseConnector
from utils.schemas import AuthModel, ExternalIdentity, FlipkartProfileResponse, Provider, TokenGrant

logger = logging.getLogger(__name__)

_AUTH_URL = "https://api.flipkart.net/oauth-service/oauth/authorize"
_TOKEN_URL = "https://api.flipkart.net/oauth-service/oauth/token"
_API_BASE = "https://api.flipkart.net/sellers"


class FlipkartConnector(BaseConnector):
    """OAuth connector for Flipkart sellers."""

    provider = Provider.FLIPKART.value
    display_name = "Flipkart"
    scopes = ["Seller_Api"]
    auth_model = AuthModel.AUTH_CODE_SECRET
    supports_refresh = True

    def required_settings(self) -> Dict[str, str]:
        return {
            "FLIPKART_APP_ID": self._settings.flipkart_app_id,
            "FLIPKART_APP_SECRET": self._settings.flipkart_app_secret,
        }

    def _client_auth(self) -> httpx.BasicAuth:
        return httpx.BasicAuth(self._settings.flipkart_app_id, self._settings.flipkart_app_secret)

    def get_auth_url(
        self,
        state: str,
        code_challenge: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> str:
        params = {
            "client_id": self._settings.flipkart_app_id,
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
        return self._grant("token exchange", data)

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
            data={"grant_type": "refresh_token", "refresh_token": refresh_token},
        )
        return self._grant("token refresh", data)

    async def identify(
        self,
        access_token: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> ExternalIdentity:
        data = await self._json(
            "identity",
            "GET",
            f"{_API_BASE}/v3/profile",
            headers={"Authorization": f"Bearer {access_token}"},
        )
        return self._parse_identity(FlipkartProfileResponse, data)
