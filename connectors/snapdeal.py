"""
SnapDealConnector — redirect-based seller authorization.

SnapDeal is not standard OAuth: the seller authorizes on SnapDeal's page and
comes back with the seller token in the callback URL (``response_type=token``).
Every API call also needs the app-level client id and ``X-Auth-Token``.
The seller token does not expire and cannot be refreshed.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional
from urllib.parse import urlencode

from pydantic import ValidationError

from connectors.base import BaseConnector
from connectors.errors import MissingCallbackParams
from utils.schemas import AuthModel, ExternalIdentity, Provider, SnapDealSellerResponse, TokenGrant

logger = logging.getLogger(__name__)

_AUTH_URL = "https://auth.snapdeal.com/oauth/authorize"
_API_BASE = "https://apigateway.snapdeal.com/seller-api"


class SnapDealConnector(BaseConnector):
    """Implicit-token connector for SnapDeal sellers."""

    provider = Provider.SNAPDEAL.value
    display_name = "SnapDeal"
    scopes = []
    auth_model = AuthModel.IMPLICIT_TOKEN
    supports_refresh = False
    callback_token_params = ("token", "X-Seller-AuthZ-Token")

    def required_settings(self) -> Dict[str, str]:
        return {
            "SNAPDEAL_CLIENT_ID": self._settings.snapdeal_client_id,
            "SNAPDEAL_AUTH_TOKEN": self._settings.snapdeal_auth_token,
        }

    def get_auth_url(
        self,
        state: str,
        code_challenge: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> str:
        params = {
            "client_id": self._settings.snapdeal_client_id,
            "redirect_uri": self.redirect_uri,
            "state": state,
            "response_type": "token",
        }
        return f"{_AUTH_URL}?{urlencode(params)}"

    async def exchange_code(
        self,
        code: str,
        code_verifier: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> TokenGrant:
        """The callback already carries the seller token; pass it through."""
        try:
            return TokenGrant(access_token=code)
        except ValidationError as exc:
            raise MissingCallbackParams("snapdeal callback carried an empty token") from exc

    async def identify(
        self,
        access_token: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> ExternalIdentity:
        data = await self._json(
            "identity",
            "GET",
            f"{_API_BASE}/seller",
            headers={
                "clientId": self._settings.snapdeal_client_id,
                "X-Auth-Token": self._settings.snapdeal_auth_token,
                "X-Seller-AuthZ-Token": access_token,
                "Accept": "application/json",
            },
        )
        return self._parse_identity(SnapDealSellerResponse, data)
