"""
SquareConnector — OAuth 2.0 with PKCE.

Access tokens last 30 days and both tokens rotate on every refresh.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional
from urllib.parse import urlencode

from pydantic import ValidationError

from connectors import http
from connectors.base import BaseConnector
from connectors.errors import UpstreamExchangeFailed
from utils.schemas import AuthModel, ExternalIdentity, Provider, SquareMerchantResponse, TokenGrant

logger = logging.getLogger(__name__)

_AUTH_URL = "https://connect.squareup.com/oauth2/authorize"
_TOKEN_URL = "https://connect.squareup.com/oauth2/token"
_API_BASE = "https://connect.squareup.com/v2"
SQUARE_VERSION = "2024-01-18"
_DEFAULT_LIFETIME = timedelta(days=30)


def parse_expires_at(value: Any, now: Optional[datetime] = None) -> datetime:
    """Parse Square's ISO ``expires_at``; malformed or missing means 30 days."""
    now = now or datetime.now(timezone.utc)
    if isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return now + _DEFAULT_LIFETIME
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed
    return now + _DEFAULT_LIFETIME


class SquareConnector(BaseConnector):
    """OAuth connector for Square sellers."""

    provider = Provider.SQUARE.value
    display_name = "Square"
    scopes = [
        "ORDERS_READ",
        "ITEMS_READ",
        "MERCHANT_PROFILE_READ",
        "PAYMENTS_READ",
        "INVENTORY_READ",
    ]
    auth_model = AuthModel.AUTH_CODE_PKCE
    supports_refresh = True

    def required_settings(self) -> Dict[str, str]:
        return {
            "SQUARE_APPLICATION_ID": self._settings.square_application_id,
            "SQUARE_APPLICATION_SECRET": self._settings.square_application_secret,
        }

    def get_auth_url(
        self,
        state: str,
        code_challenge: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> str:
        params = {
            "client_id": self._settings.square_application_id,
            "response_type": "code",
            "scope": " ".join(self.scopes),
            "redirect_uri": self.redirect_uri,
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
        data = await self._token_request(
            "token exchange",
            {
                "code": code,
                "grant_type": "authorization_code",
                "redirect_uri": self.redirect_uri,
                "code_verifier": code_verifier,
            },
        )
        return self._square_grant("token exchange", data)

    async def refresh_access_token(
        self,
        refresh_token: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> TokenGrant:
        data = await self._token_request(
            "token refresh",
            {"refresh_token": refresh_token, "grant_type": "refresh_token"},
        )
        return self._square_grant("token refresh", data)

    async def identify(
        self,
        access_token: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> ExternalIdentity:
        data = await self._json(
            "identity",
            "GET",
            f"{_API_BASE}/merchants/me",
            headers={
                "Authorization": f"Bearer {access_token}",
                "Square-Version": SQUARE_VERSION,
            },
        )
        return self._parse_identity(SquareMerchantResponse, data)

    # ── Helpers ─────────────────────────────────────────────────────────

    async def _token_request(self, operation: str, body: Dict[str, Any]) -> Dict[str, Any]:
        payload = {
            "client_id": self._settings.square_application_id,
            "client_secret": self._settings.square_application_secret,
            **body,
        }
        return await self._json(
            operation,
            "POST",
            _TOKEN_URL,
            json=payload,
            headers={"Square-Version": SQUARE_VERSION},
        )

    def _square_grant(self, operation: str, data: Dict[str, Any]) -> TokenGrant:
        access = http.require_str(self.provider, operation, data, "access_token")
        refresh = http.require_str(self.provider, operation, data, "refresh_token")
        meta = {}
        if http.optional_str(data, "merchant_id"):
            meta["merchant_id"] = data["merchant_id"]
        try:
            return TokenGrant(
                access_token=access,
                refresh_token=refresh,
                expires_at=parse_expires_at(data.get("expires_at")),
                provider_meta=meta,
            )
        except ValidationError as exc:
            raise UpstreamExchangeFailed(self.provider, operation, None, "malformed token response") from exc
