"""
BigCommerceConnector — app-install OAuth with permanent store tokens.

The callback carries ``context=stores/<hash>`` next to the code; the store
hash is read from that trusted parameter only, never from the token
response.  Tokens stay valid until the app is uninstalled.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, Mapping, Optional
from urllib.parse import urlencode

from pydantic import ValidationError

from connectors import http
from connectors.base import BaseConnector
from connectors.errors import CsrfValidationFailed, MissingCallbackParams, UpstreamExchangeFailed
from utils.schemas import AuthModel, BigCommerceStoreResponse, ExternalIdentity, Provider, TokenGrant

logger = logging.getLogger(__name__)

_AUTH_URL = "https://login.bigcommerce.com/oauth2/authorize"
_TOKEN_URL = "https://login.bigcommerce.com/oauth2/token"
_API_BASE = "https://api.bigcommerce.com/stores"
_CONTEXT_RE = re.compile(r"^stores/([a-z0-9]+)$", re.IGNORECASE)


def parse_store_hash(context: Optional[str]) -> str:
    match = _CONTEXT_RE.match(context or "")
    if not match:
        raise CsrfValidationFailed("invalid BigCommerce store context")
    return match.group(1)


class BigCommerceConnector(BaseConnector):
    """OAuth connector for BigCommerce stores."""

    provider = Provider.BIGCOMMERCE.value
    display_name = "BigCommerce"
    scopes = ["store_v2_orders", "store_v2_products", "store_v2_information"]
    auth_model = AuthModel.AUTH_CODE_SECRET
    supports_refresh = False

    def required_settings(self) -> Dict[str, str]:
        return {
            "BIGCOMMERCE_CLIENT_ID": self._settings.bigcommerce_client_id,
            "BIGCOMMERCE_CLIENT_SECRET": self._settings.bigcommerce_client_secret,
        }

    def prepare_callback(self, query: Mapping[str, str]) -> Dict[str, Any]:
        context = query.get("context")
        scope = query.get("scope")
        if not context or not scope:
            raise MissingCallbackParams("bigcommerce callback needs context and scope")
        return {"context": context, "scope": scope, "store_hash": parse_store_hash(context)}

    def get_auth_url(
        self,
        state: str,
        code_challenge: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> str:
        params = {
            "client_id": self._settings.bigcommerce_client_id,
            "response_type": "code",
            "scope": " ".join(self.scopes),
            "redirect_uri": self.redirect_uri,
            "state": state,
        }
        return f"{_AUTH_URL}?{urlencode(params)}"

    async def exchange_code(
        self,
        code: str,
        code_verifier: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> TokenGrant:
        context = context or {}
        store_hash = parse_store_hash(context.get("context"))
        data = await self._json(
            "token exchange",
            "POST",
            _TOKEN_URL,
            data={
                "client_id": self._settings.bigcommerce_client_id,
                "client_secret": self._settings.bigcommerce_client_secret,
                "code": code,
                "context": context["context"],
                "scope": context.get("scope", ""),
                "grant_type": "authorization_code",
                "redirect_uri": self.redirect_uri,
            },
        )
        access = http.require_str(self.provider, "token exchange", data, "access_token")
        try:
            return TokenGrant(access_token=access, provider_meta={"store_hash": store_hash})
        except ValidationError as exc:
            raise UpstreamExchangeFailed(
                self.provider, "token exchange", None, "malformed token response"
            ) from exc

    async def identify(
        self,
        access_token: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> ExternalIdentity:
        store_hash = (context or {}).get("store_hash")
        if not store_hash:
            raise CsrfValidationFailed("store hash missing from flow context")
        data = await self._json(
            "identity",
            "GET",
            f"{_API_BASE}/{store_hash}/v2/store",
            headers={"X-Auth-Token": access_token, "Accept": "application/json"},
        )
        return self._parse_identity(BigCommerceStoreResponse, {**data, "store_hash": store_hash})
