"""
ShopifyConnector — per-shop OAuth with PKCE and expiring offline tokens.

Every Shopify endpoint lives on the merchant's own ``*.myshopify.com``
domain, so the shop is part of the flow context from initiate to refresh.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import re
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import urlencode

from connectors.base import BaseConnector
from connectors.errors import CsrfValidationFailed, MissingCallbackParams
from utils.schemas import AuthModel, ExternalIdentity, Provider, ShopifyShopResponse, TokenGrant

logger = logging.getLogger(__name__)

API_VERSION = "2024-01"
_SHOP_RE = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9-]*\.myshopify\.com$")


def is_valid_shop_domain(shop: Optional[str]) -> bool:
    return bool(shop) and bool(_SHOP_RE.match(shop))


def compute_hmac(query: Mapping[str, str], secret: str) -> str:
    """Hex HMAC-SHA256 over the sorted query string minus ``hmac`` itself."""
    message = "&".join(f"{k}={query[k]}" for k in sorted(query) if k != "hmac")
    return hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()


class ShopifyConnector(BaseConnector):
    """OAuth connector for Shopify stores."""

    provider = Provider.SHOPIFY.value
    display_name = "Shopify"
    auth_model = AuthModel.AUTH_CODE_PKCE
    supports_refresh = True

    @property
    def scopes(self) -> List[str]:
        return [s.strip() for s in self._settings.shopify_scopes.split(",") if s.strip()]

    def required_settings(self) -> Dict[str, str]:
        return {
            "SHOPIFY_API_KEY": self._settings.shopify_api_key,
            "SHOPIFY_API_SECRET": self._settings.shopify_api_secret,
        }

    # ── Flow hooks ──────────────────────────────────────────────────────

    def prepare_initiate(self, query: Mapping[str, str]) -> Dict[str, Any]:
        shop = (query.get("shop") or "").strip().lower()
        if not shop:
            raise MissingCallbackParams("shop parameter is required")
        if not is_valid_shop_domain(shop):
            raise CsrfValidationFailed("invalid shop domain")
        return {"shop": shop}

    def prepare_callback(self, query: Mapping[str, str]) -> Dict[str, Any]:
        shop = query.get("shop")
        if not shop:
            raise MissingCallbackParams("shop parameter is required")
        if not is_valid_shop_domain(shop):
            raise CsrfValidationFailed("invalid shop domain")

        presented = query.get("hmac", "")
        expected = compute_hmac(query, self._settings.shopify_api_secret)
        if not presented or not hmac.compare_digest(presented.encode("utf-8"), expected.encode("utf-8")):
            raise CsrfValidationFailed("callback HMAC mismatch")
        return {"shop": shop}

    # ── OAuth ───────────────────────────────────────────────────────────

    def get_auth_url(
        self,
        state: str,
        code_challenge: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> str:
        shop = self._shop(context)
        params = {
            "client_id": self._settings.shopify_api_key,
            "scope": ",".join(self.scopes),
            "redirect_uri": self.redirect_uri,
            "state": state,
            "code_challenge": code_challenge,
            "code_challenge_method": "S256",
        }
        return f"https://{shop}/admin/oauth/authorize?{urlencode(params)}"

    async def exchange_code(
        self,
        code: str,
        code_verifier: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> TokenGrant:
        shop = self._shop(context)
        data = await self._json(
            "token exchange",
            "POST",
            f"https://{shop}/admin/oauth/access_token",
            json={
                "client_id": self._settings.shopify_api_key,
                "client_secret": self._settings.shopify_api_secret,
                "code": code,
                "code_verifier": code_verifier,
                "expiring": 1,
            },
        )
        return self._grant("token exchange", data, provider_meta={"shop": shop})

    async def refresh_access_token(
        self,
        refresh_token: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> TokenGrant:
        shop = self._shop(context)
        data = await self._json(
            "token refresh",
            "POST",
            f"https://{shop}/admin/oauth/access_token",
            json={
                "client_id": self._settings.shopify_api_key,
                "client_secret": self._settings.shopify_api_secret,
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
            },
        )
        return self._grant("token refresh", data, provider_meta={"shop": shop})

    async def identify(
        self,
        access_token: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> ExternalIdentity:
        shop = self._shop(context)
        data = await self._json(
            "identity",
            "GET",
            f"https://{shop}/admin/api/{API_VERSION}/shop.json",
            headers={"X-Shopify-Access-Token": access_token},
        )
        return self._parse_identity(ShopifyShopResponse, data)

    # ── Helpers ─────────────────────────────────────────────────────────

    @staticmethod
    def _shop(context: Optional[Dict[str, Any]]) -> str:
        shop = (context or {}).get("shop")
        if not is_valid_shop_domain(shop):
            raise CsrfValidationFailed("shop domain missing from flow context")
        return shop
