"""
PrestaShopConnector — static bearer credentials (store URL + webservice key).

There is no redirect handshake: the seller pastes the store URL and a
webservice API key, we verify them against the store and keep the key as a
permanent access token.  The store URL is user-supplied, so it is
normalized and rejected if it points at anything but a public host.
"""

from __future__ import annotations

import ipaddress
import logging
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlsplit

import httpx

from connectors.base import BaseConnector
from connectors.errors import InvalidStaticCredentials, UpstreamExchangeFailed
from utils.schemas import AuthModel, ExternalIdentity, PrestaShopShopResponse, Provider, TokenGrant

logger = logging.getLogger(__name__)

DEFAULT_SHOP_NAME = "PrestaShop Store"
_MIN_KEY_LENGTH = 8
_MAX_KEY_LENGTH = 128


def normalize_store_url(raw: str) -> str:
    """
    Return the store origin (``https://host[:port]``) or raise.

    Rules: https only, no embedded credentials, no localhost, no IPv6,
    no private/reserved IPv4, and the host must contain a dot.
    """
    value = (raw or "").strip()
    if not value:
        raise InvalidStaticCredentials("Store URL is required")
    if "://" not in value:
        value = f"https://{value}"

    try:
        parts = urlsplit(value)
        port = parts.port
    except ValueError as exc:
        raise InvalidStaticCredentials("Invalid store URL format") from exc

    if parts.scheme.lower() != "https":
        raise InvalidStaticCredentials("Store URL must use HTTPS")
    if parts.username or parts.password:
        raise InvalidStaticCredentials("Store URL must not contain credentials")

    host = (parts.hostname or "").lower()
    if not host:
        raise InvalidStaticCredentials("Store URL must have a valid hostname")
    if host == "localhost" or host.endswith(".localhost"):
        raise InvalidStaticCredentials("Store URL cannot point to localhost")
    if ":" in host or parts.netloc.startswith("["):
        raise InvalidStaticCredentials("Store URL cannot use IPv6 addresses")

    try:
        addr = ipaddress.ip_address(host)
    except ValueError:
        addr = None
    if addr is not None and (
        addr.is_private
        or addr.is_loopback
        or addr.is_link_local
        or addr.is_reserved
        or addr.is_multicast
        or addr.is_unspecified
    ):
        raise InvalidStaticCredentials("Store URL cannot point to a private or reserved address")

    if "." not in host:
        raise InvalidStaticCredentials("Store URL must be a valid domain name")

    return f"https://{host}:{port}" if port and port != 443 else f"https://{host}"


def validate_api_key(raw: str) -> str:
    """Trim and length-check a webservice key."""
    key = (raw or "").strip()
    if not _MIN_KEY_LENGTH <= len(key) <= _MAX_KEY_LENGTH:
        raise InvalidStaticCredentials(
            f"API key must be between {_MIN_KEY_LENGTH} and {_MAX_KEY_LENGTH} characters"
        )
    return key


class PrestaShopConnector(BaseConnector):
    """Static-bearer connector for self-hosted PrestaShop stores."""

    provider = Provider.PRESTASHOP.value
    display_name = "PrestaShop"
    scopes = []
    auth_model = AuthModel.STATIC_BEARER
    supports_refresh = False
    callback_token_params = ()

    # No app-level credentials; every store brings its own key.

    def get_auth_url(
        self,
        state: str,
        code_challenge: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> str:
        raise NotImplementedError("PrestaShop has no redirect authorization")

    async def exchange_code(
        self,
        code: str,
        code_verifier: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> TokenGrant:
        raise NotImplementedError("PrestaShop has no authorization code")

    async def verify_static(self, store_url: str, api_key: str) -> Tuple[TokenGrant, ExternalIdentity]:
        """Validate user input, probe the store and build a permanent grant."""
        origin = normalize_store_url(store_url)
        key = validate_api_key(api_key)
        context = {"store_url": origin}
        identity = await self.identify(key, context)
        grant = TokenGrant(access_token=key, provider_meta=context)
        return grant, identity

    async def identify(
        self,
        access_token: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> ExternalIdentity:
        store_url = (context or {}).get("store_url")
        if not store_url:
            raise InvalidStaticCredentials("store URL missing from connection context")

        data: Dict[str, Any] = {}
        try:
            data = await self._api(access_token, store_url, "shop")
        except UpstreamExchangeFailed as exc:
            # /shop can be restricted by webservice permissions; the root
            # listing still proves the key works.
            if exc.status_code != 404:
                raise

        shop = data.get("shop")
        if not isinstance(shop, dict):
            await self._api(access_token, store_url, "")
            shop = {"name": DEFAULT_SHOP_NAME}
        elif not shop.get("name"):
            shop = {"name": DEFAULT_SHOP_NAME}

        return self._parse_identity(
            PrestaShopShopResponse, {"shop": shop, "store_url": store_url}
        )

    async def _api(self, api_key: str, store_url: str, resource: str) -> Dict[str, Any]:
        return await self._json(
            "identity",
            "GET",
            f"{store_url.rstrip('/')}/api/{resource}",
            params={"output_format": "JSON"},
            auth=httpx.BasicAuth(api_key, ""),
            headers={"Accept": "application/json"},
        )
