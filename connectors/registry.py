"""
ConnectorRegistry — builds and provides access to all marketplace connectors.

The registry is constructed from an explicit ``Settings`` object at startup
(see ``api.dependencies``); there is no module-level singleton.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Type

import httpx

from config.settings import Settings
from connectors.base import BaseConnector
from connectors.bigcommerce import BigCommerceConnector
from connectors.ebay import EbayConnector
from connectors.etsy import EtsyConnector
from connectors.flipkart import FlipkartConnector
from connectors.prestashop import PrestaShopConnector
from connectors.shopify import ShopifyConnector
from connectors.snapdeal import SnapDealConnector
from connectors.square import SquareConnector
from utils.schemas import ProviderInfo

logger = logging.getLogger(__name__)

# ── Every known connector; register new ones here ────────────────────────

CONNECTOR_CLASSES: List[Type[BaseConnector]] = [
    ShopifyConnector,
    SquareConnector,
    EtsyConnector,
    FlipkartConnector,
    SnapDealConnector,
    EbayConnector,
    BigCommerceConnector,
    PrestaShopConnector,
]


class ConnectorRegistry:
    """Lookup table of connectors keyed by provider slug."""

    def __init__(
        self,
        settings: Settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._connectors: Dict[str, BaseConnector] = {}
        for cls in CONNECTOR_CLASSES:
            conn = cls(settings, transport=transport)
            self._connectors[conn.provider] = conn
            missing = conn.missing_config()
            if missing:
                logger.warning(
                    "Connector %s not configured — missing %s",
                    conn.provider,
                    ", ".join(missing),
                )
            else:
                logger.info("Connector registered: %s (%s)", conn.display_name, conn.provider)

    def get(self, provider: str) -> Optional[BaseConnector]:
        """Get a connector by provider slug (configured or not)."""
        return self._connectors.get(provider)

    def list_providers(self) -> List[ProviderInfo]:
        """Return info about all known connectors."""
        return [
            ProviderInfo(
                provider=c.provider,
                display_name=c.display_name,
                auth_model=c.auth_model,
                configured=c.is_configured(),
            )
            for c in self._connectors.values()
        ]

    def list_configured(self) -> List[str]:
        """Return slugs of connectors with complete configuration."""
        return [name for name, c in self._connectors.items() if c.is_configured()]

    def __contains__(self, provider: str) -> bool:
        return provider in self._connectors
