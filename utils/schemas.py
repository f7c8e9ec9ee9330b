"""
Pydantic schemas and enums shared by the connectors, the repository and
the HTTP layer.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, SecretStr, StrictInt, StrictStr, field_validator


# ═══════════════════════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════════════════════


class Provider(str, Enum):
    SHOPIFY = "shopify"
    SQUARE = "square"
    ETSY = "etsy"
    FLIPKART = "flipkart"
    SNAPDEAL = "snapdeal"
    PRESTASHOP = "prestashop"
    EBAY = "ebay"
    BIGCOMMERCE = "bigcommerce"


class AuthModel(str, Enum):
    AUTH_CODE_PKCE = "authorization_code_pkce"
    AUTH_CODE_SECRET = "authorization_code_secret"
    IMPLICIT_TOKEN = "implicit_redirect_token"
    STATIC_BEARER = "static_bearer"


class ConnectionStatus(str, Enum):
    PENDING = "PENDING"
    CONNECTED = "CONNECTED"
    ERROR = "ERROR"
    DISCONNECTED = "DISCONNECTED"


class FlowState(str, Enum):
    INITIATED = "INITIATED"
    AWAITING_CALLBACK = "AWAITING_CALLBACK"
    VALIDATED = "VALIDATED"
    CONNECTED = "CONNECTED"
    REJECTED = "REJECTED"


# ═══════════════════════════════════════════════════════════════════════════════
# Adapter results
# ═══════════════════════════════════════════════════════════════════════════════


# Longer lifetimes are treated as a malformed token response.
MAX_EXPIRES_IN_SECONDS = 10 * 365 * 24 * 3600


class TokenGrant(BaseModel):
    """
    Result of a code exchange or a refresh.

    Tokens are ``SecretStr`` so an accidental ``repr`` or log line never
    prints them.
    """

    access_token: SecretStr
    refresh_token: Optional[SecretStr] = None
    expires_in: Optional[int] = Field(default=None, gt=0, le=MAX_EXPIRES_IN_SECONDS)
    expires_at: Optional[datetime] = None
    provider_meta: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("access_token")
    @classmethod
    def _non_empty(cls, value: SecretStr) -> SecretStr:
        if not value.get_secret_value().strip():
            raise ValueError("access_token must be a non-empty string")
        return value

    def expiry(self, now: datetime) -> Optional[datetime]:
        """
        Absolute expiry to persist.

        Only refreshable grants are time-bound; a grant without a refresh
        token is stored as permanent.
        """
        if self.refresh_token is None:
            return None
        if self.expires_at is not None:
            return self.expires_at
        if self.expires_in is not None:
            return now + timedelta(seconds=self.expires_in)
        return None


class ExternalIdentity(BaseModel):
    external_id: StrictStr = Field(..., min_length=1)
    external_name: StrictStr = Field(..., min_length=1)

    @field_validator("external_id", "external_name")
    @classmethod
    def _strip(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be blank")
        return value


# ── Identity responses, one variant per provider ─────────────────────────────
# Extra fields are ignored; the fields we rely on are strictly typed so a
# malformed response fails at the adapter boundary.


class _IdentityResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    def to_identity(self) -> ExternalIdentity:  # pragma: no cover - abstract
        raise NotImplementedError


class ShopifyShop(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: StrictInt
    name: StrictStr


class ShopifyShopResponse(_IdentityResponse):
    provider: Literal["shopify"] = "shopify"
    shop: ShopifyShop

    def to_identity(self) -> ExternalIdentity:
        return ExternalIdentity(external_id=str(self.shop.id), external_name=self.shop.name)


class SquareMerchant(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: StrictStr
    business_name: Optional[StrictStr] = None


class SquareMerchantResponse(_IdentityResponse):
    provider: Literal["square"] = "square"
    merchant: Union[SquareMerchant, List[SquareMerchant]]

    def to_identity(self) -> ExternalIdentity:
        merchant = self.merchant
        if isinstance(merchant, list):
            if not merchant:
                raise ValueError("merchant list is empty")
            merchant = merchant[0]
        name = merchant.business_name or f"Merchant {merchant.id}"
        return ExternalIdentity(external_id=merchant.id, external_name=name)


class EtsyUserResponse(_IdentityResponse):
    provider: Literal["etsy"] = "etsy"
    user_id: StrictInt
    login_name: StrictStr

    def to_identity(self) -> ExternalIdentity:
        return ExternalIdentity(external_id=str(self.user_id), external_name=self.login_name)


class FlipkartProfileResponse(_IdentityResponse):
    provider: Literal["flipkart"] = "flipkart"
    seller_id: StrictStr = Field(..., alias="sellerId")
    seller_name: StrictStr = Field(..., alias="sellerName")

    def to_identity(self) -> ExternalIdentity:
        return ExternalIdentity(external_id=self.seller_id, external_name=self.seller_name)


class SnapDealSellerResponse(_IdentityResponse):
    provider: Literal["snapdeal"] = "snapdeal"
    seller_id: StrictStr = Field(..., alias="sellerId")
    seller_name: StrictStr = Field(..., alias="sellerName")

    def to_identity(self) -> ExternalIdentity:
        return ExternalIdentity(external_id=self.seller_id, external_name=self.seller_name)


class PrestaShopShop(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: StrictStr


class PrestaShopShopResponse(_IdentityResponse):
    provider: Literal["prestashop"] = "prestashop"
    shop: PrestaShopShop
    store_url: StrictStr

    def to_identity(self) -> ExternalIdentity:
        return ExternalIdentity(external_id=self.store_url, external_name=self.shop.name)


class EbayUserResponse(_IdentityResponse):
    provider: Literal["ebay"] = "ebay"
    user_id: StrictStr = Field(..., alias="userId")
    username: StrictStr

    def to_identity(self) -> ExternalIdentity:
        return ExternalIdentity(external_id=self.user_id, external_name=self.username)


class BigCommerceStoreResponse(_IdentityResponse):
    """``/v2/store`` body plus the store hash taken from the callback context."""

    provider: Literal["bigcommerce"] = "bigcommerce"
    store_hash: StrictStr
    name: Optional[StrictStr] = None

    def to_identity(self) -> ExternalIdentity:
        name = (self.name or "").strip() or f"Store {self.store_hash}"
        return ExternalIdentity(external_id=self.store_hash, external_name=name)


# ═══════════════════════════════════════════════════════════════════════════════
# Repository read models
# ═══════════════════════════════════════════════════════════════════════════════


class ConnectionView(BaseModel):
    """What listing UIs may see: identity and status, never token material."""

    model_config = ConfigDict(from_attributes=True)

    provider: Provider
    status: ConnectionStatus
    external_id: Optional[str] = None
    external_name: Optional[str] = None
    connected_at: Optional[datetime] = None
    token_expiry: Optional[datetime] = None


class StoredCredentials(BaseModel):
    """Decrypted credential material; only the token manager reads this."""

    user_id: str
    provider: Provider
    status: ConnectionStatus
    access_token: Optional[SecretStr] = None
    refresh_token: Optional[SecretStr] = None
    token_expiry: Optional[datetime] = None
    provider_meta: Dict[str, Any] = Field(default_factory=dict)


# ═══════════════════════════════════════════════════════════════════════════════
# HTTP request / response bodies
# ═══════════════════════════════════════════════════════════════════════════════


class DisconnectRequest(BaseModel):
    provider: Provider


class StaticConnectRequest(BaseModel):
    store_url: str = Field(..., min_length=1)
    api_key: str = Field(..., min_length=1)


class ProviderInfo(BaseModel):
    provider: Provider
    display_name: str
    auth_model: AuthModel
    configured: bool


class ReencryptionReport(BaseModel):
    """Outcome of re-encrypting every stored connection under the current key."""

    rotated: int = 0
    no_tokens: int = 0
    failed: int = 0


class TokenHealth(BaseModel):
    provider: Provider
    status: ConnectionStatus
    token_expiry: Optional[datetime] = None
