"""
Tests for the provider adapters and the outbound HTTP helper.
"""

import base64
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest

from connectors import http
from connectors.errors import (
    CsrfValidationFailed,
    IncompleteIdentity,
    InvalidStaticCredentials,
    MissingCallbackParams,
    ProviderConfigMissing,
    UpstreamExchangeFailed,
)
from connectors.prestashop import DEFAULT_SHOP_NAME, normalize_store_url, validate_api_key
from connectors.registry import ConnectorRegistry
from connectors.shopify import compute_hmac
from connectors.square import parse_expires_at
from conftest import make_settings

SHOP = "acme-store.myshopify.com"


def _query(url: str) -> dict:
    return {k: v[0] for k, v in parse_qs(urlsplit(url).query).items()}


# ── HTTP helper ───────────────────────────────────────────────────────


class TestHttpHelper:
    def test_redact_masks_tokens_and_truncates(self):
        body = '{"error":"bad","access_token":"sk_live_123","refresh_token":"r-456"} ' + "x" * 500
        excerpt = http.redact_excerpt(body)
        assert "sk_live_123" not in excerpt
        assert "r-456" not in excerpt
        assert len(excerpt) <= 200

    def test_redact_masks_bearer(self):
        assert "abc.def" not in http.redact_excerpt("Authorization: Bearer abc.def")

    @pytest.mark.asyncio
    async def test_non_2xx_raises_with_status(self):
        transport = httpx.MockTransport(lambda r: httpx.Response(400, text='{"access_token":"leak"}'))
        with pytest.raises(UpstreamExchangeFailed) as info:
            await http.request("square", "token exchange", "POST", "https://x.test/t", transport=transport)
        assert info.value.status_code == 400
        assert "leak" not in info.value.excerpt
        assert info.value.code == "oauth_failed"

    @pytest.mark.asyncio
    async def test_transport_error_has_no_status(self):
        def boom(request):
            raise httpx.ConnectTimeout("timed out", request=request)

        with pytest.raises(UpstreamExchangeFailed) as info:
            await http.request("etsy", "identity", "GET", "https://x.test/", transport=httpx.MockTransport(boom))
        assert info.value.status_code is None

    def test_json_body_rejects_non_objects(self):
        resp = httpx.Response(200, json=[1, 2])
        with pytest.raises(UpstreamExchangeFailed):
            http.json_body("etsy", "identity", resp)


# ── Registry ──────────────────────────────────────────────────────────


class TestRegistry:
    def test_all_providers_known(self, registry):
        names = {p.provider.value for p in registry.list_providers()}
        assert names == {
            "shopify",
            "square",
            "etsy",
            "flipkart",
            "snapdeal",
            "ebay",
            "bigcommerce",
            "prestashop",
        }

    def test_missing_config_reported(self, tmp_path):
        registry = ConnectorRegistry(make_settings(tmp_path, square_application_secret=""))
        square = registry.get("square")
        assert square.missing_config() == ["SQUARE_APPLICATION_SECRET"]
        assert "square" not in registry.list_configured()
        with pytest.raises(ProviderConfigMissing) as info:
            square.ensure_configured()
        assert info.value.code == "server_misconfiguration"

    def test_unknown_provider(self, registry):
        assert registry.get("amazon") is None

    def test_redirect_uri_comes_from_settings(self, registry):
        url = registry.get("flipkart").get_auth_url("n")
        assert _query(url)["redirect_uri"] == "https://app.example.com/api/auth/flipkart/callback"


# ── Shopify ───────────────────────────────────────────────────────────


class TestShopify:
    def test_initiate_requires_valid_shop(self, registry):
        shopify = registry.get("shopify")
        with pytest.raises(MissingCallbackParams):
            shopify.prepare_initiate({})
        with pytest.raises(CsrfValidationFailed):
            shopify.prepare_initiate({"shop": "evil.example.com"})
        assert shopify.prepare_initiate({"shop": SHOP}) == {"shop": SHOP}

    def test_auth_url(self, registry):
        url = registry.get("shopify").get_auth_url("nonce", code_challenge="chal", context={"shop": SHOP})
        parts = urlsplit(url)
        assert parts.netloc == SHOP
        assert parts.path == "/admin/oauth/authorize"
        query = _query(url)
        assert query["state"] == "nonce"
        assert query["code_challenge"] == "chal"
        assert query["code_challenge_method"] == "S256"

    def test_callback_hmac(self, registry):
        shopify = registry.get("shopify")
        query = {"code": "c", "shop": SHOP, "state": "s", "timestamp": "1700000000"}
        query["hmac"] = compute_hmac(query, "shopify-secret")
        assert shopify.prepare_callback(query) == {"shop": SHOP}

        query["code"] = "tampered"
        with pytest.raises(CsrfValidationFailed):
            shopify.prepare_callback(query)

    @pytest.mark.asyncio
    async def test_exchange_and_identify(self, registry, upstream):
        upstream.add(
            "POST",
            f"https://{SHOP}/admin/oauth/access_token",
            body={"access_token": "shpat_1", "refresh_token": "shprt_1", "expires_in": 86400},
        )
        upstream.add(
            "GET",
            f"https://{SHOP}/admin/api/2024-01/shop.json",
            body={"shop": {"id": 42, "name": "Acme", "email": "x@y.z"}},
        )
        shopify = registry.get("shopify")

        grant = await shopify.exchange_code("code", code_verifier="verifier", context={"shop": SHOP})
        sent = upstream.body(upstream.calls[0])
        assert sent["code_verifier"] == "verifier"
        assert sent["expiring"] == 1
        assert grant.refresh_token.get_secret_value() == "shprt_1"
        assert grant.provider_meta == {"shop": SHOP}

        identity = await shopify.identify("shpat_1", context={"shop": SHOP})
        assert (identity.external_id, identity.external_name) == ("42", "Acme")
        assert upstream.calls[1].headers["X-Shopify-Access-Token"] == "shpat_1"

    @pytest.mark.asyncio
    async def test_identity_with_wrong_types_rejected(self, registry, upstream):
        upstream.add("GET", f"https://{SHOP}/admin/api/2024-01/shop.json", body={"shop": {"id": "42", "name": ""}})
        with pytest.raises(IncompleteIdentity):
            await registry.get("shopify").identify("t", context={"shop": SHOP})


# ── Square ────────────────────────────────────────────────────────────


class TestSquare:
    def test_parse_expires_at(self):
        now = datetime(2024, 1, 1, tzinfo=timezone.utc)
        assert parse_expires_at("2024-02-01T00:00:00Z", now) == datetime(2024, 2, 1, tzinfo=timezone.utc)
        assert parse_expires_at("garbage", now) == now + timedelta(days=30)
        assert parse_expires_at(None, now) == now + timedelta(days=30)

    @pytest.mark.asyncio
    async def test_exchange_rotating_tokens(self, registry, upstream):
        upstream.add(
            "POST",
            "https://connect.squareup.com/oauth2/token",
            body={
                "access_token": "EAAA1",
                "refresh_token": "EQAA1",
                "expires_at": "2030-01-01T00:00:00Z",
                "merchant_id": "M1",
            },
        )
        grant = await registry.get("square").exchange_code("code", code_verifier="v")
        request = upstream.calls[0]
        assert request.headers["Square-Version"] == "2024-01-18"
        assert upstream.body(request)["code_verifier"] == "v"
        assert grant.expires_at == datetime(2030, 1, 1, tzinfo=timezone.utc)
        assert grant.provider_meta == {"merchant_id": "M1"}

    @pytest.mark.asyncio
    async def test_missing_refresh_token_is_upstream_failure(self, registry, upstream):
        upstream.add("POST", "https://connect.squareup.com/oauth2/token", body={"access_token": "EAAA1"})
        with pytest.raises(UpstreamExchangeFailed):
            await registry.get("square").exchange_code("code", code_verifier="v")

    @pytest.mark.asyncio
    async def test_identity_name_fallback(self, registry, upstream):
        upstream.add("GET", "https://connect.squareup.com/v2/merchants/me", body={"merchant": {"id": "M1"}})
        identity = await registry.get("square").identify("EAAA1")
        assert identity.external_name == "Merchant M1"


# ── Etsy ──────────────────────────────────────────────────────────────


class TestEtsy:
    def test_short_refresh_buffer(self, registry):
        assert registry.get("etsy").refresh_buffer == timedelta(minutes=5)
        assert registry.get("square").refresh_buffer == timedelta(days=1)

    @pytest.mark.asyncio
    async def test_public_client_exchange(self, registry, upstream):
        upstream.add(
            "POST",
            "https://api.etsy.com/v3/public/oauth/token",
            body={"access_token": "123.abc", "refresh_token": "123.def", "expires_in": 3600},
        )
        grant = await registry.get("etsy").exchange_code("code", code_verifier="v")
        form = parse_qs(upstream.calls[0].content.decode())
        assert "client_secret" not in form
        assert form["code_verifier"] == ["v"]
        assert grant.expires_in == 3600

    @pytest.mark.asyncio
    async def test_invalid_expires_in(self, registry, upstream):
        upstream.add(
            "POST",
            "https://api.etsy.com/v3/public/oauth/token",
            body={"access_token": "a", "refresh_token": "b", "expires_in": 0},
        )
        with pytest.raises(UpstreamExchangeFailed):
            await registry.get("etsy").exchange_code("code", code_verifier="v")

    @pytest.mark.asyncio
    async def test_identify_sends_api_key(self, registry, upstream):
        upstream.add(
            "GET",
            "https://api.etsy.com/v3/application/users/me",
            body={"user_id": 987, "login_name": "crafter", "shop_id": 1},
        )
        identity = await registry.get("etsy").identify("123.abc")
        assert upstream.calls[0].headers["x-api-key"] == "etsy-key"
        assert (identity.external_id, identity.external_name) == ("987", "crafter")


# ── Flipkart ──────────────────────────────────────────────────────────


class TestFlipkart:
    @pytest.mark.asyncio
    async def test_exchange_uses_basic_auth(self, registry, upstream):
        upstream.add(
            "POST",
            "https://api.flipkart.net/oauth-service/oauth/token",
            body={"access_token": "fk-a", "refresh_token": "fk-r", "expires_in": 5184000},
        )
        await registry.get("flipkart").exchange_code("code")
        expected = "Basic " + base64.b64encode(b"fk-app:fk-secret").decode()
        assert upstream.calls[0].headers["Authorization"] == expected

    def test_scope(self, registry):
        assert _query(registry.get("flipkart").get_auth_url("n"))["scope"] == "Seller_Api"

    @pytest.mark.asyncio
    async def test_absurd_lifetime_is_upstream_failure(self, registry, upstream):
        upstream.add(
            "POST",
            "https://api.flipkart.net/oauth-service/oauth/token",
            body={"access_token": "fk-a", "refresh_token": "fk-r", "expires_in": 10**12},
        )
        with pytest.raises(UpstreamExchangeFailed) as info:
            await registry.get("flipkart").exchange_code("code")
        assert info.value.code == "oauth_failed"


# ── eBay ──────────────────────────────────────────────────────────────


class TestEbay:
    TOKEN_URL = "https://api.ebay.com/identity/v1/oauth2/token"

    def test_auth_url_uses_ru_name(self, registry):
        query = _query(registry.get("ebay").get_auth_url("n"))
        assert query["redirect_uri"] == "Acme-Seller-RuName"
        assert "sell.fulfillment" in query["scope"]
        assert "code_challenge" not in query

    def test_ten_minute_buffer(self, registry):
        assert registry.get("ebay").refresh_buffer == timedelta(minutes=10)

    @pytest.mark.asyncio
    async def test_exchange_defaults_lifetime(self, registry, upstream):
        upstream.add("POST", self.TOKEN_URL, body={"access_token": "eb-a", "refresh_token": "eb-r"})
        grant = await registry.get("ebay").exchange_code("code")

        expected = "Basic " + base64.b64encode(b"ebay-app:ebay-secret").decode()
        assert upstream.calls[0].headers["Authorization"] == expected
        assert grant.expires_in == 7200
        assert grant.refresh_token.get_secret_value() == "eb-r"

    @pytest.mark.asyncio
    async def test_exchange_requires_refresh_token(self, registry, upstream):
        upstream.add("POST", self.TOKEN_URL, body={"access_token": "eb-a", "expires_in": 7200})
        with pytest.raises(UpstreamExchangeFailed):
            await registry.get("ebay").exchange_code("code")

    @pytest.mark.asyncio
    async def test_refresh_does_not_rotate(self, registry, upstream):
        upstream.add("POST", self.TOKEN_URL, body={"access_token": "eb-a2", "expires_in": 7200})
        grant = await registry.get("ebay").refresh_access_token("eb-r")

        form = parse_qs(upstream.calls[0].content.decode())
        assert form["grant_type"] == ["refresh_token"]
        assert form["refresh_token"] == ["eb-r"]
        assert grant.refresh_token is None

    @pytest.mark.asyncio
    async def test_identity_requires_both_fields(self, registry, upstream):
        upstream.add(
            "GET",
            "https://api.ebay.com/commerce/identity/v1/user/",
            body={"userId": 12345, "username": "seller"},
        )
        with pytest.raises(IncompleteIdentity):
            await registry.get("ebay").identify("eb-a")


# ── BigCommerce ───────────────────────────────────────────────────────


class TestBigCommerce:
    TOKEN_URL = "https://login.bigcommerce.com/oauth2/token"

    def test_callback_context(self, registry):
        bigcommerce = registry.get("bigcommerce")
        context = bigcommerce.prepare_callback({"context": "stores/Ab12", "scope": "store_v2_orders"})
        assert context["store_hash"] == "Ab12"
        with pytest.raises(MissingCallbackParams):
            bigcommerce.prepare_callback({"context": "stores/Ab12"})
        with pytest.raises(CsrfValidationFailed):
            bigcommerce.prepare_callback({"context": "stores/a/b", "scope": "x"})

    @pytest.mark.asyncio
    async def test_token_is_permanent(self, registry, upstream):
        upstream.add(
            "POST",
            self.TOKEN_URL,
            body={"access_token": "bc-token", "refresh_token": "ignored", "expires_in": 60},
        )
        grant = await registry.get("bigcommerce").exchange_code(
            "code", context={"context": "stores/ab12", "scope": "store_v2_orders"}
        )

        form = parse_qs(upstream.calls[0].content.decode())
        assert form["context"] == ["stores/ab12"]
        assert form["client_secret"] == ["bc-secret"]
        assert grant.refresh_token is None
        assert grant.expiry(datetime.now(timezone.utc)) is None
        assert grant.provider_meta == {"store_hash": "ab12"}

    @pytest.mark.asyncio
    async def test_identify_uses_store_name(self, registry, upstream):
        upstream.add(
            "GET",
            "https://api.bigcommerce.com/stores/ab12/v2/store",
            body={"id": "ab12", "name": "Widget Works"},
        )
        identity = await registry.get("bigcommerce").identify("bc-token", context={"store_hash": "ab12"})
        assert upstream.calls[0].headers["X-Auth-Token"] == "bc-token"
        assert (identity.external_id, identity.external_name) == ("ab12", "Widget Works")


# ── SnapDeal ──────────────────────────────────────────────────────────


class TestSnapDeal:
    def test_implicit_token_params(self, registry):
        snapdeal = registry.get("snapdeal")
        assert _query(snapdeal.get_auth_url("n"))["response_type"] == "token"
        assert snapdeal.extract_credential({"X-Seller-AuthZ-Token": "seller-tok"}) == "seller-tok"
        assert snapdeal.extract_credential({"token": "t1", "X-Seller-AuthZ-Token": "t2"}) == "t1"
        with pytest.raises(MissingCallbackParams):
            snapdeal.extract_credential({"code": "nope"})

    @pytest.mark.asyncio
    async def test_token_is_permanent(self, registry):
        grant = await registry.get("snapdeal").exchange_code("seller-tok")
        assert grant.refresh_token is None
        assert grant.expiry(datetime.now(timezone.utc)) is None

    @pytest.mark.asyncio
    async def test_identify_headers(self, registry, upstream):
        upstream.add(
            "GET",
            "https://apigateway.snapdeal.com/seller-api/seller",
            body={"sellerId": "S1", "sellerName": "Snappy"},
        )
        await registry.get("snapdeal").identify("seller-tok")
        headers = upstream.calls[0].headers
        assert headers["clientId"] == "sd-client"
        assert headers["X-Auth-Token"] == "sd-app-token"
        assert headers["X-Seller-AuthZ-Token"] == "seller-tok"

    def test_refresh_not_supported(self, registry):
        assert registry.get("snapdeal").supports_refresh is False


# ── PrestaShop ────────────────────────────────────────────────────────


class TestPrestaShop:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("shop.example.com", "https://shop.example.com"),
            ("https://Shop.Example.com/admin/index.php?x=1", "https://shop.example.com"),
            ("https://shop.example.com:8443/", "https://shop.example.com:8443"),
            ("  https://8.8.8.8  ", "https://8.8.8.8"),
        ],
    )
    def test_normalize_accepts(self, raw, expected):
        assert normalize_store_url(raw) == expected

    @pytest.mark.parametrize(
        "raw",
        [
            "http://shop.example.com",
            "https://localhost",
            "https://127.0.0.1",
            "https://10.0.0.5",
            "https://192.168.1.1",
            "https://169.254.169.254",
            "https://[::1]",
            "https://intranet",
            "https://user:pw@shop.example.com",
            "",
        ],
    )
    def test_normalize_rejects(self, raw):
        with pytest.raises(InvalidStaticCredentials):
            normalize_store_url(raw)

    def test_api_key_length(self):
        assert validate_api_key("  ABCDEFGH12  ") == "ABCDEFGH12"
        with pytest.raises(InvalidStaticCredentials):
            validate_api_key("short")
        with pytest.raises(InvalidStaticCredentials):
            validate_api_key("k" * 129)

    @pytest.mark.asyncio
    async def test_verify_static(self, registry, upstream):
        upstream.add("GET", "https://shop.example.com/api/shop", body={"shop": {"name": "Boutique"}})
        grant, identity = await registry.get("prestashop").verify_static("shop.example.com", "KEY1234567")
        request = upstream.calls[0]
        assert request.url.params["output_format"] == "JSON"
        assert request.headers["Authorization"] == "Basic " + base64.b64encode(b"KEY1234567:").decode()
        assert identity.external_id == "https://shop.example.com"
        assert identity.external_name == "Boutique"
        assert grant.refresh_token is None
        assert grant.provider_meta == {"store_url": "https://shop.example.com"}

    @pytest.mark.asyncio
    async def test_restricted_shop_resource_falls_back(self, registry, upstream):
        upstream.add("GET", "https://shop.example.com/api/shop", status=404, body={"errors": []})
        upstream.add("GET", "https://shop.example.com/api/", body={"api": {}})
        _, identity = await registry.get("prestashop").verify_static("shop.example.com", "KEY1234567")
        assert identity.external_name == DEFAULT_SHOP_NAME

    @pytest.mark.asyncio
    async def test_bad_key_is_upstream_failure(self, registry, upstream):
        upstream.add("GET", "https://shop.example.com/api/shop", status=401, body="Unauthorized")
        with pytest.raises(UpstreamExchangeFailed) as info:
            await registry.get("prestashop").verify_static("shop.example.com", "KEY1234567")
        assert info.value.status_code == 401
