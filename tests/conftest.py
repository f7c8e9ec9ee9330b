"""
Shared fixtures: settings, an on-disk SQLite database, a scripted upstream
for provider HTTP calls, and a fully wired app behind ``ASGITransport``.
"""

from __future__ import annotations

import json
from typing import Any, Callable, Dict, List, Tuple, Union

import httpx
import pytest
import pytest_asyncio

from config.settings import Settings
from connectors.encryption import TokenVault
from connectors.registry import ConnectorRegistry
from connectors.repository import ConnectionRepository
from database.session import create_engine, create_session_factory, init_models

TEST_ENCRYPTION_KEY = "test-encryption-key-0123456789abcdef"
INTERNAL_SECRET = "internal-secret-for-workers-0123456789"

Responder = Union[Tuple[int, Any], Callable[[httpx.Request], httpx.Response]]


def make_settings(tmp_path, **overrides: Any) -> Settings:
    values: Dict[str, Any] = dict(
        app_env="development",
        app_url="https://app.example.com",
        database_url=f"sqlite+aiosqlite:///{tmp_path}/test.db",
        token_encryption_key=TEST_ENCRYPTION_KEY,
        internal_api_secret=INTERNAL_SECRET,
        shopify_api_key="shopify-key",
        shopify_api_secret="shopify-secret",
        square_application_id="sq-app-id",
        square_application_secret="sq-app-secret",
        etsy_api_key="etsy-key",
        flipkart_app_id="fk-app",
        flipkart_app_secret="fk-secret",
        snapdeal_client_id="sd-client",
        snapdeal_auth_token="sd-app-token",
        ebay_client_id="ebay-app",
        ebay_client_secret="ebay-secret",
        ebay_ru_name="Acme-Seller-RuName",
        bigcommerce_client_id="bc-client",
        bigcommerce_client_secret="bc-secret",
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


class MockUpstream:
    """
    Scripted provider endpoints for ``httpx.MockTransport``.

    Routes are keyed by method and URL without the query string.  A route
    is either ``(status, body)`` or a callable taking the request.
    """

    def __init__(self) -> None:
        self.routes: Dict[Tuple[str, str], Responder] = {}
        self.calls: List[httpx.Request] = []

    def add(self, method: str, url: str, status: int = 200, body: Any = None) -> None:
        self.routes[(method.upper(), url)] = (status, body)

    def add_handler(self, method: str, url: str, handler: Callable[[httpx.Request], httpx.Response]) -> None:
        self.routes[(method.upper(), url)] = handler

    @staticmethod
    def _key(request: httpx.Request) -> Tuple[str, str]:
        url = request.url
        return request.method, f"{url.scheme}://{url.host}{url.path}"

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        route = self.routes.get(self._key(request))
        if route is None:
            return httpx.Response(404, json={"error": "not scripted"})
        if callable(route):
            return route(request)
        status, body = route
        if isinstance(body, str):
            return httpx.Response(status, text=body)
        return httpx.Response(status, json=body if body is not None else {})

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def calls_to(self, method: str, url: str) -> List[httpx.Request]:
        return [r for r in self.calls if self._key(r) == (method.upper(), url)]

    @staticmethod
    def body(request: httpx.Request) -> Dict[str, Any]:
        return json.loads(request.content.decode())


@pytest.fixture
def settings(tmp_path) -> Settings:
    return make_settings(tmp_path)


@pytest.fixture
def vault() -> TokenVault:
    return TokenVault(TEST_ENCRYPTION_KEY)


@pytest.fixture
def upstream() -> MockUpstream:
    return MockUpstream()


@pytest.fixture
def registry(settings, upstream) -> ConnectorRegistry:
    return ConnectorRegistry(settings, transport=upstream.transport)


@pytest_asyncio.fixture
async def session_factory(settings):
    engine = create_engine(settings.database_url)
    await init_models(engine)
    yield create_session_factory(engine)
    await engine.dispose()


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def repository(db, vault) -> ConnectionRepository:
    return ConnectionRepository(db, vault)


async def build_client(settings: Settings, upstream: MockUpstream, **app_kwargs: Any) -> Tuple[Any, httpx.AsyncClient]:
    from main import create_app

    app = create_app(settings, transport=upstream.transport, **app_kwargs)
    await init_models(app.state.engine)
    client = httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app),
        base_url="http://testserver",
        follow_redirects=False,
    )
    return app, client


@pytest_asyncio.fixture
async def app_client(settings, upstream):
    app, client = await build_client(settings, upstream)
    async with client:
        yield app, client
    await app.state.engine.dispose()


async def register_user(client: httpx.AsyncClient, email: str = "seller@example.com") -> str:
    resp = await client.post(
        "/api/auth/register",
        json={"username": "seller", "email": email, "password": "correct-horse-battery"},
    )
    assert resp.status_code == 200, resp.text
    return resp.json()["user_id"]
