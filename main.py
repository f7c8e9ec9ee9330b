"""
Marketplace Connect — application entry point.
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from typing import Optional

import httpx
import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.middleware import register_middleware
from auth.routes import router as auth_router
from config.settings import Settings, get_settings
from connectors.encryption import TokenVault
from connectors.registry import ConnectorRegistry
from connectors.routes import auth_router as connect_router
from connectors.routes import marketplace_router
from connectors.state import StateStore
from database.session import create_engine, create_session_factory, init_models

logger = logging.getLogger(__name__)


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=logging.DEBUG if settings.debug else settings.log_level.upper(),
        format="%(asctime)s  %(levelname)-8s  %(name)s — %(message)s",
        stream=sys.stdout,
    )
    for _noisy in ("httpcore", "httpx", "aiosqlite", "urllib3"):
        logging.getLogger(_noisy).setLevel(logging.WARNING)


def create_app(
    settings: Optional[Settings] = None,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    create_tables: bool = False,
) -> FastAPI:
    """
    Build the application around one immutable ``Settings`` object.

    ``transport`` is handed to every connector's HTTP client (tests pass an
    ``httpx.MockTransport``).  Unsafe production configuration raises
    ``ConfigurationError`` here, before anything is served.
    """
    settings = settings or get_settings()
    settings.validate_for_startup()

    engine = create_engine(settings.database_url, echo=settings.debug)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if create_tables:
            await init_models(engine)
        logger.info(
            "Application ready (%s); configured providers: %s",
            settings.app_env,
            ", ".join(app.state.registry.list_configured()) or "none",
        )
        yield
        await engine.dispose()

    app = FastAPI(
        title="Marketplace Connect",
        version="1.0.0",
        description="Marketplace OAuth connections and credential lifecycle.",
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.vault = TokenVault.from_settings(settings)
    app.state.states = StateStore(settings.oauth_state_secret, secure_cookies=settings.is_production)
    app.state.registry = ConnectorRegistry(settings, transport=transport)
    app.state.engine = engine
    app.state.session_factory = create_session_factory(engine)

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_middleware(app)

    # Session auth is mounted first so its paths win over /{provider}
    app.include_router(auth_router, prefix="/api/auth")
    app.include_router(connect_router, prefix="/api/auth")
    app.include_router(marketplace_router, prefix="/api")

    return app


if __name__ == "__main__":
    _settings = get_settings()
    configure_logging(_settings)
    uvicorn.run(
        create_app(_settings, create_tables=not _settings.is_production),
        host=_settings.host,
        port=_settings.port,
        log_level="debug" if _settings.debug else "info",
    )
