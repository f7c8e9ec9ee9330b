"""
Re-encrypt every stored marketplace token under the current key.

Usage:
    1. Set TOKEN_ENCRYPTION_KEY to the new key and list the old one in
       TOKEN_ENCRYPTION_PREVIOUS_KEYS.
    2. python reencrypt_tokens.py
    3. Once it reports no failures, drop the old key from
       TOKEN_ENCRYPTION_PREVIOUS_KEYS and redeploy.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from typing import Optional

from config.settings import ConfigurationError, Settings, get_settings
from connectors.encryption import TokenVault
from connectors.repository import ConnectionRepository
from database.session import create_engine, create_session_factory
from main import configure_logging
from utils.schemas import ReencryptionReport

logger = logging.getLogger("reencrypt_tokens")


async def reencrypt(settings: Settings) -> ReencryptionReport:
    if not settings.token_encryption_key:
        raise ConfigurationError("TOKEN_ENCRYPTION_KEY must be set to the new key")
    if not settings.previous_encryption_keys:
        logger.warning("TOKEN_ENCRYPTION_PREVIOUS_KEYS is empty; tokens are only re-wrapped")

    vault = TokenVault(settings.token_encryption_key, settings.previous_encryption_keys)
    engine = create_engine(settings.database_url)
    try:
        async with create_session_factory(engine)() as session:
            return await ConnectionRepository(session, vault).reencrypt_all()
    finally:
        await engine.dispose()


def main(settings: Optional[Settings] = None) -> int:
    settings = settings or get_settings()
    configure_logging(settings)
    report = asyncio.run(reencrypt(settings))
    if report.failed:
        logger.error("Some connections could not be re-encrypted; keep the previous keys configured")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
