"""
Token manager — the single interface sync workers use to get an active
token for a given user + provider combination.

Tokens are refreshed proactively once they are within the connector's
``refresh_buffer`` of expiry.  The refresh is re-checked under a row lock
so concurrent callers issue at most one upstream refresh on databases that
support ``SELECT ... FOR UPDATE``.
"""

from __future__ import annotations

import hashlib
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Protocol

from connectors.errors import (
    ConnectorError,
    InvalidConnectionState,
    NoConnection,
    RefreshFailed,
)
from connectors.registry import ConnectorRegistry
from connectors.repository import ConnectionRepository
from utils.schemas import ConnectionStatus, StoredCredentials

logger = logging.getLogger(__name__)


def mask_id(value: str) -> str:
    """Log-safe form of an identifier: prefix plus a short digest."""
    digest = hashlib.sha256(value.encode("utf-8")).hexdigest()[:8]
    return f"{value[:4]}…{digest}"


class RefreshFailurePolicy(Protocol):
    """
    Decides what a failed refresh means for the stored connection.

    The token manager itself never changes status on failure; a policy
    may, e.g. after repeated ``invalid_grant`` responses.
    """

    async def on_refresh_failure(
        self,
        user_id: str,
        provider: str,
        error: Exception,
        repository: ConnectionRepository,
    ) -> None:
        ...


class LoggingRefreshPolicy:
    """Default policy: record the failure and leave the connection alone."""

    async def on_refresh_failure(
        self,
        user_id: str,
        provider: str,
        error: Exception,
        repository: ConnectionRepository,
    ) -> None:
        logger.warning(
            "Token refresh failed for %s/%s: %s",
            provider,
            mask_id(user_id),
            error,
        )


class TokenManager:
    """Return usable access tokens, refreshing them when close to expiry."""

    def __init__(
        self,
        repository: ConnectionRepository,
        registry: ConnectorRegistry,
        *,
        failure_policy: Optional[RefreshFailurePolicy] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._repo = repository
        self._registry = registry
        self._policy = failure_policy or LoggingRefreshPolicy()
        self._clock = clock

    async def get_valid_token(self, user_id: str, provider: str) -> str:
        """
        Get a valid access token for the user + provider.

        1. Look up the connection; it must be CONNECTED.
        2. Permanent tokens and tokens outside the refresh buffer are
           returned as-is.
        3. Otherwise re-read under a row lock and refresh unless another
           worker already did.

        Raises ``NoConnection``, ``InvalidConnectionState`` or
        ``RefreshFailed``; status is never changed here on failure.
        """
        connector = self._registry.get(provider)
        if connector is None:
            raise NoConnection(f"unknown provider {provider}")

        creds = await self._repo.load_credentials(user_id, provider)
        self._check_connected(creds, provider)

        if not self._needs_refresh(creds, connector.refresh_buffer):
            return creds.access_token.get_secret_value()

        # Double-checked under the lock.
        creds = await self._repo.load_credentials(user_id, provider, for_update=True)
        self._check_connected(creds, provider)
        if not self._needs_refresh(creds, connector.refresh_buffer):
            await self._repo.commit()
            logger.debug("Token for %s/%s refreshed concurrently", provider, mask_id(user_id))
            return creds.access_token.get_secret_value()

        if creds.refresh_token is None:
            await self._repo.rollback()
            raise InvalidConnectionState(
                f"{provider} connection has an expiry but no refresh token"
            )
        if not connector.supports_refresh:
            await self._repo.rollback()
            raise InvalidConnectionState(f"{provider} tokens cannot be refreshed")

        # A grant that cannot be persisted counts as a failed refresh; the
        # partially written row is rolled back.
        try:
            grant = await connector.refresh_access_token(
                creds.refresh_token.get_secret_value(), context=creds.provider_meta
            )
            await self._repo.update_tokens(user_id, provider, grant, now=self._clock())
        except ConnectorError as exc:
            await self._repo.rollback()
            await self._policy.on_refresh_failure(user_id, provider, exc, self._repo)
            raise RefreshFailed(f"{provider} refresh failed") from exc

        await self._repo.commit()
        logger.info("Refreshed %s token for user %s", provider, mask_id(user_id))
        return grant.access_token.get_secret_value()

    # ── Helpers ─────────────────────────────────────────────────────────

    @staticmethod
    def _check_connected(creds: Optional[StoredCredentials], provider: str) -> None:
        if creds is None or creds.status != ConnectionStatus.CONNECTED:
            raise NoConnection(f"no active {provider} connection")
        if creds.access_token is None:
            raise InvalidConnectionState(f"{provider} connection has no access token")

    def _needs_refresh(self, creds: StoredCredentials, buffer: timedelta) -> bool:
        if creds.token_expiry is None:
            return False
        return creds.token_expiry - self._clock() <= buffer
