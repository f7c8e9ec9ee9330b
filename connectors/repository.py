"""
Connection repository — persistence for marketplace credentials.

All token material passes through the ``TokenVault`` on the way in and out;
nothing outside ``load_credentials`` ever sees a decrypted token.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Union

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from connectors.encryption import TokenVault
from connectors.errors import InvalidConnectionState, NoConnection, TokenDecryptionError
from connectors.http import redact_excerpt
from database.models import MarketplaceConnection
from utils.schemas import (
    ConnectionStatus,
    ConnectionView,
    ExternalIdentity,
    Provider,
    ReencryptionReport,
    StoredCredentials,
    TokenGrant,
)

logger = logging.getLogger(__name__)

ProviderLike = Union[Provider, str]


def _now(now: Optional[datetime]) -> datetime:
    return now or datetime.now(timezone.utc)


class ConnectionRepository:
    """Data access for ``marketplace_connections``, keyed on (user, provider)."""

    def __init__(self, session: AsyncSession, vault: TokenVault) -> None:
        self._session = session
        self._vault = vault

    # ── Reads ───────────────────────────────────────────────────────────

    async def _row(
        self,
        user_id: str,
        provider: ProviderLike,
        *,
        for_update: bool = False,
    ) -> Optional[MarketplaceConnection]:
        stmt = select(MarketplaceConnection).where(
            MarketplaceConnection.user_id == user_id,
            MarketplaceConnection.provider == Provider(provider),
        )
        if for_update:
            # Rendered as FOR UPDATE where the dialect supports it; SQLite ignores it.
            stmt = stmt.with_for_update()
        result = await self._session.execute(stmt.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def get(self, user_id: str, provider: ProviderLike) -> Optional[ConnectionView]:
        row = await self._row(user_id, provider)
        return ConnectionView.model_validate(row) if row else None

    async def list_for_user(self, user_id: str) -> List[ConnectionView]:
        result = await self._session.execute(
            select(MarketplaceConnection)
            .where(MarketplaceConnection.user_id == user_id)
            .order_by(MarketplaceConnection.provider)
        )
        return [ConnectionView.model_validate(r) for r in result.scalars().all()]

    async def load_credentials(
        self,
        user_id: str,
        provider: ProviderLike,
        *,
        for_update: bool = False,
    ) -> Optional[StoredCredentials]:
        """Decrypted credentials for the token manager; ``None`` if no row."""
        row = await self._row(user_id, provider, for_update=for_update)
        if row is None:
            return None
        return StoredCredentials(
            user_id=row.user_id,
            provider=row.provider,
            status=row.status,
            access_token=self._vault.decrypt(row.access_token) if row.access_token else None,
            refresh_token=self._vault.decrypt(row.refresh_token) if row.refresh_token else None,
            token_expiry=row.token_expiry,
            provider_meta=dict(row.provider_meta or {}),
        )

    # ── Writes ──────────────────────────────────────────────────────────

    def _apply_grant(
        self,
        row: MarketplaceConnection,
        grant: TokenGrant,
        identity: ExternalIdentity,
        now: datetime,
    ) -> None:
        row.status = ConnectionStatus.CONNECTED
        row.access_token = self._vault.encrypt(grant.access_token.get_secret_value())
        row.refresh_token = (
            self._vault.encrypt(grant.refresh_token.get_secret_value())
            if grant.refresh_token is not None
            else None
        )
        row.token_expiry = grant.expiry(now)
        row.external_id = identity.external_id
        row.external_name = identity.external_name
        row.provider_meta = {**(row.provider_meta or {}), **grant.provider_meta}
        row.connected_at = now
        row.error_message = None

    async def upsert(
        self,
        user_id: str,
        provider: ProviderLike,
        grant: TokenGrant,
        identity: ExternalIdentity,
        now: Optional[datetime] = None,
    ) -> ConnectionView:
        """
        Create or replace the connection for (user, provider) as CONNECTED.

        A concurrent insert for the same key surfaces as ``IntegrityError``;
        that is retried once as an update of the row that won.
        """
        now = _now(now)
        provider = Provider(provider)

        row = await self._row(user_id, provider)
        if row is None:
            row = MarketplaceConnection(user_id=user_id, provider=provider, provider_meta={})
            self._apply_grant(row, grant, identity, now)
            self._session.add(row)
            try:
                await self._session.flush()
            except IntegrityError:
                await self._session.rollback()
                logger.info("Concurrent insert for %s connection — retrying as update", provider.value)
                row = await self._row(user_id, provider)
                if row is None:
                    raise
                self._apply_grant(row, grant, identity, now)
                await self._session.flush()
        else:
            self._apply_grant(row, grant, identity, now)
            await self._session.flush()

        return ConnectionView.model_validate(row)

    async def update_tokens(
        self,
        user_id: str,
        provider: ProviderLike,
        grant: TokenGrant,
        now: Optional[datetime] = None,
    ) -> None:
        """Persist a refreshed grant; keep the old refresh token unless rotated."""
        now = _now(now)
        row = await self._row(user_id, provider, for_update=True)
        if row is None:
            raise NoConnection(f"no {Provider(provider).value} connection to update")

        row.access_token = self._vault.encrypt(grant.access_token.get_secret_value())
        if grant.refresh_token is not None:
            row.refresh_token = self._vault.encrypt(grant.refresh_token.get_secret_value())
        if row.refresh_token is None:
            raise InvalidConnectionState("refreshed connection has no refresh token")

        if grant.expires_at is not None:
            row.token_expiry = grant.expires_at
        elif grant.expires_in is not None:
            row.token_expiry = now + timedelta(seconds=grant.expires_in)
        else:
            row.token_expiry = None
        if grant.provider_meta:
            row.provider_meta = {**(row.provider_meta or {}), **grant.provider_meta}
        row.last_refreshed = now
        await self._session.flush()

    async def mark_disconnected(self, user_id: str, provider: ProviderLike) -> bool:
        """Flip to DISCONNECTED and drop token material; ``False`` if no row."""
        row = await self._row(user_id, provider)
        if row is None:
            return False
        row.status = ConnectionStatus.DISCONNECTED
        row.access_token = None
        row.refresh_token = None
        row.token_expiry = None
        await self._session.flush()
        return True

    async def mark_error(self, user_id: str, provider: ProviderLike, message: str) -> None:
        """Downgrade to ERROR with a sanitized message (reconciliation policies only)."""
        row = await self._row(user_id, provider)
        if row is None:
            raise NoConnection(f"no {Provider(provider).value} connection to mark")
        row.status = ConnectionStatus.ERROR
        row.error_message = redact_excerpt(message, limit=500)
        await self._session.flush()

    # ── Key rotation ────────────────────────────────────────────────────

    async def reencrypt_all(self) -> ReencryptionReport:
        """
        Rewrite every stored token under the vault's primary key.

        Rows are committed one at a time.  A row whose ciphertext no
        configured key can read is counted as failed and left untouched, so
        the previous keys must stay configured until ``failed`` is zero.
        Running it twice is harmless.
        """
        report = ReencryptionReport()
        result = await self._session.execute(
            select(MarketplaceConnection.connection_id).order_by(MarketplaceConnection.connection_id)
        )
        for connection_id in result.scalars().all():
            row = await self._session.get(
                MarketplaceConnection, connection_id, with_for_update=True, populate_existing=True
            )
            if row is None:
                continue
            if not row.access_token and not row.refresh_token:
                report.no_tokens += 1
                await self._session.rollback()
                continue
            try:
                access = self._vault.rotate(row.access_token) if row.access_token else None
                refresh = self._vault.rotate(row.refresh_token) if row.refresh_token else None
            except TokenDecryptionError:
                logger.error("Cannot re-encrypt %s connection %s", row.provider.value, connection_id)
                report.failed += 1
                await self._session.rollback()
                continue
            row.access_token = access
            row.refresh_token = refresh
            await self._session.commit()
            report.rotated += 1

        logger.info(
            "Re-encryption done: %d rotated, %d without tokens, %d failed",
            report.rotated,
            report.no_tokens,
            report.failed,
        )
        return report

    async def commit(self) -> None:
        await self._session.commit()

    async def rollback(self) -> None:
        await self._session.rollback()
