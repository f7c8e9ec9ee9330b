"""
SQLAlchemy ORM models.

Types are kept portable (generic ``Uuid`` / ``JSON``) so the same models run
on PostgreSQL in production and on SQLite in tests.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase

from utils.schemas import ConnectionStatus, Provider


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Timezone-aware timestamps, also on backends that drop the offset."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None and value.tzinfo is None:
            raise ValueError("naive datetime cannot be stored")
        return value.astimezone(timezone.utc) if value is not None else None

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


def _enum(cls, name: str) -> Enum:
    return Enum(
        cls,
        name=name,
        native_enum=False,
        length=32,
        values_callable=lambda e: [m.value for m in e],
        validate_strings=True,
    )


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"

    user_id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String(255), unique=True, nullable=False)
    display_name = Column(String(128))
    password_hash = Column(String(255), nullable=False, default="")
    created_at = Column(UTCDateTime, default=_utcnow)


class MarketplaceConnection(Base):
    """
    One row per (user, provider).

    Token columns hold Fernet ciphertext only.  Rows are never deleted by
    the connector layer; disconnecting clears the tokens and flips status.
    """

    __tablename__ = "marketplace_connections"
    __table_args__ = (
        UniqueConstraint("user_id", "provider", name="uq_connection_user_provider"),
        CheckConstraint(
            "status <> 'CONNECTED' OR access_token IS NOT NULL",
            name="ck_connected_has_access_token",
        ),
        CheckConstraint(
            "token_expiry IS NULL OR refresh_token IS NOT NULL",
            name="ck_expiry_requires_refresh_token",
        ),
    )

    connection_id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(String(64), nullable=False, index=True)
    provider = Column(_enum(Provider, "marketplace_provider"), nullable=False)
    status = Column(
        _enum(ConnectionStatus, "connection_status"),
        nullable=False,
        default=ConnectionStatus.PENDING,
    )
    access_token = Column(Text)
    refresh_token = Column(Text)
    token_expiry = Column(UTCDateTime)
    external_id = Column(String(256))
    external_name = Column(String(256))
    provider_meta = Column(JSON, nullable=False, default=dict)
    connected_at = Column(UTCDateTime)
    last_refreshed = Column(UTCDateTime)
    error_message = Column(Text)
    created_at = Column(UTCDateTime, nullable=False, default=_utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=_utcnow, onupdate=_utcnow)

    def __repr__(self) -> str:
        return (
            f"<MarketplaceConnection user={self.user_id!r} "
            f"provider={self.provider} status={self.status}>"
        )
