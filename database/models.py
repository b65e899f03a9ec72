"""
SQLAlchemy ORM models for platform connections, OAuth state, webhook
subscriptions and sync operations.
"""

from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import DeclarativeBase, relationship


class Base(DeclarativeBase):
    pass


class PlatformType(str, enum.Enum):
    GOOGLE_SHEETS = "GOOGLE_SHEETS"
    YOUCAN = "YOUCAN"
    SHOPIFY = "SHOPIFY"


class ConnectionStatus(str, enum.Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"
    ERROR = "ERROR"
    REVOKED = "REVOKED"


class SyncOperationType(str, enum.Enum):
    WEBHOOK = "webhook"
    MANUAL = "manual"
    POLLING = "polling"


class SyncStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


# pending + processing: at most one per (connection, resource)
IN_FLIGHT_SYNC_STATUSES = (SyncStatus.PENDING.value, SyncStatus.PROCESSING.value)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PlatformConnection(Base):
    __tablename__ = "platform_connections"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    platform_type = Column(String(32), nullable=False)
    platform_name = Column(String(255), nullable=False)
    status = Column(String(16), nullable=False, default=ConnectionStatus.ACTIVE.value)
    access_token = Column(Text)                # Fernet ciphertext
    refresh_token = Column(Text)               # Fernet ciphertext, NULL = cannot refresh
    token_expires_at = Column(DateTime(timezone=True))
    scopes = Column(JSONB, default=list)
    platform_data = Column(JSONB, default=dict)
    user_id = Column(String(64), nullable=False)
    tenant_id = Column(String(64), nullable=False)
    last_sync_at = Column(DateTime(timezone=True))
    last_error_at = Column(DateTime(timezone=True))
    last_error_message = Column(Text)
    sync_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    subscriptions = relationship("WebhookSubscription", back_populates="connection")
    resources = relationship("SyncedResource", back_populates="connection")

    __table_args__ = (
        Index("ix_platform_connections_owner", "tenant_id", "user_id"),
        Index("ix_platform_connections_refresh", "status", "token_expires_at"),
    )


class OAuthState(Base):
    """Single-use authorization state, redeemed (deleted) at callback time."""

    __tablename__ = "oauth_states"

    state = Column(String(128), primary_key=True)
    user_id = Column(String(64), nullable=False)
    tenant_id = Column(String(64), nullable=False)
    platform_type = Column(String(32), nullable=False)
    code_verifier = Column(String(128))
    platform_data = Column(JSONB, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    expires_at = Column(DateTime(timezone=True), nullable=False)


class SyncedResource(Base):
    """A remote resource (e.g. a spreadsheet) a connection keeps in sync."""

    __tablename__ = "synced_resources"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    connection_id = Column(
        UUID(as_uuid=True),
        ForeignKey("platform_connections.id", ondelete="CASCADE"),
        nullable=False,
    )
    resource_id = Column(String(255), nullable=False)
    resource_name = Column(String(255))
    is_active = Column(Boolean, nullable=False, default=True)
    webhook_subscription_id = Column(UUID(as_uuid=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    connection = relationship("PlatformConnection", back_populates="resources")

    __table_args__ = (
        Index("uq_synced_resources_connection_resource", "connection_id", "resource_id", unique=True),
    )


class WebhookSubscription(Base):
    __tablename__ = "webhook_subscriptions"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    connection_id = Column(
        UUID(as_uuid=True),
        ForeignKey("platform_connections.id", ondelete="CASCADE"),
        nullable=False,
    )
    resource_id = Column(String(255), nullable=False)
    external_subscription_id = Column(String(255), nullable=False)
    external_resource_id = Column(String(255), nullable=False)
    expiration = Column(DateTime(timezone=True))
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    connection = relationship("PlatformConnection", back_populates="subscriptions")

    __table_args__ = (
        Index("ix_webhook_subscriptions_external_resource", "external_resource_id"),
        Index("ix_webhook_subscriptions_expiration", "is_active", "expiration"),
        Index(
            "uq_webhook_subscriptions_active_resource",
            "connection_id",
            "resource_id",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ),
    )


class SyncOperation(Base):
    __tablename__ = "sync_operations"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    connection_id = Column(
        UUID(as_uuid=True),
        ForeignKey("platform_connections.id", ondelete="CASCADE"),
        nullable=False,
    )
    resource_id = Column(String(255), nullable=False)
    operation_type = Column(String(16), nullable=False)
    status = Column(String(16), nullable=False, default=SyncStatus.PENDING.value)
    records_processed = Column(Integer, nullable=False, default=0)
    records_created = Column(Integer, nullable=False, default=0)
    records_skipped = Column(Integer, nullable=False, default=0)
    error_count = Column(Integer, nullable=False, default=0)
    error_details = Column(JSONB)
    started_at = Column(DateTime(timezone=True), default=_utcnow)
    completed_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_sync_operations_connection", "connection_id", "created_at"),
        Index(
            "uq_sync_operations_in_flight",
            "connection_id",
            "resource_id",
            unique=True,
            postgresql_where=text("status IN ('pending', 'processing')"),
            sqlite_where=text("status IN ('pending', 'processing')"),
        ),
    )
