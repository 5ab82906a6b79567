"""
SQLAlchemy ORM models — Cross-database compatible.

Supports: PostgreSQL, SQLite.

Key design decisions:
  - JSON type instead of PostgreSQL-specific JSONB — on PG the dialect maps
    JSON to jsonb automatically; on SQLite it serializes to TEXT.
  - Enum-valued columns are stored as their string values.
  - String primary keys (uuid hex) — no database-specific sequences.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import (
    Boolean, DateTime, Index, Integer, JSON, String, Text, inspect,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from models.schemas import new_id, utcnow


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""

    def to_dict(self) -> dict[str, Any]:
        return {attr.key: getattr(self, attr.key) for attr in inspect(self).mapper.column_attrs}


# ──────────────────────────────────────────────────────────────
#  Businesses & listings
# ──────────────────────────────────────────────────────────────

class BusinessRow(Base):
    __tablename__ = "businesses"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(256), default="")
    timezone: Mapped[str] = mapped_column(String(64), default="UTC")


class ListingRow(Base):
    __tablename__ = "listings"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    business_id: Mapped[str] = mapped_column(String(64), index=True)
    title: Mapped[str] = mapped_column(String(512))
    description: Mapped[str] = mapped_column(Text, default="")
    start_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    end_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    timezone: Mapped[str] = mapped_column(String(64), default="UTC")
    venue_name: Mapped[str] = mapped_column(String(256), default="")
    city: Mapped[str] = mapped_column(String(128), default="")
    country: Mapped[str] = mapped_column(String(64), default="")
    url: Mapped[str] = mapped_column(String(1024), default="")
    capacity: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    currency: Mapped[str] = mapped_column(String(8), default="USD")


# ──────────────────────────────────────────────────────────────
#  Social
# ──────────────────────────────────────────────────────────────

class SocialPostRow(Base):
    __tablename__ = "social_posts"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    business_id: Mapped[str] = mapped_column(String(64), index=True)
    content: Mapped[str] = mapped_column(Text)
    platforms: Mapped[Any] = mapped_column(JSON, default=list)
    media_urls: Mapped[Any] = mapped_column(JSON, default=list)
    status: Mapped[str] = mapped_column(String(32), default="DRAFT")
    scheduled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    external_ids: Mapped[Any] = mapped_column(JSON, default=list)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    published_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_social_posts_status", "status"),
    )


class SocialAccountRow(Base):
    __tablename__ = "social_accounts"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    business_id: Mapped[str] = mapped_column(String(64))
    provider: Mapped[str] = mapped_column(String(32))
    account_id: Mapped[str] = mapped_column(String(256))
    account_name: Mapped[str] = mapped_column(String(256), default="")
    access_token: Mapped[str] = mapped_column(Text)
    refresh_token: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    scopes: Mapped[Any] = mapped_column(JSON, default=list)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_social_accounts_business_provider", "business_id", "provider"),
    )


# ──────────────────────────────────────────────────────────────
#  Event sync
# ──────────────────────────────────────────────────────────────

class EventSyncRow(Base):
    __tablename__ = "event_syncs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    listing_id: Mapped[str] = mapped_column(String(64), index=True)
    business_id: Mapped[str] = mapped_column(String(64))
    last_sync_status: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    last_sync_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_sync_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    external_ids: Mapped[Any] = mapped_column(JSON, default=list)
    sync_data: Mapped[Any] = mapped_column(JSON, default=dict)


# ──────────────────────────────────────────────────────────────
#  Webhooks
# ──────────────────────────────────────────────────────────────

class WebhookEndpointRow(Base):
    __tablename__ = "webhook_endpoints"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    business_id: Mapped[str] = mapped_column(String(64), index=True, default="")
    url: Mapped[str] = mapped_column(String(2048))
    secret: Mapped[str] = mapped_column(String(256))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)


class WebhookDeliveryRow(Base):
    __tablename__ = "webhook_deliveries"

    # Autoincrement seq keeps insertion order portable across dialects
    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    id: Mapped[str] = mapped_column(String(64), unique=True, default=new_id)
    webhook_id: Mapped[str] = mapped_column(String(64), index=True)
    event: Mapped[str] = mapped_column(String(128))
    status: Mapped[str] = mapped_column(String(16))
    job_id: Mapped[str] = mapped_column(String(64), default="")
    attempt: Mapped[int] = mapped_column(Integer, default=1)
    response_status: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    response_body: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    duration_ms: Mapped[int] = mapped_column(Integer, default=0)
    delivered_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


# ──────────────────────────────────────────────────────────────
#  Space requests
# ──────────────────────────────────────────────────────────────

class SpaceRequestRow(Base):
    __tablename__ = "space_requests"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    space_id: Mapped[str] = mapped_column(String(64))
    business_id: Mapped[str] = mapped_column(String(64), index=True)
    status: Mapped[str] = mapped_column(String(32), default="PENDING")
    hold_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


# ──────────────────────────────────────────────────────────────
#  Audit log
# ──────────────────────────────────────────────────────────────

class AuditLogRow(Base):
    __tablename__ = "audit_logs"

    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    id: Mapped[str] = mapped_column(String(64), unique=True, default=new_id)
    actor_id: Mapped[str] = mapped_column(String(64), default="worker")
    actor_type: Mapped[str] = mapped_column(String(16), default="system")
    action: Mapped[str] = mapped_column(String(128))
    entity_type: Mapped[str] = mapped_column(String(64))
    entity_id: Mapped[str] = mapped_column(String(64))
    business_id: Mapped[str] = mapped_column(String(64), default="")
    metadata_: Mapped[Any] = mapped_column("metadata", JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        Index("ix_audit_logs_entity", "entity_type", "entity_id"),
        Index("ix_audit_logs_created", "created_at"),
    )

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["metadata"] = data.pop("metadata_")
        return data
