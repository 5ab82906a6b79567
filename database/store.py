"""
SqlStore — Portable SQL queries for PostgreSQL and SQLite.

Status changes go through conditional UPDATE ... WHERE status = :expected
so two workers racing on the same row cannot both win.
"""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable, Optional, Type, TypeVar

import structlog
from pydantic import BaseModel
from sqlalchemy import delete, select, update

from database.models import (
    AuditLogRow, Base, BusinessRow, EventSyncRow, ListingRow, SocialAccountRow,
    SocialPostRow, SpaceRequestRow, WebhookDeliveryRow, WebhookEndpointRow,
)
from database.session import Database
from database.store_base import ANY_STATUS, BaseStore
from models.schemas import (
    AuditLogEntry, Business, EventSync, Listing, SocialAccount, SocialPost,
    SocialProvider, SpaceRequest, WebhookDelivery, WebhookEndpoint, utcnow,
)

logger = structlog.get_logger()

M = TypeVar("M", bound=BaseModel)


def _aware(value: Any) -> Any:
    # SQLite hands back naive datetimes; everything is stored as UTC
    if isinstance(value, datetime) and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _plain(value: Any, nested: bool = False) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime) and nested:
        return value.isoformat()
    if isinstance(value, list):
        return [_plain(v, True) for v in value]
    if isinstance(value, dict):
        return {k: _plain(v, True) for k, v in value.items()}
    return value


def _to_model(model_cls: Type[M], row: Optional[Base]) -> Optional[M]:
    if row is None:
        return None
    data = {k: _aware(v) for k, v in row.to_dict().items() if k in model_cls.model_fields}
    return model_cls.model_validate(data)


def _columns(model: BaseModel) -> dict[str, Any]:
    return {k: _plain(v) for k, v in model.model_dump().items()}


class SqlStore(BaseStore):
    """
    Persistent store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL and SQLite.
    """

    def __init__(self, db: Database):
        self.db = db

    # ── Generic helpers ────────────────────────────────────

    async def _get(self, row_cls: Type[Base], model_cls: Type[M], row_id: str) -> Optional[M]:
        async with self.db.session() as s:
            return _to_model(model_cls, await s.get(row_cls, row_id))

    async def _merge(self, row_cls: Type[Base], model: M) -> M:
        async with self.db.session() as s:
            await s.merge(row_cls(**_columns(model)))
        return model

    async def _list(self, model_cls: Type[M], stmt) -> list[M]:
        async with self.db.session() as s:
            result = await s.execute(stmt)
            return [_to_model(model_cls, row) for row in result.scalars()]

    async def _update(self, row_cls: Type[Base], row_id: str, status_attr: Optional[str],
                      expected_status: Any, fields: dict[str, Any]) -> bool:
        values = {k: _plain(v) for k, v in fields.items()}
        if "updated_at" in row_cls.__table__.c and "updated_at" not in values:
            values["updated_at"] = utcnow()

        stmt = update(row_cls).where(row_cls.id == row_id)
        if status_attr and expected_status is not ANY_STATUS:
            column = getattr(row_cls, status_attr)
            if expected_status is None:
                stmt = stmt.where(column.is_(None))
            else:
                stmt = stmt.where(column == _plain(expected_status))
        stmt = stmt.values(**values)

        async with self.db.session() as s:
            result = await s.execute(stmt)
            return result.rowcount > 0

    # ── Businesses & listings ─────────────────────────────

    async def get_business(self, business_id: str) -> Optional[Business]:
        return await self._get(BusinessRow, Business, business_id)

    async def save_business(self, business: Business) -> Business:
        return await self._merge(BusinessRow, business)

    async def get_listing(self, listing_id: str) -> Optional[Listing]:
        return await self._get(ListingRow, Listing, listing_id)

    async def save_listing(self, listing: Listing) -> Listing:
        return await self._merge(ListingRow, listing)

    # ── Social posts ──────────────────────────────────────

    async def get_social_post(self, post_id: str) -> Optional[SocialPost]:
        return await self._get(SocialPostRow, SocialPost, post_id)

    async def save_social_post(self, post: SocialPost) -> SocialPost:
        return await self._merge(SocialPostRow, post)

    async def update_social_post(self, post_id: str, expected_status: Any = ANY_STATUS, **fields) -> bool:
        return await self._update(SocialPostRow, post_id, "status", expected_status, fields)

    # ── Social accounts ───────────────────────────────────

    async def get_social_account(self, account_id: str) -> Optional[SocialAccount]:
        return await self._get(SocialAccountRow, SocialAccount, account_id)

    async def save_social_account(self, account: SocialAccount) -> SocialAccount:
        return await self._merge(SocialAccountRow, account)

    async def list_social_accounts(self, business_id: str,
                                   providers: Iterable[SocialProvider] = None,
                                   active_only: bool = True) -> list[SocialAccount]:
        stmt = select(SocialAccountRow).where(SocialAccountRow.business_id == business_id)
        if providers is not None:
            stmt = stmt.where(SocialAccountRow.provider.in_([_plain(p) for p in providers]))
        if active_only:
            stmt = stmt.where(SocialAccountRow.is_active.is_(True))
        return await self._list(SocialAccount, stmt)

    async def list_expired_accounts(self, now: datetime) -> list[SocialAccount]:
        stmt = select(SocialAccountRow).where(
            SocialAccountRow.is_active.is_(True),
            SocialAccountRow.refresh_token.is_not(None),
            SocialAccountRow.expires_at.is_not(None),
            SocialAccountRow.expires_at < now,
        )
        return await self._list(SocialAccount, stmt)

    async def update_social_account(self, account_id: str, **fields) -> bool:
        return await self._update(SocialAccountRow, account_id, None, ANY_STATUS, fields)

    # ── Event syncs ───────────────────────────────────────

    async def get_event_sync(self, event_sync_id: str) -> Optional[EventSync]:
        return await self._get(EventSyncRow, EventSync, event_sync_id)

    async def save_event_sync(self, event_sync: EventSync) -> EventSync:
        return await self._merge(EventSyncRow, event_sync)

    async def update_event_sync(self, event_sync_id: str, expected_status: Any = ANY_STATUS, **fields) -> bool:
        return await self._update(EventSyncRow, event_sync_id, "last_sync_status", expected_status, fields)

    # ── Webhooks ──────────────────────────────────────────

    async def get_webhook_endpoint(self, webhook_id: str) -> Optional[WebhookEndpoint]:
        return await self._get(WebhookEndpointRow, WebhookEndpoint, webhook_id)

    async def save_webhook_endpoint(self, endpoint: WebhookEndpoint) -> WebhookEndpoint:
        return await self._merge(WebhookEndpointRow, endpoint)

    async def list_webhook_endpoints(self, business_id: str, active_only: bool = True) -> list[WebhookEndpoint]:
        stmt = select(WebhookEndpointRow).where(WebhookEndpointRow.business_id == business_id)
        if active_only:
            stmt = stmt.where(WebhookEndpointRow.is_active.is_(True))
        return await self._list(WebhookEndpoint, stmt)

    async def add_webhook_delivery(self, delivery: WebhookDelivery) -> WebhookDelivery:
        async with self.db.session() as s:
            s.add(WebhookDeliveryRow(**_columns(delivery)))
        return delivery

    async def list_webhook_deliveries(self, webhook_id: str = None) -> list[WebhookDelivery]:
        stmt = select(WebhookDeliveryRow).order_by(WebhookDeliveryRow.seq)
        if webhook_id is not None:
            stmt = stmt.where(WebhookDeliveryRow.webhook_id == webhook_id)
        return await self._list(WebhookDelivery, stmt)

    # ── Space requests ────────────────────────────────────

    async def get_space_request(self, request_id: str) -> Optional[SpaceRequest]:
        return await self._get(SpaceRequestRow, SpaceRequest, request_id)

    async def save_space_request(self, request: SpaceRequest) -> SpaceRequest:
        return await self._merge(SpaceRequestRow, request)

    async def update_space_request(self, request_id: str, expected_status: Any = ANY_STATUS, **fields) -> bool:
        return await self._update(SpaceRequestRow, request_id, "status", expected_status, fields)

    # ── Audit log ─────────────────────────────────────────

    async def add_audit_log(self, entry: AuditLogEntry) -> AuditLogEntry:
        values = _columns(entry)
        values["metadata_"] = values.pop("metadata")
        async with self.db.session() as s:
            s.add(AuditLogRow(**values))
        return entry

    async def list_audit_logs(self, entity_type: str = None, entity_id: str = None,
                              action: str = None) -> list[AuditLogEntry]:
        stmt = select(AuditLogRow).order_by(AuditLogRow.seq)
        if entity_type is not None:
            stmt = stmt.where(AuditLogRow.entity_type == entity_type)
        if entity_id is not None:
            stmt = stmt.where(AuditLogRow.entity_id == entity_id)
        if action is not None:
            stmt = stmt.where(AuditLogRow.action == action)
        return await self._list(AuditLogEntry, stmt)

    async def delete_audit_logs_before(self, cutoff: datetime) -> int:
        async with self.db.session() as s:
            result = await s.execute(delete(AuditLogRow).where(AuditLogRow.created_at < cutoff))
            deleted = result.rowcount or 0
        logger.info("audit_logs_deleted", count=deleted, cutoff=cutoff.isoformat())
        return deleted

    async def close(self) -> None:
        await self.db.close()
