"""
InMemoryStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database)
  - Full interface compatibility with SqlStore
  - Returns copies, so callers never mutate stored rows by accident
  - All data lost on process restart
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, Optional, TypeVar

import structlog
from pydantic import BaseModel

from database.store_base import ANY_STATUS, BaseStore
from models.schemas import (
    AuditLogEntry, Business, EventSync, Listing, SocialAccount, SocialPost,
    SocialProvider, SpaceRequest, WebhookDelivery, WebhookEndpoint, utcnow,
)

logger = structlog.get_logger()

M = TypeVar("M", bound=BaseModel)


def _copy(model: Optional[M]) -> Optional[M]:
    return model.model_copy(deep=True) if model is not None else None


class InMemoryStore(BaseStore):
    """Full-featured in-memory store with the same interface as SqlStore."""

    def __init__(self):
        self._businesses: dict[str, Business] = {}
        self._listings: dict[str, Listing] = {}
        self._posts: dict[str, SocialPost] = {}
        self._accounts: dict[str, SocialAccount] = {}
        self._event_syncs: dict[str, EventSync] = {}
        self._endpoints: dict[str, WebhookEndpoint] = {}
        self._deliveries: list[WebhookDelivery] = []
        self._space_requests: dict[str, SpaceRequest] = {}
        self._audit: list[AuditLogEntry] = []
        logger.info("inmemory_store_initialized")

    def _update(self, table: dict[str, M], row_id: str, status_field: Optional[str],
                expected_status: Any, fields: dict[str, Any]) -> bool:
        current = table.get(row_id)
        if current is None:
            return False
        if status_field and expected_status is not ANY_STATUS:
            if getattr(current, status_field) != expected_status:
                return False
        if "updated_at" in type(current).model_fields and "updated_at" not in fields:
            fields = {**fields, "updated_at": utcnow()}
        # Round-trip through validation so enums and datetimes are coerced
        merged = {**current.model_dump(), **fields}
        table[row_id] = type(current).model_validate(merged)
        return True

    # ── Businesses & listings ─────────────────────────────

    async def get_business(self, business_id: str) -> Optional[Business]:
        return _copy(self._businesses.get(business_id))

    async def save_business(self, business: Business) -> Business:
        self._businesses[business.id] = _copy(business)
        return business

    async def get_listing(self, listing_id: str) -> Optional[Listing]:
        return _copy(self._listings.get(listing_id))

    async def save_listing(self, listing: Listing) -> Listing:
        self._listings[listing.id] = _copy(listing)
        return listing

    # ── Social posts ──────────────────────────────────────

    async def get_social_post(self, post_id: str) -> Optional[SocialPost]:
        return _copy(self._posts.get(post_id))

    async def save_social_post(self, post: SocialPost) -> SocialPost:
        self._posts[post.id] = _copy(post)
        return post

    async def update_social_post(self, post_id: str, expected_status: Any = ANY_STATUS, **fields) -> bool:
        return self._update(self._posts, post_id, "status", expected_status, fields)

    # ── Social accounts ───────────────────────────────────

    async def get_social_account(self, account_id: str) -> Optional[SocialAccount]:
        return _copy(self._accounts.get(account_id))

    async def save_social_account(self, account: SocialAccount) -> SocialAccount:
        self._accounts[account.id] = _copy(account)
        return account

    async def list_social_accounts(self, business_id: str,
                                   providers: Iterable[SocialProvider] = None,
                                   active_only: bool = True) -> list[SocialAccount]:
        wanted = set(providers) if providers is not None else None
        return [
            _copy(a) for a in self._accounts.values()
            if a.business_id == business_id
            and (wanted is None or a.provider in wanted)
            and (a.is_active or not active_only)
        ]

    async def list_expired_accounts(self, now: datetime) -> list[SocialAccount]:
        return [
            _copy(a) for a in self._accounts.values()
            if a.is_active and a.refresh_token and a.expires_at and a.expires_at < now
        ]

    async def update_social_account(self, account_id: str, **fields) -> bool:
        return self._update(self._accounts, account_id, None, ANY_STATUS, fields)

    # ── Event syncs ───────────────────────────────────────

    async def get_event_sync(self, event_sync_id: str) -> Optional[EventSync]:
        return _copy(self._event_syncs.get(event_sync_id))

    async def save_event_sync(self, event_sync: EventSync) -> EventSync:
        self._event_syncs[event_sync.id] = _copy(event_sync)
        return event_sync

    async def update_event_sync(self, event_sync_id: str, expected_status: Any = ANY_STATUS, **fields) -> bool:
        return self._update(self._event_syncs, event_sync_id, "last_sync_status", expected_status, fields)

    # ── Webhooks ──────────────────────────────────────────

    async def get_webhook_endpoint(self, webhook_id: str) -> Optional[WebhookEndpoint]:
        return _copy(self._endpoints.get(webhook_id))

    async def save_webhook_endpoint(self, endpoint: WebhookEndpoint) -> WebhookEndpoint:
        self._endpoints[endpoint.id] = _copy(endpoint)
        return endpoint

    async def list_webhook_endpoints(self, business_id: str, active_only: bool = True) -> list[WebhookEndpoint]:
        return [
            _copy(e) for e in self._endpoints.values()
            if e.business_id == business_id and (e.is_active or not active_only)
        ]

    async def add_webhook_delivery(self, delivery: WebhookDelivery) -> WebhookDelivery:
        self._deliveries.append(_copy(delivery))
        return delivery

    async def list_webhook_deliveries(self, webhook_id: str = None) -> list[WebhookDelivery]:
        return [
            _copy(d) for d in self._deliveries
            if webhook_id is None or d.webhook_id == webhook_id
        ]

    # ── Space requests ────────────────────────────────────

    async def get_space_request(self, request_id: str) -> Optional[SpaceRequest]:
        return _copy(self._space_requests.get(request_id))

    async def save_space_request(self, request: SpaceRequest) -> SpaceRequest:
        self._space_requests[request.id] = _copy(request)
        return request

    async def update_space_request(self, request_id: str, expected_status: Any = ANY_STATUS, **fields) -> bool:
        return self._update(self._space_requests, request_id, "status", expected_status, fields)

    # ── Audit log ─────────────────────────────────────────

    async def add_audit_log(self, entry: AuditLogEntry) -> AuditLogEntry:
        self._audit.append(_copy(entry))
        return entry

    async def list_audit_logs(self, entity_type: str = None, entity_id: str = None,
                              action: str = None) -> list[AuditLogEntry]:
        return [
            _copy(e) for e in self._audit
            if (entity_type is None or e.entity_type == entity_type)
            and (entity_id is None or e.entity_id == entity_id)
            and (action is None or e.action == action)
        ]

    async def delete_audit_logs_before(self, cutoff: datetime) -> int:
        before = len(self._audit)
        self._audit = [e for e in self._audit if e.created_at >= cutoff]
        return before - len(self._audit)
