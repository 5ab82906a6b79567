"""
Abstract Store — Interface for all persistence backends.

Implementations:
  - SqlStore      (PostgreSQL / SQLite via SQLAlchemy async)
  - InMemoryStore (dict-based, single-process, no persistence)

Rows are read and written one at a time. Status-bearing updates take an
`expected_status` and only apply when the stored status still matches,
returning False otherwise (compare-and-set). Pass ANY_STATUS to skip the
check.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Iterable, Optional

from models.schemas import (
    AuditLogEntry, Business, EventSync, Listing, SocialAccount, SocialPost,
    SocialProvider, SpaceRequest, WebhookDelivery, WebhookEndpoint,
)


class _AnyStatus:
    def __repr__(self) -> str:
        return "ANY_STATUS"


ANY_STATUS: Any = _AnyStatus()


class BaseStore(ABC):
    """Interface that all store backends must implement."""

    # ── Businesses & listings ─────────────────────────────────

    @abstractmethod
    async def get_business(self, business_id: str) -> Optional[Business]:
        ...

    @abstractmethod
    async def save_business(self, business: Business) -> Business:
        ...

    @abstractmethod
    async def get_listing(self, listing_id: str) -> Optional[Listing]:
        ...

    @abstractmethod
    async def save_listing(self, listing: Listing) -> Listing:
        ...

    # ── Social posts ──────────────────────────────────────────

    @abstractmethod
    async def get_social_post(self, post_id: str) -> Optional[SocialPost]:
        ...

    @abstractmethod
    async def save_social_post(self, post: SocialPost) -> SocialPost:
        ...

    @abstractmethod
    async def update_social_post(self, post_id: str, expected_status: Any = ANY_STATUS, **fields) -> bool:
        ...

    # ── Social accounts ───────────────────────────────────────

    @abstractmethod
    async def get_social_account(self, account_id: str) -> Optional[SocialAccount]:
        ...

    @abstractmethod
    async def save_social_account(self, account: SocialAccount) -> SocialAccount:
        ...

    @abstractmethod
    async def list_social_accounts(self, business_id: str,
                                   providers: Iterable[SocialProvider] = None,
                                   active_only: bool = True) -> list[SocialAccount]:
        ...

    @abstractmethod
    async def list_expired_accounts(self, now: datetime) -> list[SocialAccount]:
        """Active accounts with a refresh token whose expires_at is before now."""
        ...

    @abstractmethod
    async def update_social_account(self, account_id: str, **fields) -> bool:
        ...

    # ── Event syncs ───────────────────────────────────────────

    @abstractmethod
    async def get_event_sync(self, event_sync_id: str) -> Optional[EventSync]:
        ...

    @abstractmethod
    async def save_event_sync(self, event_sync: EventSync) -> EventSync:
        ...

    @abstractmethod
    async def update_event_sync(self, event_sync_id: str, expected_status: Any = ANY_STATUS, **fields) -> bool:
        ...

    # ── Webhooks ──────────────────────────────────────────────

    @abstractmethod
    async def get_webhook_endpoint(self, webhook_id: str) -> Optional[WebhookEndpoint]:
        ...

    @abstractmethod
    async def save_webhook_endpoint(self, endpoint: WebhookEndpoint) -> WebhookEndpoint:
        ...

    @abstractmethod
    async def list_webhook_endpoints(self, business_id: str, active_only: bool = True) -> list[WebhookEndpoint]:
        ...

    @abstractmethod
    async def add_webhook_delivery(self, delivery: WebhookDelivery) -> WebhookDelivery:
        ...

    @abstractmethod
    async def list_webhook_deliveries(self, webhook_id: str = None) -> list[WebhookDelivery]:
        """Delivery rows in insertion order."""
        ...

    # ── Space requests ────────────────────────────────────────

    @abstractmethod
    async def get_space_request(self, request_id: str) -> Optional[SpaceRequest]:
        ...

    @abstractmethod
    async def save_space_request(self, request: SpaceRequest) -> SpaceRequest:
        ...

    @abstractmethod
    async def update_space_request(self, request_id: str, expected_status: Any = ANY_STATUS, **fields) -> bool:
        ...

    # ── Audit log ─────────────────────────────────────────────

    @abstractmethod
    async def add_audit_log(self, entry: AuditLogEntry) -> AuditLogEntry:
        ...

    @abstractmethod
    async def list_audit_logs(self, entity_type: str = None, entity_id: str = None,
                              action: str = None) -> list[AuditLogEntry]:
        ...

    @abstractmethod
    async def delete_audit_logs_before(self, cutoff: datetime) -> int:
        ...

    async def close(self) -> None:
        pass
