"""
Core data models for the booking job orchestration core.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex[:16]


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class SocialProvider(str, Enum):
    FACEBOOK_PAGE = "FACEBOOK_PAGE"
    INSTAGRAM_BUSINESS = "INSTAGRAM_BUSINESS"
    GOOGLE_BUSINESS = "GOOGLE_BUSINESS"
    EVENTBRITE = "EVENTBRITE"
    MEETUP = "MEETUP"


EVENT_PROVIDERS = frozenset({
    SocialProvider.FACEBOOK_PAGE,
    SocialProvider.EVENTBRITE,
    SocialProvider.MEETUP,
})


class SocialPostStatus(str, Enum):
    DRAFT = "DRAFT"
    SCHEDULED = "SCHEDULED"
    PUBLISHING = "PUBLISHING"
    PUBLISHED = "PUBLISHED"
    FAILED = "FAILED"


class SyncStatus(str, Enum):
    SYNCING = "SYNCING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class SyncDirection(str, Enum):
    EXPORT = "export"
    IMPORT = "import"


class SpaceRequestStatus(str, Enum):
    PENDING = "PENDING"
    NEEDS_PAYMENT = "NEEDS_PAYMENT"
    PAID_HOLD = "PAID_HOLD"
    CONFIRMED = "CONFIRMED"
    DECLINED = "DECLINED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


class WebhookDeliveryStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


# ──────────────────────────────────────────────────────────────
#  Entities owned by the persistence collaborator
# ──────────────────────────────────────────────────────────────

class Business(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str = ""
    timezone: str = "UTC"


class Listing(BaseModel):
    """The bookable listing an EventSync exports to event platforms."""
    id: str = Field(default_factory=new_id)
    business_id: str
    title: str
    description: str = ""
    start_at: Optional[datetime] = None
    end_at: Optional[datetime] = None
    timezone: str = "UTC"
    venue_name: str = ""
    city: str = ""
    country: str = ""
    url: str = ""
    capacity: Optional[int] = None
    currency: str = "USD"


class SocialPost(BaseModel):
    id: str = Field(default_factory=new_id)
    business_id: str
    content: str
    platforms: list[SocialProvider] = Field(default_factory=list)
    media_urls: list[str] = Field(default_factory=list)
    status: SocialPostStatus = SocialPostStatus.DRAFT
    scheduled_at: Optional[datetime] = None
    external_ids: list[str] = Field(default_factory=list)
    error_message: Optional[str] = None
    published_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class SocialAccount(BaseModel):
    """OAuth-connected provider account. Tokens are stored encrypted."""
    id: str = Field(default_factory=new_id)
    business_id: str
    provider: SocialProvider
    account_id: str
    account_name: str = ""
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    scopes: list[str] = Field(default_factory=list)
    is_active: bool = True
    updated_at: datetime = Field(default_factory=utcnow)


class EventSync(BaseModel):
    id: str = Field(default_factory=new_id)
    listing_id: str
    business_id: str
    last_sync_status: Optional[SyncStatus] = None
    last_sync_at: Optional[datetime] = None
    last_sync_error: Optional[str] = None
    external_ids: list[str] = Field(default_factory=list)
    sync_data: dict[str, dict[str, Any]] = Field(default_factory=dict)


class WebhookEndpoint(BaseModel):
    id: str = Field(default_factory=new_id)
    business_id: str = ""
    url: str
    secret: str
    is_active: bool = True


class WebhookDelivery(BaseModel):
    """One attempted transmission. Rows are append-only."""
    id: str = Field(default_factory=new_id)
    webhook_id: str
    event: str
    status: WebhookDeliveryStatus
    job_id: str = ""
    attempt: int = 1
    response_status: Optional[int] = None
    response_body: Optional[str] = None
    error_message: Optional[str] = None
    duration_ms: int = 0
    delivered_at: datetime = Field(default_factory=utcnow)


class SpaceRequest(BaseModel):
    id: str = Field(default_factory=new_id)
    space_id: str
    business_id: str
    status: SpaceRequestStatus = SpaceRequestStatus.PENDING
    hold_expires_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=utcnow)


class AuditLogEntry(BaseModel):
    id: str = Field(default_factory=new_id)
    actor_id: str = "worker"
    actor_type: Literal["user", "system", "api"] = "system"
    action: str
    entity_type: str
    entity_id: str
    business_id: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


# ──────────────────────────────────────────────────────────────
#  Pipeline results
# ──────────────────────────────────────────────────────────────

class PlatformResult(BaseModel):
    """Outcome of publishing one post to one platform."""
    platform: SocialProvider
    success: bool
    external_id: Optional[str] = None
    url: Optional[str] = None
    error: Optional[str] = None


# ──────────────────────────────────────────────────────────────
#  Job payloads — discriminated on job_type
# ──────────────────────────────────────────────────────────────

class SocialPublishPayload(BaseModel):
    job_type: Literal["publish"] = "publish"
    post_id: str
    platforms: list[SocialProvider]
    content: str
    media_urls: list[str] = Field(default_factory=list)

    @field_validator("platforms")
    @classmethod
    def _unique_platforms(cls, platforms: list[SocialProvider]) -> list[SocialProvider]:
        # platforms is a set; keep first-seen order
        return list(dict.fromkeys(platforms))


class EventSyncPayload(BaseModel):
    job_type: Literal["sync"] = "sync"
    event_sync_id: str
    direction: SyncDirection = SyncDirection.EXPORT
    force_update: bool = False


class WebhookDeliveryPayload(BaseModel):
    job_type: Literal["deliver"] = "deliver"
    webhook_id: str
    event: str
    data: dict[str, Any] = Field(default_factory=dict)
    retry_count: int = 0


class HoldExpirePayload(BaseModel):
    job_type: Literal["expire"] = "expire"
    request_id: str
    expires_at: datetime


JobPayload = Annotated[
    Union[SocialPublishPayload, EventSyncPayload, WebhookDeliveryPayload, HoldExpirePayload],
    Field(discriminator="job_type"),
]

_PAYLOAD_ADAPTER: TypeAdapter = TypeAdapter(JobPayload)


def parse_job_payload(job_type: str, data: dict[str, Any]) -> BaseModel:
    """Validate a raw job payload against the variant named by job_type."""
    return _PAYLOAD_ADAPTER.validate_python({**data, "job_type": job_type})
