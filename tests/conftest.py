"""Shared test fixtures for the booking job core."""
from datetime import datetime, timedelta, timezone

import pytest

from config.settings import Settings, parse_settings
from database.store_memory import InMemoryStore
from job_queue.message_queue import BackoffPolicy, InMemoryMessageQueue, Job
from models.schemas import (
    Business, EventSync, Listing, SocialAccount, SocialPost, SocialProvider,
    SpaceRequest, SpaceRequestStatus, WebhookEndpoint,
)
from providers.base import AdapterRegistry
from providers.mock import MockPlatformAdapter
from services.audit import AuditLogger
from services.token_crypto import TokenCipher
from services.token_refresh import TokenRefreshService

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock():
    return lambda: NOW


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def queue():
    return InMemoryMessageQueue()


@pytest.fixture
def cipher():
    return TokenCipher("test-encryption-key")


@pytest.fixture
def mock_adapters() -> dict[SocialProvider, MockPlatformAdapter]:
    return {p: MockPlatformAdapter(p) for p in SocialProvider}


@pytest.fixture
def adapters(mock_adapters) -> AdapterRegistry:
    registry = AdapterRegistry()
    for adapter in mock_adapters.values():
        registry.register(adapter)
    return registry


@pytest.fixture
def tokens(store, adapters, cipher, clock):
    return TokenRefreshService(store, adapters, cipher, clock=clock)


@pytest.fixture
def audit(store, clock):
    return AuditLogger(store, clock=clock)


@pytest.fixture
def settings() -> Settings:
    return parse_settings({
        "queue": {"backend": "memory", "poll_timeout": 0.05, "delayed_promote_interval": 0.05},
        "database": {"store_backend": "memory"},
        "providers": {"use_real_providers": False},
        "security": {"token_encryption_key": "test-encryption-key"},
        "maintenance": {"token_refresh_enabled": False},
    })


# ──────────────────────────────────────────────────────────────
#  Seed data
# ──────────────────────────────────────────────────────────────

@pytest.fixture
async def business(store):
    return await store.save_business(Business(id="biz_1", name="Lakeside Studio"))


@pytest.fixture
def add_account(store, cipher):
    """Factory: connect a provider account for biz_1 with encrypted tokens."""

    async def _add(provider: SocialProvider, access_token: str = "access-ok",
                   refresh_token: str = "refresh-ok", expires_at: datetime = None,
                   is_active: bool = True, account_id: str = None) -> SocialAccount:
        account = SocialAccount(
            business_id="biz_1",
            provider=provider,
            account_id=account_id or f"{provider.value.lower()}_acct",
            access_token=cipher.encrypt(access_token),
            refresh_token=cipher.encrypt(refresh_token) if refresh_token else None,
            expires_at=expires_at if expires_at is not None else NOW + timedelta(days=30),
            is_active=is_active,
        )
        return await store.save_social_account(account)

    return _add


@pytest.fixture
async def post(store, business):
    return await store.save_social_post(SocialPost(
        id="post_1",
        business_id=business.id,
        content="Sunset yoga this Friday",
        platforms=[SocialProvider.FACEBOOK_PAGE, SocialProvider.INSTAGRAM_BUSINESS],
    ))


@pytest.fixture
async def listing(store, business):
    return await store.save_listing(Listing(
        id="listing_1",
        business_id=business.id,
        title="Sunset Yoga",
        description="Outdoor session by the lake",
        start_at=NOW + timedelta(days=3),
        end_at=NOW + timedelta(days=3, hours=1),
        venue_name="Lakeside Studio",
        city="Austin",
        country="US",
    ))


@pytest.fixture
async def event_sync(store, listing):
    return await store.save_event_sync(EventSync(
        id="sync_1", listing_id=listing.id, business_id=listing.business_id,
    ))


@pytest.fixture
async def endpoint(store, business):
    return await store.save_webhook_endpoint(WebhookEndpoint(
        id="wh_1", business_id=business.id, url="https://hooks.example.com/booking", secret="s3cret",
    ))


@pytest.fixture
async def space_request(store, business):
    return await store.save_space_request(SpaceRequest(
        id="req_1",
        space_id="space_1",
        business_id=business.id,
        status=SpaceRequestStatus.NEEDS_PAYMENT,
        hold_expires_at=NOW - timedelta(minutes=1),
    ))


def make_job(queue_name: str, job_type: str, payload: dict, attempts: int = 0,
             max_attempts: int = 3, backoff: BackoffPolicy = None) -> Job:
    return Job(
        queue_name=queue_name,
        job_type=job_type,
        payload=payload,
        attempts=attempts,
        max_attempts=max_attempts,
        backoff=backoff or BackoffPolicy("exponential", 2000),
    )
