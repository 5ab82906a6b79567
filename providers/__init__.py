"""Platform adapters for the social and event providers."""
from __future__ import annotations

import httpx
import structlog

from config.settings import ProvidersConfig
from models.schemas import SocialProvider
from providers.base import (
    AdapterRegistry,
    EventDetails,
    PlatformAdapter,
    PostContent,
    ProviderError,
    PublishedObject,
    TokenSet,
    is_retryable_status,
)
from providers.eventbrite import EventbriteAdapter
from providers.facebook import FacebookPageAdapter, InstagramBusinessAdapter
from providers.google_business import GoogleBusinessAdapter
from providers.meetup import MeetupAdapter
from providers.mock import MockPlatformAdapter

logger = structlog.get_logger()


def create_adapter_registry(config: ProvidersConfig, http: httpx.AsyncClient) -> AdapterRegistry:
    """Build one adapter per provider: real clients or mocks, per config."""
    registry = AdapterRegistry()

    if not config.use_real_providers:
        for provider in SocialProvider:
            registry.register(MockPlatformAdapter(provider))
        logger.info("adapter_registry_created", mode="mock")
        return registry

    common = {"timeout": config.request_timeout, "transport_retries": config.transport_retries}
    registry.register(FacebookPageAdapter(http, config.facebook, **common))
    registry.register(InstagramBusinessAdapter(http, config.facebook, **common))
    registry.register(GoogleBusinessAdapter(http, config.google, **common))
    registry.register(EventbriteAdapter(http, config.eventbrite, **common))
    registry.register(MeetupAdapter(http, config.meetup, **common))
    logger.info("adapter_registry_created", mode="real",
                providers=[p.value for p in registry.get_available()])
    return registry


__all__ = [
    "AdapterRegistry", "EventDetails", "PlatformAdapter", "PostContent", "ProviderError",
    "PublishedObject", "TokenSet", "is_retryable_status",
    "EventbriteAdapter", "FacebookPageAdapter", "InstagramBusinessAdapter",
    "GoogleBusinessAdapter", "MeetupAdapter", "MockPlatformAdapter",
    "create_adapter_registry",
]
