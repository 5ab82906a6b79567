"""
Mock platform adapter — used when providers.use_real_providers is false.

Returns deterministic ids without network I/O. Failures can be scripted per
capability for local runs and tests:

    adapter = MockPlatformAdapter(SocialProvider.MEETUP, event_error="Group not found")
"""
from __future__ import annotations

import itertools
from typing import Any, Optional

import structlog

from models.schemas import SocialProvider
from providers.base import EventDetails, PlatformAdapter, PostContent, ProviderError, PublishedObject, TokenSet

logger = structlog.get_logger()


class MockPlatformAdapter(PlatformAdapter):

    def __init__(self, provider: SocialProvider, post_error: Optional[str] = None,
                 event_error: Optional[str] = None, refresh_error: Optional[str] = None,
                 token_lifetime_seconds: int = 3600):
        self.provider = provider
        self.post_error = post_error
        self.event_error = event_error
        self.refresh_error = refresh_error
        self.token_lifetime_seconds = token_lifetime_seconds
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self._seq = itertools.count(1)

    def _fail(self, message: str):
        raise ProviderError(message, code="MOCK_FAILURE", provider=self.provider.value)

    def _object(self, kind: str) -> PublishedObject:
        object_id = f"mock_{self.provider.value.lower()}_{kind}_{next(self._seq)}"
        return PublishedObject(id=object_id,
                               url=f"https://mock.{self.provider.value.lower()}.example/{object_id}")

    async def create_post(self, account_id: str, access_token: str, post: PostContent) -> PublishedObject:
        self.calls.append(("create_post", {"account_id": account_id, "access_token": access_token,
                                           "message": post.message}))
        if self.post_error:
            self._fail(self.post_error)
        published = self._object("post")
        logger.info("mock_post_created", provider=self.provider.value, id=published.id)
        return published

    async def create_event(self, account_id: str, access_token: str, event: EventDetails) -> PublishedObject:
        self.calls.append(("create_event", {"account_id": account_id, "access_token": access_token,
                                            "title": event.title}))
        if self.event_error:
            self._fail(self.event_error)
        return self._object("event")

    async def refresh_token(self, refresh_token: str) -> TokenSet:
        self.calls.append(("refresh_token", {"refresh_token": refresh_token}))
        if self.refresh_error:
            self._fail(self.refresh_error)
        n = next(self._seq)
        return TokenSet(access_token=f"mock_access_{n}", refresh_token=f"mock_refresh_{n}",
                        expires_in=self.token_lifetime_seconds)

    async def validate_token(self, access_token: str) -> bool:
        self.calls.append(("validate_token", {"access_token": access_token}))
        return bool(access_token)

    def calls_to(self, capability: str) -> list[dict[str, Any]]:
        return [kwargs for name, kwargs in self.calls if name == capability]
