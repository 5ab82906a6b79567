"""
Facebook Page & Instagram Business adapters — Graph API v18.0.

Provides:
- Page feed posts, with an unpublished photo upload first when media is attached
- Page events
- Instagram two-step publish: create media container, then media_publish
- Token validation via /me

Page tokens are long-lived and cannot be refreshed with a refresh token;
refresh_token raises a non-retryable ProviderError.
"""
from __future__ import annotations

import json

import structlog

from models.schemas import SocialProvider
from providers.base import (
    EventDetails, PlatformAdapter, PostContent, ProviderError, PublishedObject, TokenSet, iso_utc,
)

logger = structlog.get_logger()


class FacebookPageAdapter(PlatformAdapter):
    """Graph API adapter for a Facebook Page (account_id is the page id)."""

    provider = SocialProvider.FACEBOOK_PAGE
    API_BASE = "https://graph.facebook.com"
    API_VERSION = "v18.0"
    RETRYABLE_CODES = frozenset({"API_TEMPORARILY_UNAVAILABLE", "SERVICE_UNAVAILABLE", "TEMPORARY_ISSUE"})

    def _url(self, path: str) -> str:
        return f"{self.api_base}/{self.API_VERSION}{path}"

    async def _graph(self, method: str, path: str, access_token: str, body: dict = None, params: dict = None):
        # Graph accepts the token as a body/query field rather than a header
        if body is not None:
            return await self._request(method, self._url(path), json={**body, "access_token": access_token})
        return await self._request(method, self._url(path), params={**(params or {}), "access_token": access_token})

    async def create_post(self, account_id: str, access_token: str, post: PostContent) -> PublishedObject:
        body = {"message": post.message}

        if post.media_urls:
            photo = await self._graph("POST", f"/{account_id}/photos", access_token, {
                "url": post.media_urls[0],
                "caption": post.message,
                "published": False,
            })
            body["attached_media"] = json.dumps([{"media_fbid": photo["id"]}])
        elif post.link:
            body["link"] = post.link

        data = await self._graph("POST", f"/{account_id}/feed", access_token, body)
        post_id = str(data["id"])
        logger.info("facebook_post_created", page_id=account_id, post_id=post_id)
        return PublishedObject(
            id=post_id,
            url=f"https://www.facebook.com/{account_id}/posts/{post_id.split('_')[-1]}",
        )

    async def create_event(self, account_id: str, access_token: str, event: EventDetails) -> PublishedObject:
        body = {
            "name": event.title,
            "start_time": iso_utc(event.start_at),
            "description": event.description,
        }
        if event.end_at:
            body["end_time"] = iso_utc(event.end_at)
        if event.venue_name:
            body["place"] = {
                "name": event.venue_name,
                "location": {"city": event.city, "country": event.country},
            }
        if event.url:
            body["ticket_uri"] = event.url

        data = await self._graph("POST", f"/{account_id}/events", access_token, body)
        event_id = str(data["id"])
        return PublishedObject(id=event_id, url=f"https://www.facebook.com/events/{event_id}")

    async def refresh_token(self, refresh_token: str) -> TokenSet:
        raise ProviderError("Facebook tokens are long-lived", code="REFRESH_NOT_SUPPORTED",
                            provider=self.provider.value)

    async def validate_token(self, access_token: str) -> bool:
        return await self._probe("GET", self._url("/me"), params={"access_token": access_token})


class InstagramBusinessAdapter(FacebookPageAdapter):
    """Instagram Business publishing through the Graph API (account_id is the IG user id)."""

    provider = SocialProvider.INSTAGRAM_BUSINESS

    async def create_post(self, account_id: str, access_token: str, post: PostContent) -> PublishedObject:
        if not post.media_urls:
            raise ProviderError("Instagram posts require an image", code="MEDIA_REQUIRED",
                                provider=self.provider.value)

        container = await self._graph("POST", f"/{account_id}/media", access_token, {
            "image_url": post.media_urls[0],
            "caption": post.message,
        })
        data = await self._graph("POST", f"/{account_id}/media_publish", access_token, {
            "creation_id": container["id"],
        })
        media_id = str(data["id"])
        logger.info("instagram_media_published", ig_user_id=account_id, media_id=media_id)
        return PublishedObject(id=media_id, url=f"https://www.instagram.com/p/{media_id}/")

    async def create_event(self, account_id: str, access_token: str, event: EventDetails) -> PublishedObject:
        raise self._unsupported("create_event")
