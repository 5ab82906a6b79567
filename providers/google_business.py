"""
Google Business Profile adapter — My Business API v4 local posts.

account_id is the location resource name, e.g. "accounts/123/locations/456".
"""
from __future__ import annotations

from typing import Any

from models.schemas import SocialProvider
from providers.base import EventDetails, PlatformAdapter, PostContent, PublishedObject


class GoogleBusinessAdapter(PlatformAdapter):

    provider = SocialProvider.GOOGLE_BUSINESS
    API_BASE = "https://mybusiness.googleapis.com"
    API_VERSION = "v4"
    TOKEN_URL = "https://oauth2.googleapis.com/token"
    RETRYABLE_CODES = frozenset({"SERVICE_UNAVAILABLE", "INTERNAL_ERROR", "DEADLINE_EXCEEDED"})

    def _url(self, path: str) -> str:
        return f"{self.api_base}/{self.API_VERSION}{path}"

    @staticmethod
    def _published(data: dict[str, Any]) -> PublishedObject:
        name = data["name"]
        return PublishedObject(id=name, url=f"https://business.google.com/posts/{name.split('/')[-1]}")

    async def create_post(self, account_id: str, access_token: str, post: PostContent) -> PublishedObject:
        body: dict[str, Any] = {"summary": post.message}
        if post.link:
            body["callToAction"] = {"actionType": "LEARN_MORE", "url": post.link}
        if post.media_urls:
            body["media"] = [{"mediaFormat": "PHOTO", "sourceUrl": u} for u in post.media_urls]

        data = await self._request("POST", self._url(f"/{account_id}/localPosts"), access_token, json=body)
        return self._published(data)

    async def create_event(self, account_id: str, access_token: str, event: EventDetails) -> PublishedObject:
        schedule = {
            "startDate": event.start_at.strftime("%Y-%m-%d"),
            "startTime": event.start_at.strftime("%H:%M"),
        }
        if event.end_at:
            schedule["endDate"] = event.end_at.strftime("%Y-%m-%d")
            schedule["endTime"] = event.end_at.strftime("%H:%M")

        body = {
            "summary": event.description or event.title,
            "topicType": "EVENT",
            "event": {"title": event.title, "schedule": schedule},
        }
        data = await self._request("POST", self._url(f"/{account_id}/localPosts"), access_token, json=body)
        return self._published(data)

    async def validate_token(self, access_token: str) -> bool:
        return await self._probe("GET", self._url("/accounts"), access_token)
