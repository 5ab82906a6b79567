"""
Meetup adapter — REST API (account_id is the group urlname).
"""
from __future__ import annotations

from typing import Any

from models.schemas import SocialProvider
from providers.base import EventDetails, PlatformAdapter, PublishedObject


class MeetupAdapter(PlatformAdapter):

    provider = SocialProvider.MEETUP
    API_BASE = "https://api.meetup.com"
    TOKEN_URL = "https://secure.meetup.com/oauth2/access"

    async def create_event(self, account_id: str, access_token: str, event: EventDetails) -> PublishedObject:
        start_ms = int(event.start_at.timestamp() * 1000)
        body: dict[str, Any] = {
            "name": event.title,
            "time": start_ms,
            "description": event.description,
            "publish_status": "published",
        }
        if event.end_at:
            body["duration"] = int(event.end_at.timestamp() * 1000) - start_ms
        if event.capacity:
            body["rsvp_limit"] = event.capacity
        if event.venue_name:
            body["venue"] = {"name": event.venue_name, "city": event.city, "country": event.country}

        data = await self._request("POST", f"{self.api_base}/{account_id}/events", access_token, json=body)
        return PublishedObject(id=str(data["id"]), url=data.get("link", ""))

    async def validate_token(self, access_token: str) -> bool:
        return await self._probe("GET", f"{self.api_base}/members/self", access_token)
