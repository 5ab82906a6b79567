"""
Eventbrite adapter — REST API v3 (account_id is the organizer id).
"""
from __future__ import annotations

from typing import Any

from models.schemas import SocialProvider
from providers.base import EventDetails, PlatformAdapter, PublishedObject, iso_utc


class EventbriteAdapter(PlatformAdapter):

    provider = SocialProvider.EVENTBRITE
    API_BASE = "https://www.eventbriteapi.com"
    TOKEN_URL = "https://www.eventbrite.com/oauth/token"

    def _parse_error(self, data: dict[str, Any], status_code: int) -> tuple[str, str]:
        # Eventbrite errors are flat: {"error": "CODE", "error_description": "..."}
        code = data.get("error") if isinstance(data.get("error"), str) else "UNKNOWN_ERROR"
        return code, data.get("error_description") or f"HTTP {status_code}"

    async def create_event(self, account_id: str, access_token: str, event: EventDetails) -> PublishedObject:
        body: dict[str, Any] = {
            "name": {"html": event.title},
            "start": {"timezone": event.timezone, "utc": iso_utc(event.start_at)},
            "end": {"timezone": event.timezone, "utc": iso_utc(event.end_at or event.start_at)},
            "currency": event.currency,
            "listed": True,
            "shareable": True,
            "organizer_id": account_id,
        }
        if event.description:
            body["description"] = {"html": event.description}
        if event.capacity:
            body["capacity"] = event.capacity

        data = await self._request("POST", f"{self.api_base}/v3/events/", access_token, json={"event": body})
        return PublishedObject(id=str(data["id"]), url=data.get("url", ""))

    async def validate_token(self, access_token: str) -> bool:
        return await self._probe("GET", f"{self.api_base}/v3/users/me/", access_token)
