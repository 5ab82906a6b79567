"""
Platform Adapters — Shared infrastructure for third-party platform clients.

Provides:
- ProviderError: structured error carrying provider code, HTTP status and
  a retryable hint
- PublishedObject / TokenSet / PostContent / EventDetails: adapter I/O types
- PlatformAdapter: abstract base wrapping every HTTP call with transport
  retries (tenacity) and error classification
- AdapterRegistry: adapter lookup by provider id
"""
from __future__ import annotations

import abc
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import httpx
import structlog
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from config.settings import ProviderCredentials
from models.schemas import Listing, SocialProvider

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class ProviderError(Exception):
    """Failure reported by (or while talking to) a third-party platform."""

    def __init__(self, message: str, code: str = "UNKNOWN_ERROR", retryable: bool = False,
                 status_code: Optional[int] = None, provider: str = ""):
        self.code = code
        self.retryable = retryable
        self.status_code = status_code
        self.provider = provider
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": str(self),
            "retryable": self.retryable,
            "status_code": self.status_code,
        }


COMMON_RETRYABLE_CODES = frozenset({"SERVICE_UNAVAILABLE", "INTERNAL_ERROR", "TEMPORARY_ISSUE"})


def is_retryable_status(status_code: Optional[int], code: str = "",
                        retryable_codes: frozenset[str] = COMMON_RETRYABLE_CODES) -> bool:
    """Rate limiting and server errors are transient, as are a few named provider codes."""
    if status_code == 429:
        return True
    if status_code is not None and status_code >= 500:
        return True
    return code in retryable_codes


# ══════════════════════════════════════════════════════════════
#  ADAPTER I/O
# ══════════════════════════════════════════════════════════════

@dataclass
class PublishedObject:
    id: str
    url: str = ""


@dataclass
class TokenSet:
    access_token: str
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None

    def expires_at(self, now: datetime) -> Optional[datetime]:
        if self.expires_in is None:
            return None
        return now + timedelta(seconds=int(self.expires_in))


@dataclass
class PostContent:
    message: str
    media_urls: list[str] = field(default_factory=list)
    link: Optional[str] = None


@dataclass
class EventDetails:
    title: str
    start_at: datetime
    end_at: Optional[datetime] = None
    description: str = ""
    timezone: str = "UTC"
    venue_name: str = ""
    city: str = ""
    country: str = ""
    url: str = ""
    capacity: Optional[int] = None
    currency: str = "USD"

    @classmethod
    def from_listing(cls, listing: Listing) -> "EventDetails":
        if listing.start_at is None:
            raise ProviderError(f"Listing {listing.id} has no start time", code="INVALID_EVENT")
        return cls(
            title=listing.title,
            start_at=listing.start_at,
            end_at=listing.end_at,
            description=listing.description,
            timezone=listing.timezone,
            venue_name=listing.venue_name,
            city=listing.city,
            country=listing.country,
            url=listing.url,
            capacity=listing.capacity,
            currency=listing.currency,
        )


# ══════════════════════════════════════════════════════════════
#  PLATFORM ADAPTER — Abstract Base
# ══════════════════════════════════════════════════════════════

class PlatformAdapter(abc.ABC):
    """
    Base class for all platform adapters.

    Subclasses override the capabilities their platform supports; the
    defaults raise a non-retryable NOT_SUPPORTED ProviderError. Every HTTP
    call goes through _request, which retries transport failures and turns
    error responses into ProviderError.
    """

    provider: SocialProvider
    API_BASE: str = ""
    TOKEN_URL: str = ""
    RETRYABLE_CODES: frozenset[str] = COMMON_RETRYABLE_CODES

    def __init__(self, http: httpx.AsyncClient, credentials: ProviderCredentials = None,
                 timeout: float = 30.0, transport_retries: int = 3):
        self.http = http
        self.credentials = credentials or ProviderCredentials()
        self.api_base = (self.credentials.api_base or self.API_BASE).rstrip("/")
        self.timeout = timeout
        self.transport_retries = max(1, transport_retries)

    # ── Capabilities ──────────────────────────────────────────

    async def create_post(self, account_id: str, access_token: str, post: PostContent) -> PublishedObject:
        raise self._unsupported("create_post")

    async def create_event(self, account_id: str, access_token: str, event: EventDetails) -> PublishedObject:
        raise self._unsupported("create_event")

    async def refresh_token(self, refresh_token: str) -> TokenSet:
        if not self.TOKEN_URL:
            raise self._unsupported("refresh_token")
        return await self._refresh_oauth(self.TOKEN_URL, refresh_token)

    @abc.abstractmethod
    async def validate_token(self, access_token: str) -> bool:
        ...

    # ── HTTP ──────────────────────────────────────────────────

    async def _request(self, method: str, url: str, access_token: str = None, **kwargs) -> dict[str, Any]:
        headers = dict(kwargs.pop("headers", None) or {})
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.transport_retries),
                wait=wait_exponential(min=1, max=5),
                retry=retry_if_exception_type(httpx.TransportError),
                reraise=True,
            ):
                with attempt:
                    resp = await self.http.request(method, url, headers=headers,
                                                   timeout=self.timeout, **kwargs)
        except httpx.TransportError as e:
            logger.error("provider_request_failed", provider=self.provider.value, url=url, error=str(e))
            raise ProviderError(str(e) or type(e).__name__, code="NETWORK_ERROR",
                                retryable=True, provider=self.provider.value) from e

        data = _json_body(resp)
        if resp.status_code >= 400:
            code, message = self._parse_error(data, resp.status_code)
            logger.error("provider_api_error",
                         provider=self.provider.value,
                         status=resp.status_code,
                         code=code,
                         body=resp.text[:500])
            raise ProviderError(
                message,
                code=code,
                retryable=is_retryable_status(resp.status_code, code, self.RETRYABLE_CODES),
                status_code=resp.status_code,
                provider=self.provider.value,
            )
        return data

    def _parse_error(self, data: dict[str, Any], status_code: int) -> tuple[str, str]:
        error = data.get("error") if isinstance(data, dict) else None
        if isinstance(error, dict):
            code = error.get("status") or error.get("code") or "UNKNOWN_ERROR"
            return str(code), error.get("message") or f"HTTP {status_code}"
        return "UNKNOWN_ERROR", f"HTTP {status_code}"

    async def _refresh_oauth(self, token_url: str, refresh_token: str) -> TokenSet:
        data = await self._request("POST", token_url, data={
            "grant_type": "refresh_token",
            "client_id": self.credentials.client_id,
            "client_secret": self.credentials.client_secret,
            "refresh_token": refresh_token,
        })
        if not data.get("access_token"):
            raise ProviderError("Token response had no access_token", code="INVALID_TOKEN_RESPONSE",
                                provider=self.provider.value)
        return TokenSet(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_in=data.get("expires_in"),
        )

    async def _probe(self, method: str, url: str, **kwargs) -> bool:
        try:
            await self._request(method, url, **kwargs)
            return True
        except ProviderError:
            return False

    def _unsupported(self, capability: str) -> ProviderError:
        return ProviderError(f"{self.provider.value} does not support {capability}",
                             code="NOT_SUPPORTED", provider=self.provider.value)


def _json_body(resp: httpx.Response) -> dict[str, Any]:
    if not resp.content:
        return {}
    try:
        data = resp.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {"data": data}


def iso_utc(value: datetime) -> str:
    """Format as 2024-05-01T18:00:00Z."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


# ══════════════════════════════════════════════════════════════
#  ADAPTER REGISTRY
# ══════════════════════════════════════════════════════════════

class AdapterRegistry:
    """Adapters keyed by provider id, resolved once per platform."""

    def __init__(self):
        self._adapters: dict[SocialProvider, PlatformAdapter] = {}

    def register(self, adapter: PlatformAdapter):
        self._adapters[adapter.provider] = adapter

    def get(self, provider: SocialProvider) -> Optional[PlatformAdapter]:
        return self._adapters.get(provider)

    def require(self, provider: SocialProvider) -> PlatformAdapter:
        adapter = self._adapters.get(provider)
        if adapter is None:
            raise ProviderError(f"No adapter registered for {provider.value}",
                                code="UNSUPPORTED_PROVIDER", provider=provider.value)
        return adapter

    def get_available(self) -> list[SocialProvider]:
        return list(self._adapters.keys())
