"""
Token Refresh — keeps SocialAccount access tokens usable.

Shared by the publish and sync pipelines. A refresh failure is returned as a
result, never raised: the caller treats it as a failure of that one
platform and moves on to the next.

New tokens are persisted before they are handed back, so the adapter call
that follows always runs with a token that is already stored.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

import structlog

from database.store_base import BaseStore
from models.schemas import SocialAccount
from providers.base import AdapterRegistry
from services.token_crypto import TokenCipher

logger = structlog.get_logger()


@dataclass
class RefreshResult:
    success: bool
    access_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    error: Optional[str] = None


@dataclass
class TokenResolution:
    """A usable plaintext access token, or the reason there isn't one."""
    ok: bool
    access_token: Optional[str] = None
    refreshed: bool = False
    error: Optional[str] = None


class TokenRefreshService:

    def __init__(self, store: BaseStore, adapters: AdapterRegistry, cipher: TokenCipher,
                 clock: Callable[[], datetime] = None):
        self.store = store
        self.adapters = adapters
        self.cipher = cipher
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def needs_refresh(self, account: SocialAccount, now: datetime = None) -> bool:
        now = now or self._clock()
        return account.expires_at is not None and account.expires_at < now

    async def refresh(self, account: SocialAccount) -> RefreshResult:
        log = logger.bind(account_id=account.id, provider=account.provider.value)
        try:
            refresh_token = self.cipher.decrypt(account.refresh_token)
            if not refresh_token:
                log.warning("token_refresh_skipped", reason="no_refresh_token")
                return RefreshResult(success=False, error="No refresh token available")

            adapter = self.adapters.require(account.provider)
            tokens = await adapter.refresh_token(refresh_token)
            expires_at = tokens.expires_at(self._clock())

            # Providers that don't rotate refresh tokens omit them; keep the old one
            new_refresh = (self.cipher.encrypt(tokens.refresh_token)
                           if tokens.refresh_token else account.refresh_token)
            stored = await self.store.update_social_account(
                account.id,
                access_token=self.cipher.encrypt(tokens.access_token),
                refresh_token=new_refresh,
                expires_at=expires_at,
            )
            if not stored:
                return RefreshResult(success=False, error="Social account no longer exists")
        except Exception as e:
            log.error("token_refresh_failed", error=str(e), error_type=type(e).__name__)
            return RefreshResult(success=False, error=str(e) or type(e).__name__)

        log.info("token_refreshed", expires_at=expires_at.isoformat() if expires_at else None)
        return RefreshResult(success=True, access_token=tokens.access_token, expires_at=expires_at)

    async def ensure_access_token(self, account: SocialAccount) -> TokenResolution:
        """Refresh first when expires_at has passed, then return the plaintext token."""
        if self.needs_refresh(account):
            result = await self.refresh(account)
            if not result.success:
                return TokenResolution(ok=False, error=f"Token refresh failed: {result.error}")
            return TokenResolution(ok=True, access_token=result.access_token, refreshed=True)

        token = self.cipher.decrypt(account.access_token)
        if not token:
            return TokenResolution(ok=False, error="Access token could not be decrypted")
        return TokenResolution(ok=True, access_token=token)

    async def refresh_expired_tokens(self) -> dict[str, int]:
        """Sweep: refresh every active account whose token has expired."""
        accounts = await self.store.list_expired_accounts(self._clock())
        refreshed = 0
        for account in accounts:
            result = await self.refresh(account)
            if result.success:
                refreshed += 1
        summary = {"checked": len(accounts), "refreshed": refreshed, "failed": len(accounts) - refreshed}
        logger.info("token_sweep_completed", **summary)
        return summary

    async def validate_and_refresh(self, account_id: str) -> bool:
        """True when the account ends up holding a token the provider accepts."""
        account = await self.store.get_social_account(account_id)
        if account is None or not account.is_active:
            return False

        resolution = await self.ensure_access_token(account)
        if not resolution.ok:
            return False

        adapter = self.adapters.require(account.provider)
        if await adapter.validate_token(resolution.access_token):
            return True
        if resolution.refreshed or not account.refresh_token:
            return False

        result = await self.refresh(account)
        return result.success and await adapter.validate_token(result.access_token)
