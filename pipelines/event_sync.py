"""
Event Sync Pipeline — export a listing to event platforms.

Partial success is success: lastSyncStatus reports that the pipeline ran to
completion, not that every provider accepted the event. Per-provider
outcomes live in sync_data:

    sync_data = {
        "EVENTBRITE": {"id": "...", "url": "...", "synced_at": "..."},
        "MEETUP":     {"error": "...", "failed_at": "..."},
    }

Only an exception escaping the provider loop marks the sync FAILED.
Import is not implemented and returns an empty result.
"""
from __future__ import annotations

from typing import Any

import structlog

from core.state_machine import EVENT_SYNC_TRANSITIONS
from database.store_base import BaseStore
from job_queue.dispatcher import JobTypes
from job_queue.message_queue import Job
from models.schemas import EVENT_PROVIDERS, EventSync, EventSyncPayload, SocialAccount, SyncDirection, SyncStatus
from pipelines.base import ConcurrentModificationError, EntityNotFoundError, JobHandler
from providers.base import AdapterRegistry, EventDetails
from services.audit import AuditActions, AuditLogger
from services.token_refresh import TokenRefreshService

logger = structlog.get_logger()


class EventSyncHandler(JobHandler[EventSyncPayload]):

    job_type = JobTypes.SYNC

    def __init__(self, store: BaseStore, adapters: AdapterRegistry, tokens: TokenRefreshService,
                 audit: AuditLogger, clock=None):
        super().__init__(clock)
        self.store = store
        self.adapters = adapters
        self.tokens = tokens
        self.audit = audit

    async def handle(self, payload: EventSyncPayload, job: Job) -> dict[str, Any]:
        sync = await self.store.get_event_sync(payload.event_sync_id)
        if sync is None:
            raise EntityNotFoundError("EventSync", payload.event_sync_id)

        if payload.direction == SyncDirection.IMPORT:
            logger.info("event_sync_import_not_implemented", event_sync_id=sync.id)
            return {"direction": SyncDirection.IMPORT.value, "results": {}}

        # A SYNCING row belongs to the job exporting it
        if not EVENT_SYNC_TRANSITIONS.can_fire(sync.last_sync_status, "start"):
            raise ConcurrentModificationError("EventSync", sync.id, sync.last_sync_status)
        syncing = EVENT_SYNC_TRANSITIONS.next_state(sync.last_sync_status, "start")
        if not await self.store.update_event_sync(sync.id, expected_status=sync.last_sync_status,
                                                  last_sync_status=syncing, last_sync_error=None):
            raise ConcurrentModificationError("EventSync", sync.id, sync.last_sync_status)

        try:
            return await self._export(sync, payload.force_update, job)
        except Exception as e:
            error = str(e) or type(e).__name__
            if not await self.store.update_event_sync(
                sync.id, expected_status=SyncStatus.SYNCING,
                last_sync_status=EVENT_SYNC_TRANSITIONS.next_state(SyncStatus.SYNCING, "fail"),
                last_sync_error=error,
                last_sync_at=self._clock(),
            ):
                logger.warning("event_sync_failure_not_recorded", event_sync_id=sync.id, error=error)
                raise
            await self.audit.record(AuditActions.EVENT_SYNC_FAILED, "EventSync", sync.id,
                                    business_id=sync.business_id,
                                    metadata={"job_id": job.job_id, "error": error})
            logger.error("event_sync_failed", event_sync_id=sync.id, error=error)
            raise

    async def _export(self, sync: EventSync, force_update: bool, job: Job) -> dict[str, Any]:
        listing = await self.store.get_listing(sync.listing_id)
        if listing is None:
            raise EntityNotFoundError("Listing", sync.listing_id)
        details = EventDetails.from_listing(listing)

        accounts: dict[str, SocialAccount] = {}
        for account in await self.store.list_social_accounts(sync.business_id, providers=EVENT_PROVIDERS):
            accounts.setdefault(account.provider.value, account)
        external_ids = list(sync.external_ids)
        sync_data = {k: dict(v) for k, v in sync.sync_data.items()}
        exported, skipped, failed = [], [], []

        for provider, account in accounts.items():
            previous = sync_data.get(provider, {})
            if previous.get("id") and not force_update:
                skipped.append(provider)
                continue

            entry = await self._export_one(account, details)
            if "error" in entry:
                failed.append(provider)
                # Keep the last good export visible alongside the new error
                entry = {**{k: previous[k] for k in ("id", "url", "synced_at") if k in previous}, **entry}
            else:
                exported.append(provider)
                if previous.get("id") in external_ids:
                    external_ids.remove(previous["id"])
                external_ids.append(entry["id"])
            sync_data[provider] = entry

        done = EVENT_SYNC_TRANSITIONS.next_state(SyncStatus.SYNCING, "complete")
        if not await self.store.update_event_sync(
            sync.id, expected_status=SyncStatus.SYNCING,
            last_sync_status=done, last_sync_at=self._clock(), last_sync_error=None,
            external_ids=external_ids, sync_data=sync_data,
        ):
            raise ConcurrentModificationError("EventSync", sync.id, SyncStatus.SYNCING)

        summary = {"exported": exported, "skipped": skipped, "failed": failed}
        await self.audit.record(AuditActions.EVENT_SYNC_COMPLETED, "EventSync", sync.id,
                                business_id=sync.business_id,
                                metadata={"job_id": job.job_id, **summary, "sync_data": sync_data})
        logger.info("event_sync_completed", event_sync_id=sync.id, **summary)
        return {"direction": SyncDirection.EXPORT.value, "status": done.value, **summary}

    async def _export_one(self, account: SocialAccount, details: EventDetails) -> dict[str, Any]:
        provider = account.provider
        token = await self.tokens.ensure_access_token(account)
        if not token.ok:
            return {"error": token.error, "failed_at": self._clock().isoformat()}

        try:
            adapter = self.adapters.require(provider)
            published = await adapter.create_event(account.account_id, token.access_token, details)
        except Exception as e:
            logger.warning("event_provider_failed", provider=provider.value,
                           account_id=account.id, error=str(e))
            return {"error": str(e) or type(e).__name__, "failed_at": self._clock().isoformat()}

        return {"id": published.id, "url": published.url, "synced_at": self._clock().isoformat()}
