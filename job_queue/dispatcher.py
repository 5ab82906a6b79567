"""
Job Dispatcher — the enqueue API used by admin and booking collaborators.

Enqueueing only records intent; nothing runs synchronously. There is no
deduplication: enqueueing the same logical job twice creates two jobs.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Optional

import structlog
from pydantic import BaseModel

from config.settings import QueueDefinition
from job_queue.message_queue import BackoffPolicy, Job, MessageQueue
from models.schemas import (
    EventSyncPayload, HoldExpirePayload, SocialProvider, SocialPublishPayload,
    SyncDirection, WebhookDeliveryPayload,
)

logger = structlog.get_logger()


class Queues:
    SOCIAL = "social"
    EVENT_SYNC = "event-sync"
    WEBHOOK = "webhook"
    SPACE_HOLD_EXPIRE = "space-hold-expire"

    ALL = (SOCIAL, EVENT_SYNC, WEBHOOK, SPACE_HOLD_EXPIRE)


class JobTypes:
    PUBLISH = "publish"
    SYNC = "sync"
    DELIVER = "deliver"
    EXPIRE = "expire"


@dataclass
class JobOptions:
    attempts: Optional[int] = None
    backoff: Optional[BackoffPolicy] = None
    delay_ms: int = 0


@dataclass(frozen=True)
class JobHandle:
    """Opaque reference returned to the enqueuing collaborator."""
    job_id: str
    queue_name: str
    job_type: str


DEFAULT_QUEUE_OPTIONS: dict[str, JobOptions] = {
    Queues.SOCIAL: JobOptions(attempts=3, backoff=BackoffPolicy("exponential", 2000)),
    Queues.EVENT_SYNC: JobOptions(attempts=3, backoff=BackoffPolicy("exponential", 2000)),
    Queues.WEBHOOK: JobOptions(attempts=5, backoff=BackoffPolicy("exponential", 2000)),
    Queues.SPACE_HOLD_EXPIRE: JobOptions(attempts=1, backoff=BackoffPolicy("exponential", 2000)),
}


def queue_options_from_config(queues: dict[str, QueueDefinition]) -> dict[str, JobOptions]:
    options = dict(DEFAULT_QUEUE_OPTIONS)
    for name, qdef in queues.items():
        options[name] = JobOptions(
            attempts=qdef.attempts,
            backoff=BackoffPolicy(qdef.backoff_type, qdef.backoff_delay_ms),
        )
    return options


def _delay_until(when: Optional[datetime], now: datetime) -> int:
    if when is None:
        return 0
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0, int((when - now).total_seconds() * 1000))


class JobDispatcher:
    """Typed enqueue operations over a MessageQueue."""

    def __init__(self, queue: MessageQueue, defaults: dict[str, JobOptions] = None, store=None,
                 hold_duration: timedelta = timedelta(hours=24), clock=None):
        self.queue = queue
        self.store = store
        self.defaults = defaults or DEFAULT_QUEUE_OPTIONS
        self.hold_duration = hold_duration
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def enqueue(self, queue_name: str, job_type: str, payload: BaseModel | dict[str, Any],
                      options: JobOptions = None) -> JobHandle:
        if queue_name not in self.defaults:
            raise ValueError(f"Unknown queue: {queue_name}")
        base = self.defaults[queue_name]
        options = options or JobOptions()

        if isinstance(payload, BaseModel):
            data = payload.model_dump(mode="json", exclude={"job_type"})
        else:
            data = dict(payload)

        job = Job(
            queue_name=queue_name,
            job_type=job_type,
            payload=data,
            max_attempts=options.attempts or base.attempts or 1,
            backoff=options.backoff or base.backoff or BackoffPolicy(),
            delay_ms=max(0, options.delay_ms),
        )
        await self.queue.add(job)
        return JobHandle(job_id=job.job_id, queue_name=queue_name, job_type=job_type)

    async def enqueue_social_publish(self, post_id: str, platforms: Iterable[SocialProvider | str],
                                     content: str, media_urls: list[str] = None,
                                     scheduled_at: datetime = None) -> JobHandle:
        payload = SocialPublishPayload(
            post_id=post_id,
            platforms=[SocialProvider(p) for p in platforms],
            content=content,
            media_urls=media_urls or [],
        )
        delay = _delay_until(scheduled_at, self._clock())
        handle = await self.enqueue(Queues.SOCIAL, JobTypes.PUBLISH, payload,
                                    JobOptions(delay_ms=delay))
        logger.info("social_publish_enqueued", post_id=post_id, job_id=handle.job_id, delay_ms=delay)
        return handle

    async def enqueue_event_sync(self, event_sync_id: str,
                                 direction: SyncDirection | str = SyncDirection.EXPORT,
                                 force_update: bool = False) -> JobHandle:
        payload = EventSyncPayload(
            event_sync_id=event_sync_id,
            direction=SyncDirection(direction),
            force_update=force_update,
        )
        return await self.enqueue(Queues.EVENT_SYNC, JobTypes.SYNC, payload)

    async def enqueue_webhook(self, webhook_id: str, event: str, data: dict[str, Any],
                              retry_count: int = 0) -> JobHandle:
        payload = WebhookDeliveryPayload(
            webhook_id=webhook_id, event=event, data=data, retry_count=retry_count,
        )
        return await self.enqueue(Queues.WEBHOOK, JobTypes.DELIVER, payload)

    async def enqueue_webhook_to_all(self, business_id: str, event: str,
                                     data: dict[str, Any]) -> list[JobHandle]:
        """Fan an event out to every active endpoint of a business."""
        if self.store is None:
            raise RuntimeError("enqueue_webhook_to_all requires a store")
        endpoints = await self.store.list_webhook_endpoints(business_id, active_only=True)
        return [await self.enqueue_webhook(ep.id, event, data) for ep in endpoints]

    async def enqueue_hold_expiry(self, request_id: str, expires_at: datetime = None) -> JobHandle:
        now = self._clock()
        if expires_at is None:
            expires_at = now + self.hold_duration
        elif expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        payload = HoldExpirePayload(request_id=request_id, expires_at=expires_at)
        handle = await self.enqueue(Queues.SPACE_HOLD_EXPIRE, JobTypes.EXPIRE, payload,
                                    JobOptions(delay_ms=_delay_until(expires_at, now)))
        logger.info("hold_expiry_enqueued", request_id=request_id,
                    job_id=handle.job_id, expires_at=expires_at.isoformat())
        return handle
