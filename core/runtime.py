"""
Job Runtime — builds and owns every long-lived component.

Replaces module-level singletons: the API process and the worker process
each construct one JobRuntime from Settings, and everything downstream
receives its collaborators explicitly.

Lifecycle:
    runtime = JobRuntime(settings)
    await runtime.start()           # init() then start_workers()
    ...
    await runtime.stop()            # graceful: stop pulling, then close connections
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional

import httpx
import structlog

from config.settings import Settings
from database.store_base import BaseStore
from database.store_factory import create_store
from job_queue.consumer import DelayedJobPromoter, QueueWorker
from job_queue.dispatcher import JobDispatcher, Queues, queue_options_from_config
from job_queue.message_queue import MessageQueue, create_message_queue
from pipelines.event_sync import EventSyncHandler
from pipelines.hold_expiry import HoldExpiryHandler
from pipelines.social_publish import SocialPublishHandler
from pipelines.webhook_delivery import WebhookDeliveryHandler
from providers import AdapterRegistry, create_adapter_registry
from services.audit import AuditLogger
from services.token_crypto import TokenCipher
from services.token_refresh import TokenRefreshService

logger = structlog.get_logger()


class JobRuntime:

    def __init__(
        self,
        settings: Settings,
        store: BaseStore = None,
        queue: MessageQueue = None,
        http: httpx.AsyncClient = None,
        adapters: AdapterRegistry = None,
        clock: Callable[[], datetime] = None,
    ):
        self.settings = settings
        self.store = store
        self.queue = queue
        self.http = http
        self.adapters = adapters
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self._owns_http = http is None

        self.cipher: Optional[TokenCipher] = None
        self.audit: Optional[AuditLogger] = None
        self.tokens: Optional[TokenRefreshService] = None
        self.dispatcher: Optional[JobDispatcher] = None
        self.workers: dict[str, QueueWorker] = {}
        self.promoter: Optional[DelayedJobPromoter] = None
        self._maintenance: list[asyncio.Task] = []
        self._initialized = False

    async def init(self) -> "JobRuntime":
        if self._initialized:
            return self
        s = self.settings

        if self.store is None:
            self.store = await create_store(s.database)
        if self.queue is None:
            self.queue = create_message_queue({
                "backend": s.queue.backend,
                "redis_url": s.queue.redis_url,
                "key_prefix": s.queue.key_prefix,
                "remove_on_complete": s.queue.remove_on_complete,
                "remove_on_fail": s.queue.remove_on_fail,
            })
        await self.queue.connect()
        if self.http is None:
            self.http = httpx.AsyncClient(timeout=httpx.Timeout(s.providers.request_timeout, connect=10.0))
        if self.adapters is None:
            self.adapters = create_adapter_registry(s.providers, self.http)

        self.cipher = TokenCipher(s.security.token_encryption_key)
        self.audit = AuditLogger(self.store, clock=self.clock)
        self.tokens = TokenRefreshService(self.store, self.adapters, self.cipher, clock=self.clock)
        self.dispatcher = JobDispatcher(
            self.queue,
            defaults=queue_options_from_config(s.queue.queues),
            store=self.store,
            hold_duration=timedelta(hours=s.hold.duration_hours),
            clock=self.clock,
        )

        handlers = {
            Queues.SOCIAL: [SocialPublishHandler(self.store, self.adapters, self.tokens, self.audit, self.clock)],
            Queues.EVENT_SYNC: [EventSyncHandler(self.store, self.adapters, self.tokens, self.audit, self.clock)],
            Queues.WEBHOOK: [WebhookDeliveryHandler(self.store, self.http, s.webhook, self.clock)],
            Queues.SPACE_HOLD_EXPIRE: [HoldExpiryHandler(self.store, self.audit, self.clock)],
        }
        for name, queue_handlers in handlers.items():
            qdef = s.queue.queues.get(name)
            self.workers[name] = QueueWorker(
                name, self.queue, queue_handlers,
                concurrency=qdef.concurrency if qdef else 1,
                poll_timeout=s.queue.poll_timeout,
                shutdown_timeout=s.queue.shutdown_timeout,
            )
        self.promoter = DelayedJobPromoter(self.queue, Queues.ALL, s.queue.delayed_promote_interval)

        self._initialized = True
        logger.info("job_runtime_initialized",
                    store=type(self.store).__name__,
                    queue=type(self.queue).__name__,
                    real_providers=s.providers.use_real_providers)
        return self

    async def start(self, workers: bool = True) -> "JobRuntime":
        await self.init()
        if workers:
            await self.start_workers()
        return self

    async def start_workers(self):
        for worker in self.workers.values():
            await worker.start_background()
        await self.promoter.start_background()

        m = self.settings.maintenance
        if m.token_refresh_enabled:
            self._maintenance.append(asyncio.create_task(
                self._every("token_refresh", m.token_refresh_interval_minutes * 60,
                            self.tokens.refresh_expired_tokens)))
        self._maintenance.append(asyncio.create_task(
            self._every("audit_cleanup", m.audit_cleanup_interval_hours * 3600,
                        lambda: self.audit.cleanup(m.audit_retention_days))))
        logger.info("job_workers_started", queues=list(self.workers))

    async def _every(self, name: str, interval_seconds: float, fn: Callable[[], Awaitable[Any]]):
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await fn()
            except Exception as e:
                logger.error("maintenance_task_failed", task=name, error=str(e))

    async def health(self) -> dict[str, Any]:
        queues = {name: await self.queue.counts(name) for name in Queues.ALL}
        return {
            "queues": queues,
            "workers": {name: w.is_running for name, w in self.workers.items()},
        }

    async def stop(self):
        for worker in self.workers.values():
            await worker.stop()
        if self.promoter:
            await self.promoter.stop()
        for task in self._maintenance:
            task.cancel()
        for task in self._maintenance:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._maintenance.clear()

        if self.queue:
            await self.queue.close()
        if self.http and self._owns_http:
            await self.http.aclose()
        if self.store:
            await self.store.close()
        self._initialized = False
        logger.info("job_runtime_stopped")
