"""
Queue Worker — Pulls jobs from one named queue and drives their handlers.

One QueueWorker runs per queue, with `concurrency` pull loops sharing the
queue. Workers for different queues run fully in parallel.

Topology:
  ┌──────────────┐        ┌─────────────────┐        ┌─────────────┐
  │  Dispatcher  │──add──▶│  wait list       │──pull─▶│ QueueWorker │
  └──────────────┘        └─────────────────┘        └──────┬──────┘
                                   ▲                         │
                                   │ promote                 │ handler raised,
                          ┌────────┴────────┐                │ attempts left
                          │ delayed (sorted  │◀─── retry ────┤
                          │  by ready-at)    │                │
                          └─────────────────┘                │
                          ┌─────────────────┐                │
                          │  failed archive  │◀── exhaust ───┤
                          └─────────────────┘                │
                          ┌─────────────────┐                │
                          │ completed archive│◀── success ───┘
                          └─────────────────┘

The worker knows nothing about domain entities. Handlers own all entity
status bookkeeping, including on their final failed attempt.
"""
from __future__ import annotations

import asyncio
from typing import Any, Iterable, Optional

import structlog
from pydantic import ValidationError

from job_queue.message_queue import Job, MessageQueue

logger = structlog.get_logger()


class JobError(Exception):
    """Base for failures the worker treats as terminal."""


class UnknownJobTypeError(JobError):
    """Raised when no handler is registered for a job's type."""

    def __init__(self, queue_name: str, job_type: str):
        self.queue_name = queue_name
        self.job_type = job_type
        super().__init__(f"No handler for job type '{job_type}' on queue '{queue_name}'")


class InvalidPayloadError(JobError):
    """Raised when a job payload does not match its handler's payload variant."""

    def __init__(self, job_type: str, detail: str):
        self.job_type = job_type
        super().__init__(f"Invalid payload for job type '{job_type}': {detail}")


class QueueWorker:
    """
    Generic pull / execute / ack-or-retry loop for a single queue.

    Usage:
        worker = QueueWorker("social", queue, [SocialPublishHandler(...)], concurrency=5)
        await worker.start_background()
        ...
        await worker.stop()
    """

    def __init__(
        self,
        queue_name: str,
        queue: MessageQueue,
        handlers: Iterable[Any],
        concurrency: int = 5,
        poll_timeout: float = 2.0,
        shutdown_timeout: float = 30.0,
    ):
        self.queue_name = queue_name
        self.queue = queue
        self.handlers = {h.job_type: h for h in handlers}
        self.concurrency = max(1, concurrency)
        self.poll_timeout = poll_timeout
        self.shutdown_timeout = shutdown_timeout
        self._tasks: list[asyncio.Task] = []
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running and any(not t.done() for t in self._tasks)

    async def start_background(self) -> list[asyncio.Task]:
        """Spawn `concurrency` pull loops. Returns the task handles."""
        self._running = True
        recovered = await self.queue.recover_stalled(self.queue_name)
        self._tasks = [
            asyncio.create_task(self._loop(i), name=f"{self.queue_name}-worker-{i}")
            for i in range(self.concurrency)
        ]
        logger.info("queue_worker_started",
                    queue=self.queue_name,
                    concurrency=self.concurrency,
                    job_types=sorted(self.handlers),
                    recovered=recovered)
        return self._tasks

    async def stop(self, timeout: Optional[float] = None):
        """
        Stop pulling new jobs and let in-flight handlers run to completion.

        Loops still busy after `timeout` (default `shutdown_timeout`) are
        cancelled; their jobs stay active until recover_stalled requeues them.
        """
        self._running = False
        grace = self.shutdown_timeout if timeout is None else timeout
        if self._tasks:
            _, pending = await asyncio.wait(self._tasks, timeout=grace)
            for task in pending:
                task.cancel()
            for task in pending:
                try:
                    await task
                except asyncio.CancelledError:
                    pass
            if pending:
                logger.warning("queue_worker_stop_timed_out",
                               queue=self.queue_name, cancelled=len(pending), grace_seconds=grace)
        self._tasks.clear()
        logger.info("queue_worker_stopped", queue=self.queue_name)

    async def _loop(self, index: int):
        while self._running:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("queue_worker_loop_error",
                             queue=self.queue_name,
                             worker=index,
                             error=str(e))
                await asyncio.sleep(1)

    async def run_once(self, timeout: Optional[float] = None) -> Optional[Job]:
        """Pull and process at most one job. Returns the job processed, if any."""
        job = await self.queue.fetch(self.queue_name,
                                     timeout=self.poll_timeout if timeout is None else timeout)
        if job is None:
            return None
        await self.process(job)
        return job

    async def process(self, job: Job):
        handler = self.handlers.get(job.job_type)
        if handler is None:
            job.attempts += 1
            job.last_error = str(UnknownJobTypeError(self.queue_name, job.job_type))
            await self.queue.fail(job)
            return

        log = logger.bind(queue=self.queue_name, job_id=job.job_id,
                          job_type=job.job_type, attempt=job.attempts + 1)
        log.info("processing_job")

        # Retrying cannot fix a malformed payload; fail it terminally
        try:
            payload = handler.parse_payload(job.payload)
        except ValidationError as e:
            job.attempts += 1
            job.last_error = str(InvalidPayloadError(job.job_type, str(e)))
            log.error("job_payload_invalid", error=job.last_error)
            await self.queue.fail(job)
            return

        try:
            result = await handler.handle(payload, job)
        except Exception as e:
            job.attempts += 1
            job.last_error = str(e) or type(e).__name__
            log.error("job_handler_error", error=job.last_error, error_type=type(e).__name__)
            if job.attempts < job.max_attempts:
                await self.queue.retry(job, job.backoff.delay_for(job.attempts))
            else:
                await self.queue.fail(job)
            return

        await self.queue.complete(job, result)
        log.info("job_completed")


# ──────────────────────────────────────────────────────────────
#  Delayed Job Promoter
# ──────────────────────────────────────────────────────────────

class DelayedJobPromoter:
    """
    Background task that periodically moves delayed/retry jobs
    whose scheduled_at has arrived onto their queue's wait list.
    """

    def __init__(self, queue: MessageQueue, queue_names: Iterable[str], interval_seconds: float = 1.0):
        self.queue = queue
        self.queue_names = list(queue_names)
        self.interval = interval_seconds
        self._task: Optional[asyncio.Task] = None

    async def start_background(self) -> asyncio.Task:
        self._task = asyncio.create_task(self._run())
        return self._task

    async def stop(self):
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def promote_all(self) -> int:
        promoted = 0
        for name in self.queue_names:
            promoted += await self.queue.promote_delayed(name)
        return promoted

    async def _run(self):
        logger.info("delayed_promoter_started", interval=self.interval, queues=self.queue_names)
        while True:
            try:
                await self.promote_all()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("promoter_error", error=str(e))
            await asyncio.sleep(self.interval)
