"""
Job Queue — Durable named queues with per-queue retry policy.

- Collaborators ENQUEUE typed jobs through the JobDispatcher
- A QueueWorker per queue PULLS jobs and runs the registered handler
- Failed attempts are re-delayed with backoff until max_attempts
- Supports Redis (production) and in-memory asyncio queues (dev/tests)
"""
from job_queue.message_queue import (
    BackoffPolicy, InMemoryMessageQueue, Job, JobStatus, MessageQueue,
    RedisMessageQueue, create_message_queue,
)
from job_queue.dispatcher import (
    DEFAULT_QUEUE_OPTIONS, JobDispatcher, JobHandle, JobOptions, JobTypes, Queues,
    queue_options_from_config,
)
from job_queue.consumer import (
    DelayedJobPromoter, InvalidPayloadError, JobError, QueueWorker, UnknownJobTypeError,
)

__all__ = [
    "BackoffPolicy", "InMemoryMessageQueue", "Job", "JobStatus", "MessageQueue",
    "RedisMessageQueue", "create_message_queue",
    "DEFAULT_QUEUE_OPTIONS", "JobDispatcher", "JobHandle", "JobOptions", "JobTypes", "Queues",
    "queue_options_from_config",
    "DelayedJobPromoter", "InvalidPayloadError", "JobError", "QueueWorker", "UnknownJobTypeError",
]
