"""
Job handlers — the domain side of the queue workers.

A handler is bound to one job type, and so to one variant of the job
payload union. QueueWorker calls `parse_payload()` on the raw payload and
awaits `handle()`; whatever it returns is stored as the job result, and
anything it raises is an attempt failure subject to the queue's retry
policy.
"""
from __future__ import annotations

import abc
from datetime import datetime, timezone
from typing import Any, Callable, ClassVar, Generic, TypeVar

from pydantic import BaseModel

from job_queue.message_queue import Job
from models.schemas import parse_job_payload

P = TypeVar("P", bound=BaseModel)


class EntityNotFoundError(Exception):
    """A row the job refers to does not exist."""

    def __init__(self, entity: str, entity_id: str):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found")


class ConcurrentModificationError(Exception):
    """A conditional status update lost to another writer."""

    def __init__(self, entity: str, entity_id: str, expected: Any):
        self.entity = entity
        self.entity_id = entity_id
        self.expected = expected
        state = getattr(expected, "value", expected)
        super().__init__(f"{entity} {entity_id} changed concurrently (expected status {state})")


class JobHandler(abc.ABC, Generic[P]):

    job_type: ClassVar[str]

    def __init__(self, clock: Callable[[], datetime] = None):
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def parse_payload(self, data: dict[str, Any]) -> P:
        """Validate raw job data as this handler's payload variant."""
        return parse_job_payload(self.job_type, data)

    @abc.abstractmethod
    async def handle(self, payload: P, job: Job) -> Any:
        ...

    @staticmethod
    def is_final_attempt(job: Job) -> bool:
        return job.attempts + 1 >= job.max_attempts
