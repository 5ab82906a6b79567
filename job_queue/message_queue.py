"""
Message Queue — Abstract interface with Redis and in-memory backends.

Queue Topology (per named queue, e.g. "social"):
  <prefix>:<queue>:jobs       — hash of job_id → serialized job
  <prefix>:<queue>:wait       — job ids eligible for execution (FIFO list)
  <prefix>:<queue>:active     — job ids picked up by a worker, not yet acked
  <prefix>:<queue>:delayed    — sorted set of job ids scored by ready-at (ms)
  <prefix>:<queue>:completed  — archive of recently completed job ids
  <prefix>:<queue>:failed     — archive of terminally failed job ids

Job Schema:
  {
      "job_id":        stable across retries,
      "queue_name":    owning queue,
      "job_type":      discriminator for the handler,
      "payload":       dict validated by the handler's payload model,
      "attempts":      failed attempts so far,
      "max_attempts":  ceiling before terminal failure,
      "backoff":       {"type": "fixed"|"exponential", "delay_ms": int},
      "delay_ms":      initial delay requested at enqueue,
      "status":        waiting|delayed|active|completed|failed,
      "created_at", "scheduled_at", "processed_at", "finished_at": ISO timestamps,
      "last_error", "result",
  }
"""
from __future__ import annotations

import asyncio
import json
import uuid
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import structlog

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Job Model
# ──────────────────────────────────────────────────────────────

class JobStatus:
    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class BackoffPolicy:
    type: str = "exponential"    # "fixed" | "exponential"
    delay_ms: int = 2000

    def delay_for(self, attempts: int) -> int:
        """Delay before the retry that follows `attempts` failed attempts."""
        if self.type == "fixed":
            return self.delay_ms
        return self.delay_ms * (2 ** max(attempts - 1, 0))


@dataclass
class Job:
    """A unit of work on a named queue."""
    queue_name: str
    job_type: str
    payload: dict[str, Any] = field(default_factory=dict)
    attempts: int = 0
    max_attempts: int = 3
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)
    delay_ms: int = 0
    status: str = JobStatus.WAITING
    created_at: str = ""
    scheduled_at: str = ""
    processed_at: str = ""
    finished_at: str = ""
    last_error: str = ""
    result: Any = None
    job_id: str = ""

    def __post_init__(self):
        if not self.job_id:
            self.job_id = f"job_{uuid.uuid4().hex[:12]}"
        if not self.created_at:
            self.created_at = _utcnow().isoformat()
        if not self.scheduled_at:
            ready = datetime.fromisoformat(self.created_at) + timedelta(milliseconds=self.delay_ms)
            self.scheduled_at = ready.isoformat()
        if isinstance(self.backoff, dict):
            self.backoff = BackoffPolicy(**self.backoff)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Job:
        data = dict(data)  # copy
        if isinstance(data.get("payload"), str):
            data["payload"] = json.loads(data["payload"])
        data["attempts"] = int(data.get("attempts", 0))
        data["max_attempts"] = int(data.get("max_attempts", 3))
        data["delay_ms"] = int(data.get("delay_ms", 0))
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})

    @classmethod
    def from_json(cls, raw: str) -> Job:
        return cls.from_dict(json.loads(raw))

    @property
    def ready_at(self) -> datetime:
        return datetime.fromisoformat(self.scheduled_at)

    @property
    def is_due(self) -> bool:
        return _utcnow() >= self.ready_at

    def reschedule(self, delay_ms: int) -> None:
        self.scheduled_at = (_utcnow() + timedelta(milliseconds=delay_ms)).isoformat()
        self.status = JobStatus.DELAYED if delay_ms > 0 else JobStatus.WAITING


# ──────────────────────────────────────────────────────────────
#  Abstract Interface
# ──────────────────────────────────────────────────────────────

class MessageQueue(ABC):
    """Abstract message queue interface."""

    def __init__(self, remove_on_complete: int = 100, remove_on_fail: int = 50):
        self.remove_on_complete = remove_on_complete
        self.remove_on_fail = remove_on_fail

    @abstractmethod
    async def connect(self):
        """Establish connection to the queue backend."""
        ...

    @abstractmethod
    async def close(self):
        """Gracefully shut down."""
        ...

    @abstractmethod
    async def add(self, job: Job) -> Job:
        """Durably record a job; delayed if job.delay_ms > 0."""
        ...

    @abstractmethod
    async def fetch(self, queue_name: str, timeout: float = 2.0) -> Optional[Job]:
        """Pull the next eligible job, or None after timeout seconds."""
        ...

    @abstractmethod
    async def complete(self, job: Job, result: Any = None):
        """Acknowledge successful processing and archive the job."""
        ...

    @abstractmethod
    async def retry(self, job: Job, delay_ms: int):
        """Put an active job back, eligible again after delay_ms."""
        ...

    @abstractmethod
    async def fail(self, job: Job):
        """Mark an active job terminally failed and archive it."""
        ...

    @abstractmethod
    async def promote_delayed(self, queue_name: str) -> int:
        """Move delayed jobs whose scheduled_at has arrived to the wait list."""
        ...

    @abstractmethod
    async def recover_stalled(self, queue_name: str) -> int:
        """Return jobs left active by a crashed worker to the wait list."""
        ...

    @abstractmethod
    async def counts(self, queue_name: str) -> dict[str, int]:
        """Return the number of jobs per status."""
        ...

    @abstractmethod
    async def get_job(self, queue_name: str, job_id: str) -> Optional[Job]:
        ...

    @abstractmethod
    async def archived(self, queue_name: str, status: str) -> list[Job]:
        """Return archived completed/failed jobs, newest first."""
        ...


# ──────────────────────────────────────────────────────────────
#  Redis Implementation
# ──────────────────────────────────────────────────────────────

# Moves every due id from the delayed set to the wait list in one step
_PROMOTE_DUE_LUA = """
local ids = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1])
for _, id in ipairs(ids) do
    redis.call('ZREM', KEYS[1], id)
    redis.call('RPUSH', KEYS[2], id)
end
return #ids
"""


class RedisMessageQueue(MessageQueue):
    """
    Production queue backed by Redis lists, a hash and a sorted set.

    - Pickup uses BLMOVE wait → active so a crash never loses a job
    - Delayed/retry jobs sit in a sorted set until promoted
    - Completed/failed archives are trimmed to the retention window
    """

    def __init__(self, redis_url: str = "redis://localhost:6379", key_prefix: str = "jobs",
                 remove_on_complete: int = 100, remove_on_fail: int = 50):
        super().__init__(remove_on_complete, remove_on_fail)
        self._redis_url = redis_url
        self._prefix = key_prefix
        self._redis = None
        self._promote_due = None

    def _key(self, queue_name: str, part: str) -> str:
        return f"{self._prefix}:{queue_name}:{part}"

    async def connect(self):
        import redis.asyncio as aioredis
        self._redis = aioredis.from_url(
            self._redis_url,
            decode_responses=True,
            max_connections=50,
        )
        await self._redis.ping()
        logger.info("redis_queue_connected", url=self._redis_url)

    async def close(self):
        if self._redis:
            await self._redis.aclose()
            self._redis = None
            self._promote_due = None

    async def _save(self, job: Job):
        await self._redis.hset(self._key(job.queue_name, "jobs"), job.job_id, job.to_json())

    async def add(self, job: Job) -> Job:
        job.status = JobStatus.DELAYED if job.delay_ms > 0 else JobStatus.WAITING
        pipe = self._redis.pipeline()
        pipe.hset(self._key(job.queue_name, "jobs"), job.job_id, job.to_json())
        if job.status == JobStatus.DELAYED:
            pipe.zadd(self._key(job.queue_name, "delayed"),
                      {job.job_id: job.ready_at.timestamp() * 1000})
        else:
            pipe.rpush(self._key(job.queue_name, "wait"), job.job_id)
        await pipe.execute()
        logger.info("job_added",
                    queue=job.queue_name,
                    job_id=job.job_id,
                    job_type=job.job_type,
                    delay_ms=job.delay_ms)
        return job

    async def fetch(self, queue_name: str, timeout: float = 2.0) -> Optional[Job]:
        job_id = await self._redis.blmove(
            self._key(queue_name, "wait"),
            self._key(queue_name, "active"),
            timeout,
            src="LEFT",
            dest="RIGHT",
        )
        if not job_id:
            return None
        raw = await self._redis.hget(self._key(queue_name, "jobs"), job_id)
        if raw is None:
            logger.warning("job_body_missing", queue=queue_name, job_id=job_id)
            await self._redis.lrem(self._key(queue_name, "active"), 0, job_id)
            return None
        job = Job.from_json(raw)
        job.status = JobStatus.ACTIVE
        job.processed_at = _utcnow().isoformat()
        await self._save(job)
        return job

    async def _archive(self, job: Job, archive: str, keep: int):
        jobs_key = self._key(job.queue_name, "jobs")
        archive_key = self._key(job.queue_name, archive)
        pipe = self._redis.pipeline()
        pipe.hset(jobs_key, job.job_id, job.to_json())
        pipe.lrem(self._key(job.queue_name, "active"), 0, job.job_id)
        pipe.lpush(archive_key, job.job_id)
        await pipe.execute()

        expired = await self._redis.lrange(archive_key, keep, -1)
        if expired:
            pipe = self._redis.pipeline()
            pipe.hdel(jobs_key, *expired)
            pipe.ltrim(archive_key, 0, keep - 1)
            await pipe.execute()

    async def complete(self, job: Job, result: Any = None):
        job.status = JobStatus.COMPLETED
        job.result = result
        job.finished_at = _utcnow().isoformat()
        await self._archive(job, "completed", self.remove_on_complete)
        logger.debug("job_completed", queue=job.queue_name, job_id=job.job_id)

    async def retry(self, job: Job, delay_ms: int):
        job.reschedule(delay_ms)
        pipe = self._redis.pipeline()
        pipe.hset(self._key(job.queue_name, "jobs"), job.job_id, job.to_json())
        pipe.lrem(self._key(job.queue_name, "active"), 0, job.job_id)
        pipe.zadd(self._key(job.queue_name, "delayed"),
                  {job.job_id: job.ready_at.timestamp() * 1000})
        await pipe.execute()
        logger.info("job_scheduled_for_retry",
                    queue=job.queue_name,
                    job_id=job.job_id,
                    attempts=job.attempts,
                    scheduled_at=job.scheduled_at)

    async def fail(self, job: Job):
        job.status = JobStatus.FAILED
        job.finished_at = _utcnow().isoformat()
        await self._archive(job, "failed", self.remove_on_fail)
        logger.warning("job_failed_terminally",
                       queue=job.queue_name,
                       job_id=job.job_id,
                       attempts=job.attempts,
                       error=job.last_error)

    async def promote_delayed(self, queue_name: str) -> int:
        if self._promote_due is None:
            self._promote_due = self._redis.register_script(_PROMOTE_DUE_LUA)
        now_ms = _utcnow().timestamp() * 1000
        promoted = int(await self._promote_due(
            keys=[self._key(queue_name, "delayed"), self._key(queue_name, "wait")],
            args=[now_ms],
        ))
        if promoted:
            logger.info("delayed_jobs_promoted", queue=queue_name, count=promoted)
        return promoted

    async def recover_stalled(self, queue_name: str) -> int:
        active_key = self._key(queue_name, "active")
        recovered = 0
        while await self._redis.lmove(active_key, self._key(queue_name, "wait"), "LEFT", "RIGHT"):
            recovered += 1
        if recovered:
            logger.warning("stalled_jobs_recovered", queue=queue_name, count=recovered)
        return recovered

    async def counts(self, queue_name: str) -> dict[str, int]:
        pipe = self._redis.pipeline()
        pipe.llen(self._key(queue_name, "wait"))
        pipe.zcard(self._key(queue_name, "delayed"))
        pipe.llen(self._key(queue_name, "active"))
        pipe.llen(self._key(queue_name, "completed"))
        pipe.llen(self._key(queue_name, "failed"))
        waiting, delayed, active, completed, failed = await pipe.execute()
        return {
            JobStatus.WAITING: waiting, JobStatus.DELAYED: delayed,
            JobStatus.ACTIVE: active, JobStatus.COMPLETED: completed,
            JobStatus.FAILED: failed,
        }

    async def get_job(self, queue_name: str, job_id: str) -> Optional[Job]:
        raw = await self._redis.hget(self._key(queue_name, "jobs"), job_id)
        return Job.from_json(raw) if raw else None

    async def archived(self, queue_name: str, status: str) -> list[Job]:
        ids = await self._redis.lrange(self._key(queue_name, status), 0, -1)
        if not ids:
            return []
        raws = await self._redis.hmget(self._key(queue_name, "jobs"), ids)
        return [Job.from_json(raw) for raw in raws if raw]


# ──────────────────────────────────────────────────────────────
#  In-Memory Implementation (Development)
# ──────────────────────────────────────────────────────────────

class InMemoryMessageQueue(MessageQueue):
    """
    Development/test queue backed by asyncio primitives.
    Single-process only — no persistence across restarts.
    """

    def __init__(self, remove_on_complete: int = 100, remove_on_fail: int = 50):
        super().__init__(remove_on_complete, remove_on_fail)
        self._wait: dict[str, asyncio.Queue] = {}
        self._delayed: dict[str, list[Job]] = {}
        self._active: dict[str, dict[str, Job]] = {}
        self._completed: dict[str, deque] = {}
        self._failed: dict[str, deque] = {}
        self._jobs: dict[str, dict[str, Job]] = {}

    def _get_wait(self, name: str) -> asyncio.Queue:
        if name not in self._wait:
            self._wait[name] = asyncio.Queue()
        return self._wait[name]

    def _index(self, job: Job):
        self._jobs.setdefault(job.queue_name, {})[job.job_id] = job

    def _archive(self, job: Job):
        archive = self._archive_for(job.queue_name, job.status)
        index = self._jobs.setdefault(job.queue_name, {})
        if not archive.maxlen:
            index.pop(job.job_id, None)
            return
        if len(archive) == archive.maxlen:
            # the oldest entry falls off the deque; forget it too
            index.pop(archive[-1].job_id, None)
        index[job.job_id] = job
        archive.appendleft(job)

    def _archive_for(self, name: str, status: str) -> deque:
        store = self._completed if status == JobStatus.COMPLETED else self._failed
        keep = self.remove_on_complete if status == JobStatus.COMPLETED else self.remove_on_fail
        if name not in store:
            store[name] = deque(maxlen=keep)
        return store[name]

    async def connect(self):
        logger.info("inmemory_queue_connected")

    async def close(self):
        pass

    async def add(self, job: Job) -> Job:
        self._index(job)
        if job.delay_ms > 0:
            job.status = JobStatus.DELAYED
            self._push_delayed(job)
        else:
            job.status = JobStatus.WAITING
            await self._get_wait(job.queue_name).put(job)
        logger.info("job_added",
                    queue=job.queue_name,
                    job_id=job.job_id,
                    job_type=job.job_type,
                    delay_ms=job.delay_ms)
        return job

    def _push_delayed(self, job: Job):
        delayed = self._delayed.setdefault(job.queue_name, [])
        delayed.append(job)
        delayed.sort(key=lambda j: j.ready_at)

    async def fetch(self, queue_name: str, timeout: float = 2.0) -> Optional[Job]:
        try:
            job = await asyncio.wait_for(self._get_wait(queue_name).get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None
        job.status = JobStatus.ACTIVE
        job.processed_at = _utcnow().isoformat()
        self._active.setdefault(queue_name, {})[job.job_id] = job
        return job

    async def complete(self, job: Job, result: Any = None):
        self._active.get(job.queue_name, {}).pop(job.job_id, None)
        job.status = JobStatus.COMPLETED
        job.result = result
        job.finished_at = _utcnow().isoformat()
        self._archive(job)

    async def retry(self, job: Job, delay_ms: int):
        self._active.get(job.queue_name, {}).pop(job.job_id, None)
        job.reschedule(delay_ms)
        self._push_delayed(job)
        logger.info("job_scheduled_for_retry",
                    queue=job.queue_name,
                    job_id=job.job_id,
                    attempts=job.attempts,
                    scheduled_at=job.scheduled_at)

    async def fail(self, job: Job):
        self._active.get(job.queue_name, {}).pop(job.job_id, None)
        job.status = JobStatus.FAILED
        job.finished_at = _utcnow().isoformat()
        self._archive(job)
        logger.warning("job_failed_terminally",
                       queue=job.queue_name,
                       job_id=job.job_id,
                       attempts=job.attempts,
                       error=job.last_error)

    async def promote_delayed(self, queue_name: str) -> int:
        delayed = self._delayed.get(queue_name, [])
        ready = [j for j in delayed if j.is_due]
        self._delayed[queue_name] = [j for j in delayed if not j.is_due]
        for job in ready:
            job.status = JobStatus.WAITING
            await self._get_wait(queue_name).put(job)
        if ready:
            logger.info("delayed_jobs_promoted", queue=queue_name, count=len(ready))
        return len(ready)

    async def recover_stalled(self, queue_name: str) -> int:
        stalled = list(self._active.pop(queue_name, {}).values())
        for job in stalled:
            job.status = JobStatus.WAITING
            await self._get_wait(queue_name).put(job)
        return len(stalled)

    async def counts(self, queue_name: str) -> dict[str, int]:
        return {
            JobStatus.WAITING: self._get_wait(queue_name).qsize(),
            JobStatus.DELAYED: len(self._delayed.get(queue_name, [])),
            JobStatus.ACTIVE: len(self._active.get(queue_name, {})),
            JobStatus.COMPLETED: len(self._completed.get(queue_name, ())),
            JobStatus.FAILED: len(self._failed.get(queue_name, ())),
        }

    async def get_job(self, queue_name: str, job_id: str) -> Optional[Job]:
        return self._jobs.get(queue_name, {}).get(job_id)

    async def archived(self, queue_name: str, status: str) -> list[Job]:
        return list(self._archive_for(queue_name, status))


# ──────────────────────────────────────────────────────────────
#  Factory
# ──────────────────────────────────────────────────────────────

def create_message_queue(queue_config: dict[str, Any] = None) -> MessageQueue:
    """Factory: create the appropriate queue backend. The caller owns its lifecycle."""
    config = queue_config or {}
    backend = config.get("backend", "memory")
    retention = {
        "remove_on_complete": config.get("remove_on_complete", 100),
        "remove_on_fail": config.get("remove_on_fail", 50),
    }

    if backend == "redis":
        return RedisMessageQueue(
            redis_url=config.get("redis_url", "redis://localhost:6379"),
            key_prefix=config.get("key_prefix", "jobs"),
            **retention,
        )
    return InMemoryMessageQueue(**retention)
