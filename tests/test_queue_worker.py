"""
Tests for the queue layer: backoff math, in-memory queue lifecycle,
QueueWorker retry/terminal behaviour and the delayed job promoter.
"""
import asyncio
from datetime import datetime

import pytest
from pydantic import BaseModel

from job_queue.consumer import DelayedJobPromoter, QueueWorker
from job_queue.dispatcher import JobTypes, Queues
from job_queue.message_queue import (
    BackoffPolicy, InMemoryMessageQueue, Job, JobStatus, RedisMessageQueue, create_message_queue,
)
from pipelines.hold_expiry import HoldExpiryHandler

from conftest import make_job


class EchoPayload(BaseModel):
    value: str


class ScriptedHandler:
    """Fails the first `failures` calls, then returns the payload value."""

    job_type = "echo"

    def __init__(self, failures: int = 0, delay: float = 0):
        self.failures = failures
        self.delay = delay
        self.calls = 0
        self.finished = []

    def parse_payload(self, data):
        return EchoPayload.model_validate(data)

    async def handle(self, payload: EchoPayload, job: Job):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.calls <= self.failures:
            raise RuntimeError(f"boom {self.calls}")
        self.finished.append(payload.value)
        return {"echo": payload.value}


# ──────────────────────────────────────────────────────────────
#  BackoffPolicy
# ──────────────────────────────────────────────────────────────

class TestBackoffPolicy:
    def test_exponential_doubles_from_base(self):
        policy = BackoffPolicy("exponential", 2000)
        assert [policy.delay_for(n) for n in (1, 2, 3, 4)] == [2000, 4000, 8000, 16000]

    def test_fixed_is_constant(self):
        policy = BackoffPolicy("fixed", 500)
        assert policy.delay_for(1) == policy.delay_for(5) == 500


# ──────────────────────────────────────────────────────────────
#  Job model
# ──────────────────────────────────────────────────────────────

class TestJob:
    def test_json_round_trip_keeps_identity_and_backoff(self):
        job = make_job("social", "publish", {"post_id": "p1"}, attempts=2)
        restored = Job.from_json(job.to_json())
        assert restored.job_id == job.job_id
        assert restored.attempts == 2
        assert isinstance(restored.backoff, BackoffPolicy)
        assert restored.payload == {"post_id": "p1"}

    def test_delay_sets_future_scheduled_at(self):
        job = Job(queue_name="social", job_type="publish", delay_ms=60_000)
        assert not job.is_due


# ──────────────────────────────────────────────────────────────
#  InMemoryMessageQueue
# ──────────────────────────────────────────────────────────────

class TestInMemoryMessageQueue:
    @pytest.mark.asyncio
    async def test_add_fetch_complete(self, queue):
        job = await queue.add(make_job("social", "echo", {"value": "a"}))
        fetched = await queue.fetch("social", timeout=0.1)
        assert fetched.job_id == job.job_id
        assert fetched.status == JobStatus.ACTIVE

        await queue.complete(fetched, {"ok": True})
        counts = await queue.counts("social")
        assert counts[JobStatus.ACTIVE] == 0
        assert counts[JobStatus.COMPLETED] == 1
        stored = await queue.get_job("social", job.job_id)
        assert stored.result == {"ok": True}

    @pytest.mark.asyncio
    async def test_fetch_times_out_on_empty_queue(self, queue):
        assert await queue.fetch("social", timeout=0.01) is None

    @pytest.mark.asyncio
    async def test_delayed_job_not_fetchable_until_promoted(self, queue):
        job = Job(queue_name="social", job_type="echo", delay_ms=60_000)
        await queue.add(job)
        assert (await queue.counts("social"))[JobStatus.DELAYED] == 1
        assert await queue.promote_delayed("social") == 0
        assert await queue.fetch("social", timeout=0.01) is None

    @pytest.mark.asyncio
    async def test_zero_delay_retry_promotes_immediately(self, queue):
        job = await queue.add(make_job("social", "echo", {"value": "a"}))
        fetched = await queue.fetch("social", timeout=0.1)
        await queue.retry(fetched, 0)
        assert await queue.promote_delayed("social") == 1
        again = await queue.fetch("social", timeout=0.1)
        assert again.job_id == job.job_id

    @pytest.mark.asyncio
    async def test_failed_archive_respects_retention(self):
        queue = InMemoryMessageQueue(remove_on_fail=2)
        for i in range(3):
            await queue.fail(make_job("webhook", "deliver", {"i": i}))
        failed = await queue.archived("webhook", JobStatus.FAILED)
        assert [j.payload["i"] for j in failed] == [2, 1]

    @pytest.mark.asyncio
    async def test_recover_stalled_requeues_active_jobs(self, queue):
        await queue.add(make_job("social", "echo", {"value": "a"}))
        await queue.fetch("social", timeout=0.1)
        assert await queue.recover_stalled("social") == 1
        assert (await queue.counts("social"))[JobStatus.WAITING] == 1

    @pytest.mark.asyncio
    async def test_get_job_finds_job_in_every_state(self, queue):
        waiting = await queue.add(make_job("social", "echo", {"value": "w"}))
        delayed = await queue.add(Job(queue_name="social", job_type="echo", delay_ms=60_000))
        assert (await queue.get_job("social", waiting.job_id)).status == JobStatus.WAITING
        assert (await queue.get_job("social", delayed.job_id)).status == JobStatus.DELAYED

        active = await queue.fetch("social", timeout=0.1)
        assert (await queue.get_job("social", active.job_id)).status == JobStatus.ACTIVE

        await queue.complete(active, {"ok": True})
        assert (await queue.get_job("social", active.job_id)).status == JobStatus.COMPLETED
        assert await queue.get_job("webhook", active.job_id) is None
        assert await queue.get_job("social", "missing") is None

    @pytest.mark.asyncio
    async def test_get_job_forgets_jobs_past_retention(self):
        queue = InMemoryMessageQueue(remove_on_complete=1)
        first = await queue.add(make_job("social", "echo", {"value": "a"}))
        second = await queue.add(make_job("social", "echo", {"value": "b"}))
        await queue.complete(await queue.fetch("social", timeout=0.1))
        await queue.complete(await queue.fetch("social", timeout=0.1))

        assert await queue.get_job("social", first.job_id) is None
        assert (await queue.get_job("social", second.job_id)).status == JobStatus.COMPLETED

    def test_factory_selects_backend(self):
        assert isinstance(create_message_queue({"backend": "memory"}), InMemoryMessageQueue)
        redis_queue = create_message_queue({"backend": "redis", "key_prefix": "test"})
        assert isinstance(redis_queue, RedisMessageQueue)
        assert redis_queue._key("social", "wait") == "test:social:wait"


# ──────────────────────────────────────────────────────────────
#  QueueWorker
# ──────────────────────────────────────────────────────────────

class TestQueueWorker:
    @pytest.mark.asyncio
    async def test_success_completes_job_with_result(self, queue):
        handler = ScriptedHandler()
        worker = QueueWorker("social", queue, [handler])
        job = await queue.add(make_job("social", "echo", {"value": "hi"}))

        await worker.run_once(timeout=0.1)

        done = await queue.get_job("social", job.job_id)
        assert done.status == JobStatus.COMPLETED
        assert done.result == {"echo": "hi"}
        assert done.attempts == 0

    @pytest.mark.asyncio
    async def test_failure_schedules_retry_with_backoff(self, queue):
        worker = QueueWorker("social", queue, [ScriptedHandler(failures=1)])
        job = await queue.add(make_job("social", "echo", {"value": "hi"}))

        await worker.run_once(timeout=0.1)

        retried = await queue.get_job("social", job.job_id)
        assert retried.status == JobStatus.DELAYED
        assert retried.attempts == 1
        assert retried.last_error == "boom 1"
        # first retry waits the base delay
        delay = retried.ready_at - datetime.fromisoformat(retried.processed_at)
        assert 1.5 <= delay.total_seconds() <= 2.5

    @pytest.mark.asyncio
    async def test_exhausted_attempts_fail_terminally(self, queue):
        handler = ScriptedHandler(failures=10)
        worker = QueueWorker("social", queue, [handler])
        job = await queue.add(make_job("social", "echo", {"value": "x"}, max_attempts=2,
                                       backoff=BackoffPolicy("fixed", 0)))

        await worker.run_once(timeout=0.1)
        await queue.promote_delayed("social")
        await worker.run_once(timeout=0.1)

        failed = await queue.get_job("social", job.job_id)
        assert failed.status == JobStatus.FAILED
        assert failed.attempts == 2
        assert handler.calls == 2
        assert (await queue.counts("social"))[JobStatus.DELAYED] == 0

    @pytest.mark.asyncio
    async def test_retry_then_success_keeps_job_id(self, queue):
        worker = QueueWorker("social", queue, [ScriptedHandler(failures=1)])
        job = await queue.add(make_job("social", "echo", {"value": "x"},
                                       backoff=BackoffPolicy("fixed", 0)))

        await worker.run_once(timeout=0.1)
        await queue.promote_delayed("social")
        processed = await worker.run_once(timeout=0.1)

        assert processed.job_id == job.job_id
        assert processed.status == JobStatus.COMPLETED
        assert processed.attempts == 1

    @pytest.mark.asyncio
    async def test_unknown_job_type_fails_without_retry(self, queue):
        worker = QueueWorker("social", queue, [ScriptedHandler()])
        job = await queue.add(make_job("social", "mystery", {}))

        await worker.run_once(timeout=0.1)

        failed = await queue.get_job("social", job.job_id)
        assert failed.status == JobStatus.FAILED
        assert "mystery" in failed.last_error

    @pytest.mark.asyncio
    async def test_invalid_payload_fails_without_retry(self, queue):
        handler = ScriptedHandler()
        worker = QueueWorker("social", queue, [handler])
        job = await queue.add(make_job("social", "echo", {"wrong": 1}, max_attempts=5))

        await worker.run_once(timeout=0.1)

        failed = await queue.get_job("social", job.job_id)
        assert failed.status == JobStatus.FAILED
        assert failed.attempts == 1
        assert handler.calls == 0

    @pytest.mark.asyncio
    async def test_background_loops_drain_queue(self, queue):
        worker = QueueWorker("social", queue, [ScriptedHandler()], concurrency=3, poll_timeout=0.02)
        for i in range(6):
            await queue.add(make_job("social", "echo", {"value": str(i)}))

        await worker.start_background()
        assert worker.is_running
        for _ in range(100):
            if (await queue.counts("social"))[JobStatus.COMPLETED] == 6:
                break
            await asyncio.sleep(0.01)
        await worker.stop()

        assert (await queue.counts("social"))[JobStatus.COMPLETED] == 6
        assert not worker.is_running

    @pytest.mark.asyncio
    async def test_stop_lets_in_flight_handler_finish(self, queue):
        handler = ScriptedHandler(delay=0.3)
        worker = QueueWorker("social", queue, [handler], concurrency=1, poll_timeout=0.02)
        job = await queue.add(make_job("social", "echo", {"value": "slow"}))

        await worker.start_background()
        await asyncio.sleep(0.1)
        await worker.stop()

        assert handler.finished == ["slow"]
        assert (await queue.get_job("social", job.job_id)).status == JobStatus.COMPLETED
        assert (await queue.counts("social"))[JobStatus.ACTIVE] == 0

    @pytest.mark.asyncio
    async def test_stop_cancels_handler_past_grace_period(self, queue):
        handler = ScriptedHandler(delay=5)
        worker = QueueWorker("social", queue, [handler], concurrency=1, poll_timeout=0.02)
        job = await queue.add(make_job("social", "echo", {"value": "stuck"}))

        await worker.start_background()
        await asyncio.sleep(0.05)
        await worker.stop(timeout=0.05)

        assert handler.finished == []
        assert not worker.is_running
        # left active for the next start to requeue
        assert (await queue.get_job("social", job.job_id)).status == JobStatus.ACTIVE
        assert await queue.recover_stalled("social") == 1

    @pytest.mark.asyncio
    async def test_pipeline_handler_rejects_payload_of_wrong_variant(self, queue, store, audit, clock):
        worker = QueueWorker(Queues.SPACE_HOLD_EXPIRE, queue, [HoldExpiryHandler(store, audit, clock)])
        job = await queue.add(make_job(Queues.SPACE_HOLD_EXPIRE, JobTypes.EXPIRE,
                                       {"post_id": "post_1", "platforms": [], "content": "x"}))

        await worker.run_once(timeout=0.1)

        failed = await queue.get_job(Queues.SPACE_HOLD_EXPIRE, job.job_id)
        assert failed.status == JobStatus.FAILED
        assert "Invalid payload for job type 'expire'" in failed.last_error


class FakeScriptRedis:
    """Records server-side script invocations instead of talking to Redis."""

    def __init__(self, result: int):
        self.result = result
        self.sources = []
        self.calls = []

    def register_script(self, source: str):
        self.sources.append(source)

        async def run(keys, args):
            self.calls.append((keys, args))
            return self.result

        return run


class TestRedisPromoteDelayed:
    @pytest.mark.asyncio
    async def test_promotion_runs_as_single_script(self):
        queue = RedisMessageQueue(key_prefix="test")
        queue._redis = FakeScriptRedis(result=2)

        assert await queue.promote_delayed("social") == 2
        assert await queue.promote_delayed("webhook") == 2

        fake = queue._redis
        assert len(fake.sources) == 1
        assert "ZREM" in fake.sources[0] and "RPUSH" in fake.sources[0]
        keys, args = fake.calls[0]
        assert keys == ["test:social:delayed", "test:social:wait"]
        assert args[0] > 0
        assert fake.calls[1][0] == ["test:webhook:delayed", "test:webhook:wait"]


class TestDelayedJobPromoter:
    @pytest.mark.asyncio
    async def test_promote_all_covers_every_queue(self, queue):
        for name in ("social", "webhook"):
            await queue.add(make_job(name, "echo", {"value": "a"}))
            fetched = await queue.fetch(name, timeout=0.1)
            await queue.retry(fetched, 0)

        promoter = DelayedJobPromoter(queue, ["social", "webhook"], interval_seconds=0.01)
        assert await promoter.promote_all() == 2
