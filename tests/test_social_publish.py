"""Tests for the social publish pipeline."""
from datetime import timedelta

import pytest

from core.state_machine import InvalidTransitionError
from job_queue.consumer import QueueWorker
from job_queue.dispatcher import JobDispatcher, JobTypes, Queues
from job_queue.message_queue import JobStatus
from models.schemas import SocialPost, SocialPostStatus, SocialProvider, SocialPublishPayload
from pipelines.base import EntityNotFoundError
from pipelines.social_publish import SocialPublishHandler
from services.audit import AuditActions

from conftest import NOW, make_job

FB = SocialProvider.FACEBOOK_PAGE
IG = SocialProvider.INSTAGRAM_BUSINESS


@pytest.fixture
def handler(store, adapters, tokens, audit, clock):
    return SocialPublishHandler(store, adapters, tokens, audit, clock)


def publish_payload(platforms=(FB, IG), content="Sunset yoga this Friday", post_id="post_1"):
    return SocialPublishPayload(post_id=post_id, platforms=list(platforms), content=content,
                                media_urls=["https://cdn.example.com/yoga.jpg"])


def publish_job(payload: SocialPublishPayload, attempts: int = 0, max_attempts: int = 3):
    return make_job(Queues.SOCIAL, JobTypes.PUBLISH, payload.model_dump(mode="json"),
                    attempts=attempts, max_attempts=max_attempts)


class TestPublishOutcome:
    @pytest.mark.asyncio
    async def test_all_platforms_succeed(self, handler, store, post, add_account, mock_adapters):
        await add_account(FB)
        await add_account(IG)
        payload = publish_payload()

        result = await handler.handle(payload, publish_job(payload))

        saved = await store.get_social_post("post_1")
        assert result["status"] == "PUBLISHED"
        assert saved.status == SocialPostStatus.PUBLISHED
        assert saved.published_at == NOW
        assert saved.error_message is None
        assert saved.external_ids == ["mock_facebook_page_post_1", "mock_instagram_business_post_1"]
        assert mock_adapters[FB].calls_to("create_post")[0]["access_token"] == "access-ok"

    @pytest.mark.asyncio
    async def test_one_failure_does_not_stop_other_platforms(self, handler, store, post, add_account,
                                                             mock_adapters):
        await add_account(FB)
        await add_account(IG)
        mock_adapters[FB].post_error = "Page publishing is disabled"
        payload = publish_payload()

        result = await handler.handle(payload, publish_job(payload))

        assert len(mock_adapters[IG].calls_to("create_post")) == 1
        saved = await store.get_social_post("post_1")
        assert saved.status == SocialPostStatus.FAILED
        assert saved.error_message == "Page publishing is disabled"
        assert saved.published_at is None
        assert [r["success"] for r in result["results"]] == [False, True]

    @pytest.mark.asyncio
    async def test_missing_account_is_platform_failure(self, handler, store, post, add_account):
        await add_account(FB)
        payload = publish_payload()

        result = await handler.handle(payload, publish_job(payload))

        ig = result["results"][1]
        assert ig["success"] is False
        assert ig["error"] == "No connected INSTAGRAM_BUSINESS account"
        assert (await store.get_social_post("post_1")).status == SocialPostStatus.FAILED

    @pytest.mark.asyncio
    async def test_inactive_account_counts_as_missing(self, handler, store, post, add_account, mock_adapters):
        await add_account(FB, is_active=False)
        payload = publish_payload(platforms=[FB])

        result = await handler.handle(payload, publish_job(payload))

        assert result["results"][0]["error"] == "No connected FACEBOOK_PAGE account"
        assert mock_adapters[FB].calls_to("create_post") == []

    @pytest.mark.asyncio
    async def test_empty_platform_list_fails_post(self, handler, store, post):
        payload = publish_payload(platforms=[])

        result = await handler.handle(payload, publish_job(payload))

        saved = await store.get_social_post("post_1")
        assert result["results"] == []
        assert saved.status == SocialPostStatus.FAILED
        assert saved.error_message == "No platforms requested"

    @pytest.mark.asyncio
    async def test_audit_records_every_platform_result(self, handler, store, post, add_account):
        await add_account(FB)
        payload = publish_payload()

        await handler.handle(payload, publish_job(payload))

        entries = await store.list_audit_logs(entity_type="SocialPost", entity_id="post_1")
        assert len(entries) == 1
        assert entries[0].action == AuditActions.SOCIAL_POST_FAILED
        assert [r["platform"] for r in entries[0].metadata["results"]] == ["FACEBOOK_PAGE",
                                                                           "INSTAGRAM_BUSINESS"]

    @pytest.mark.asyncio
    async def test_repeated_platform_published_once(self, handler, store, post, add_account, mock_adapters):
        await add_account(FB)
        payload = publish_payload(platforms=[FB, FB])

        result = await handler.handle(payload, publish_job(payload))

        saved = await store.get_social_post("post_1")
        assert len(mock_adapters[FB].calls_to("create_post")) == 1
        assert saved.external_ids == ["mock_facebook_page_post_1"]
        assert [r["platform"] for r in result["results"]] == ["FACEBOOK_PAGE"]


def test_payload_platforms_deduplicated_in_order():
    payload = SocialPublishPayload(post_id="post_1", platforms=[FB, IG, FB], content="x")
    assert payload.platforms == [FB, IG]


class TestTokenPrecondition:
    @pytest.mark.asyncio
    async def test_expired_token_refreshed_before_publish(self, handler, store, post, add_account,
                                                          mock_adapters, cipher):
        account = await add_account(FB, expires_at=NOW - timedelta(minutes=5))
        payload = publish_payload(platforms=[FB])

        await handler.handle(payload, publish_job(payload))

        adapter = mock_adapters[FB]
        assert [name for name, _ in adapter.calls] == ["refresh_token", "create_post"]
        assert adapter.calls_to("refresh_token")[0]["refresh_token"] == "refresh-ok"
        used = adapter.calls_to("create_post")[0]["access_token"]
        stored = await store.get_social_account(account.id)
        assert cipher.decrypt(stored.access_token) == used
        assert stored.expires_at == NOW + timedelta(hours=1)

    @pytest.mark.asyncio
    async def test_refresh_failure_skips_publish_for_that_platform(self, handler, store, post, add_account,
                                                                   mock_adapters):
        await add_account(FB, expires_at=NOW - timedelta(minutes=5))
        await add_account(IG)
        mock_adapters[FB].refresh_error = "invalid_grant"
        payload = publish_payload()

        result = await handler.handle(payload, publish_job(payload))

        assert mock_adapters[FB].calls_to("create_post") == []
        assert result["results"][0]["error"] == "Token refresh failed: invalid_grant"
        assert result["results"][1]["success"] is True


class TestWholeJobFailures:
    @pytest.mark.asyncio
    async def test_missing_post_raises(self, handler, business):
        payload = publish_payload(post_id="ghost")
        with pytest.raises(EntityNotFoundError):
            await handler.handle(payload, publish_job(payload))

    @pytest.mark.asyncio
    async def test_missing_business_raises(self, handler, store):
        await store.save_social_post(SocialPost(id="orphan", business_id="gone", content="x"))
        payload = publish_payload(post_id="orphan")
        with pytest.raises(EntityNotFoundError):
            await handler.handle(payload, publish_job(payload))

    @pytest.mark.asyncio
    async def test_published_post_is_not_republished(self, handler, store, post, add_account, mock_adapters):
        await add_account(FB)
        await store.update_social_post("post_1", status=SocialPostStatus.PUBLISHED)
        payload = publish_payload(platforms=[FB])

        with pytest.raises(InvalidTransitionError):
            await handler.handle(payload, publish_job(payload))
        assert mock_adapters[FB].calls == []

    @pytest.mark.asyncio
    async def test_final_attempt_error_marks_post_failed(self, handler, store, post, monkeypatch):
        async def broken(*args, **kwargs):
            raise RuntimeError("database unavailable")

        monkeypatch.setattr(store, "list_social_accounts", broken)
        payload = publish_payload()

        with pytest.raises(RuntimeError):
            await handler.handle(payload, publish_job(payload, attempts=2, max_attempts=3))

        saved = await store.get_social_post("post_1")
        assert saved.status == SocialPostStatus.FAILED
        assert saved.error_message == "database unavailable"

    @pytest.mark.asyncio
    async def test_non_final_attempt_error_leaves_post_publishing(self, handler, store, post, monkeypatch):
        async def broken(*args, **kwargs):
            raise RuntimeError("database unavailable")

        monkeypatch.setattr(store, "list_social_accounts", broken)
        payload = publish_payload()

        with pytest.raises(RuntimeError):
            await handler.handle(payload, publish_job(payload, attempts=0, max_attempts=3))

        assert (await store.get_social_post("post_1")).status == SocialPostStatus.PUBLISHING


@pytest.mark.asyncio
async def test_publish_through_worker(handler, queue, store, post, add_account, clock):
    await add_account(FB)
    dispatcher = JobDispatcher(queue, store=store, clock=clock)
    worker = QueueWorker(Queues.SOCIAL, queue, [handler])

    handle = await dispatcher.enqueue_social_publish("post_1", [FB], "Sunset yoga this Friday")
    await worker.run_once(timeout=0.1)

    job = await queue.get_job(Queues.SOCIAL, handle.job_id)
    assert job.status == JobStatus.COMPLETED
    assert job.result["status"] == "PUBLISHED"
    assert (await store.get_social_post("post_1")).status == SocialPostStatus.PUBLISHED
