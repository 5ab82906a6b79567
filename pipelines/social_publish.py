"""
Social Publish Pipeline — one post, many platforms.

Flow:
  1. Load post + business (missing → EntityNotFoundError, whole-job retry)
  2. DRAFT/SCHEDULED/FAILED/PUBLISHING → PUBLISHING
  3. Load the business's active accounts for the requested platforms
  4. Per platform, in isolation: resolve account → ensure token → publish
  5. All succeeded → PUBLISHED with external ids; otherwise FAILED with the
     first failing platform's error
  6. Audit the full per-platform result list either way

A failure on one platform (no account, refresh failed, provider error) is
captured as a PlatformResult and never stops the next platform.
"""
from __future__ import annotations

from typing import Any, Optional

import structlog

from core.state_machine import SOCIAL_POST_TRANSITIONS
from database.store_base import BaseStore
from job_queue.dispatcher import JobTypes
from job_queue.message_queue import Job
from models.schemas import (
    PlatformResult, SocialAccount, SocialPost, SocialPostStatus, SocialProvider, SocialPublishPayload,
)
from pipelines.base import ConcurrentModificationError, EntityNotFoundError, JobHandler
from providers.base import AdapterRegistry, PostContent
from services.audit import AuditActions, AuditLogger
from services.token_refresh import TokenRefreshService

logger = structlog.get_logger()


class SocialPublishHandler(JobHandler[SocialPublishPayload]):

    job_type = JobTypes.PUBLISH

    def __init__(self, store: BaseStore, adapters: AdapterRegistry, tokens: TokenRefreshService,
                 audit: AuditLogger, clock=None):
        super().__init__(clock)
        self.store = store
        self.adapters = adapters
        self.tokens = tokens
        self.audit = audit

    async def handle(self, payload: SocialPublishPayload, job: Job) -> dict[str, Any]:
        post = await self.store.get_social_post(payload.post_id)
        if post is None:
            raise EntityNotFoundError("SocialPost", payload.post_id)
        business = await self.store.get_business(post.business_id)
        if business is None:
            raise EntityNotFoundError("Business", post.business_id)

        log = logger.bind(post_id=post.id, job_id=job.job_id)
        publishing = SOCIAL_POST_TRANSITIONS.next_state(post.status, "start_publish")
        if not await self.store.update_social_post(post.id, expected_status=post.status,
                                                   status=publishing, error_message=None):
            raise ConcurrentModificationError("SocialPost", post.id, post.status)
        log.info("social_publish_started", platforms=[p.value for p in payload.platforms])

        try:
            results = await self._publish_all(business.id, payload)
            final = await self._finish(post, results)
        except Exception as e:
            # Don't leave the post stuck in PUBLISHING once retries are exhausted
            if self.is_final_attempt(job):
                await self.store.update_social_post(
                    post.id, expected_status=SocialPostStatus.PUBLISHING,
                    status=SocialPostStatus.FAILED, error_message=str(e) or type(e).__name__,
                )
            raise

        await self.audit.record(
            AuditActions.SOCIAL_POST_PUBLISHED if final == SocialPostStatus.PUBLISHED
            else AuditActions.SOCIAL_POST_FAILED,
            entity_type="SocialPost",
            entity_id=post.id,
            business_id=business.id,
            metadata={"job_id": job.job_id, "results": [r.model_dump(mode="json") for r in results]},
        )
        log.info("social_publish_finished", status=final.value,
                 succeeded=sum(r.success for r in results), total=len(results))
        return {"status": final.value, "results": [r.model_dump(mode="json") for r in results]}

    async def _publish_all(self, business_id: str, payload: SocialPublishPayload) -> list[PlatformResult]:
        accounts = await self.store.list_social_accounts(business_id, providers=payload.platforms)
        by_provider: dict[SocialProvider, SocialAccount] = {}
        for account in accounts:
            by_provider.setdefault(account.provider, account)

        content = PostContent(message=payload.content, media_urls=list(payload.media_urls))
        results = []
        for platform in payload.platforms:
            results.append(await self._publish_one(platform, by_provider.get(platform), content))
        return results

    async def _publish_one(self, platform: SocialProvider, account: Optional[SocialAccount],
                           content: PostContent) -> PlatformResult:
        if account is None:
            return PlatformResult(platform=platform, success=False,
                                  error=f"No connected {platform.value} account")

        token = await self.tokens.ensure_access_token(account)
        if not token.ok:
            return PlatformResult(platform=platform, success=False, error=token.error)

        try:
            adapter = self.adapters.require(platform)
            published = await adapter.create_post(account.account_id, token.access_token, content)
        except Exception as e:
            logger.warning("social_platform_failed", platform=platform.value,
                           account_id=account.id, error=str(e))
            return PlatformResult(platform=platform, success=False, error=str(e) or type(e).__name__)

        return PlatformResult(platform=platform, success=True,
                              external_id=published.id, url=published.url)

    async def _finish(self, post: SocialPost, results: list[PlatformResult]) -> SocialPostStatus:
        failures = [r for r in results if not r.success]
        if results and not failures:
            status = SOCIAL_POST_TRANSITIONS.next_state(SocialPostStatus.PUBLISHING, "publish_succeeded")
            fields = {
                "status": status,
                "published_at": self._clock(),
                "external_ids": [r.external_id for r in results],
                "error_message": None,
            }
        else:
            status = SOCIAL_POST_TRANSITIONS.next_state(SocialPostStatus.PUBLISHING, "publish_failed")
            fields = {
                "status": status,
                "error_message": failures[0].error if failures else "No platforms requested",
            }

        if not await self.store.update_social_post(post.id, expected_status=SocialPostStatus.PUBLISHING,
                                                   **fields):
            raise ConcurrentModificationError("SocialPost", post.id, SocialPostStatus.PUBLISHING)
        return status
