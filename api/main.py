"""
FastAPI Application — enqueue surface and job health.

Provides:
- Liveness probe (/healthz)
- Per-queue job counts and worker state (/jobs/health)
- Enqueue endpoints for each job kind, used by the admin and booking services
- Job lookup by id for polling callers

Enqueueing only records intent: every POST returns 202 with a job handle and
the work runs in the worker process (or in-process when
`run_workers_in_api` is set).

Run:
    uvicorn api.main:create_app --factory --port 8000
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Optional

import structlog

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from config.settings import Settings, get_settings
from core.runtime import JobRuntime
from job_queue.dispatcher import JobHandle, Queues
from models.schemas import SocialProvider, SyncDirection
from utils.logging import configure_logging

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Request Models
# ──────────────────────────────────────────────────────────────

class SocialPublishRequest(BaseModel):
    post_id: str
    platforms: list[SocialProvider]
    content: str
    media_urls: list[str] = Field(default_factory=list)
    scheduled_at: Optional[datetime] = None


class EventSyncRequest(BaseModel):
    event_sync_id: str
    direction: SyncDirection = SyncDirection.EXPORT
    force_update: bool = False


class WebhookRequest(BaseModel):
    webhook_id: str
    event: str
    data: dict[str, Any] = Field(default_factory=dict)
    retry_count: int = 0


class WebhookBroadcastRequest(BaseModel):
    business_id: str
    event: str
    data: dict[str, Any] = Field(default_factory=dict)


class HoldExpiryRequest(BaseModel):
    request_id: str
    expires_at: Optional[datetime] = None


def _handle(handle: JobHandle) -> dict[str, str]:
    return {"job_id": handle.job_id, "queue": handle.queue_name, "job_type": handle.job_type}


# ══════════════════════════════════════════════════════════════
#  App Factory
# ══════════════════════════════════════════════════════════════

def create_app(settings: Settings = None, runtime: JobRuntime = None) -> FastAPI:
    settings = settings or get_settings()
    runtime = runtime or JobRuntime(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings.debug, settings.json_logs)
        await runtime.start(workers=settings.run_workers_in_api)
        logger.info("booking_jobs_api_started",
                    queue_backend=type(runtime.queue).__name__,
                    workers_in_process=settings.run_workers_in_api)
        yield
        await runtime.stop()
        logger.info("booking_jobs_api_stopped")

    app = FastAPI(
        title=settings.app_name,
        description="Background job orchestration for social publishing, event sync, "
                    "webhook delivery and booking hold expiry",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.runtime = runtime

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ──────────────────────────────────────────────────────────
    #  Health
    # ──────────────────────────────────────────────────────────

    @app.get("/healthz")
    async def healthz():
        return {"status": "ok", "app": settings.app_name}

    @app.get("/jobs/health")
    async def jobs_health():
        return await runtime.health()

    # ──────────────────────────────────────────────────────────
    #  Enqueue
    # ──────────────────────────────────────────────────────────

    @app.post("/api/v1/jobs/social-publish", status_code=202)
    async def enqueue_social_publish(req: SocialPublishRequest):
        handle = await runtime.dispatcher.enqueue_social_publish(
            req.post_id, req.platforms, req.content,
            media_urls=req.media_urls, scheduled_at=req.scheduled_at,
        )
        return _handle(handle)

    @app.post("/api/v1/jobs/event-sync", status_code=202)
    async def enqueue_event_sync(req: EventSyncRequest):
        handle = await runtime.dispatcher.enqueue_event_sync(
            req.event_sync_id, direction=req.direction, force_update=req.force_update,
        )
        return _handle(handle)

    @app.post("/api/v1/jobs/webhook", status_code=202)
    async def enqueue_webhook(req: WebhookRequest):
        handle = await runtime.dispatcher.enqueue_webhook(
            req.webhook_id, req.event, req.data, retry_count=req.retry_count,
        )
        return _handle(handle)

    @app.post("/api/v1/jobs/webhook/broadcast", status_code=202)
    async def enqueue_webhook_broadcast(req: WebhookBroadcastRequest):
        handles = await runtime.dispatcher.enqueue_webhook_to_all(req.business_id, req.event, req.data)
        return {"jobs": [_handle(h) for h in handles], "count": len(handles)}

    @app.post("/api/v1/jobs/hold-expiry", status_code=202)
    async def enqueue_hold_expiry(req: HoldExpiryRequest):
        handle = await runtime.dispatcher.enqueue_hold_expiry(req.request_id, req.expires_at)
        return _handle(handle)

    # ──────────────────────────────────────────────────────────
    #  Lookup
    # ──────────────────────────────────────────────────────────

    @app.get("/api/v1/jobs/{queue_name}/{job_id}")
    async def get_job(queue_name: str, job_id: str):
        if queue_name not in Queues.ALL:
            raise HTTPException(404, f"Unknown queue: {queue_name}")
        job = await runtime.queue.get_job(queue_name, job_id)
        if job is None:
            raise HTTPException(404, "Job not found")
        return job.to_dict()

    return app


# ══════════════════════════════════════════════════════════════
#  Entry Point
# ══════════════════════════════════════════════════════════════

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
