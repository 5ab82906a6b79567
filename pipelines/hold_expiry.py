"""
Space booking hold expiry.

Every branch re-reads the request before acting, so running the same job
twice (or after the guest paid) is always a no-op.
"""
from __future__ import annotations

from typing import Any

import structlog

from core.state_machine import SPACE_REQUEST_TRANSITIONS
from database.store_base import BaseStore
from job_queue.dispatcher import JobTypes
from job_queue.message_queue import Job
from models.schemas import HoldExpirePayload, SpaceRequestStatus
from pipelines.base import JobHandler
from services.audit import AuditActions, AuditLogger

logger = structlog.get_logger()


class HoldExpiryHandler(JobHandler[HoldExpirePayload]):

    job_type = JobTypes.EXPIRE

    def __init__(self, store: BaseStore, audit: AuditLogger, clock=None):
        super().__init__(clock)
        self.store = store
        self.audit = audit

    async def handle(self, payload: HoldExpirePayload, job: Job) -> dict[str, Any]:
        log = logger.bind(request_id=payload.request_id, job_id=job.job_id)

        request = await self.store.get_space_request(payload.request_id)
        if request is None:
            log.info("hold_expiry_request_missing")
            return {"outcome": "not_found"}

        if request.status != SpaceRequestStatus.NEEDS_PAYMENT:
            log.info("hold_expiry_skipped", status=request.status.value)
            return {"outcome": "skipped", "status": request.status.value}

        if request.hold_expires_at and request.hold_expires_at > self._clock():
            log.info("hold_expiry_not_due", hold_expires_at=request.hold_expires_at.isoformat())
            return {"outcome": "not_due"}

        expired = SPACE_REQUEST_TRANSITIONS.next_state(request.status, "expire")
        if not await self.store.update_space_request(request.id,
                                                     expected_status=SpaceRequestStatus.NEEDS_PAYMENT,
                                                     status=expired):
            log.info("hold_expiry_lost_race")
            return {"outcome": "skipped"}

        await self.audit.record(AuditActions.SPACE_REQUEST_EXPIRED, "SpaceRequest", request.id,
                                business_id=request.business_id,
                                metadata={"job_id": job.job_id, "space_id": request.space_id,
                                          "hold_expires_at": payload.expires_at.isoformat()})
        log.info("hold_expired")
        return {"outcome": "expired"}
