"""
Webhook Delivery — signed POST to a subscriber endpoint.

Wire format:
    POST <endpoint.url>
    Content-Type: application/json
    X-Webhook-Signature: <hex HMAC-SHA256(secret, body)>
    X-Webhook-Event: <event>
    X-Webhook-Delivery: <job id>
    <body: compact JSON of the event data, exactly the bytes signed>

Every attempt appends one WebhookDelivery row, so a job retried five times
leaves five rows behind.
"""
from __future__ import annotations

import time
from typing import Any, Optional

import httpx
import structlog

from config.settings import WebhookConfig
from database.store_base import BaseStore
from job_queue.dispatcher import JobTypes
from job_queue.message_queue import Job
from models.schemas import WebhookDelivery, WebhookDeliveryPayload, WebhookDeliveryStatus
from pipelines.base import JobHandler
from services.webhook_signing import serialize_payload, sign_payload

logger = structlog.get_logger()


class WebhookEndpointUnavailableError(Exception):

    def __init__(self, webhook_id: str, reason: str):
        self.webhook_id = webhook_id
        self.reason = reason
        super().__init__(f"Webhook endpoint {webhook_id} {reason}")


class WebhookDeliveryError(Exception):

    def __init__(self, webhook_id: str, status_code: Optional[int], message: str):
        self.webhook_id = webhook_id
        self.status_code = status_code
        super().__init__(message)


class WebhookDeliveryHandler(JobHandler[WebhookDeliveryPayload]):

    job_type = JobTypes.DELIVER

    def __init__(self, store: BaseStore, http: httpx.AsyncClient, config: WebhookConfig = None, clock=None):
        super().__init__(clock)
        self.store = store
        self.http = http
        self.config = config or WebhookConfig()

    async def handle(self, payload: WebhookDeliveryPayload, job: Job) -> dict[str, Any]:
        log = logger.bind(webhook_id=payload.webhook_id, job_id=job.job_id,
                          webhook_event=payload.event, attempt=job.attempts + 1)

        endpoint = await self.store.get_webhook_endpoint(payload.webhook_id)
        if endpoint is None or not endpoint.is_active:
            reason = "not found" if endpoint is None else "is inactive"
            await self._record(payload, job, WebhookDeliveryStatus.FAILED,
                               error_message=f"Webhook endpoint {reason}")
            log.warning("webhook_endpoint_unavailable", reason=reason)
            raise WebhookEndpointUnavailableError(payload.webhook_id, reason)

        body = serialize_payload(payload.data)
        headers = {
            "Content-Type": "application/json",
            "User-Agent": self.config.user_agent,
            "X-Webhook-Signature": sign_payload(endpoint.secret, body),
            "X-Webhook-Event": payload.event,
            "X-Webhook-Delivery": job.job_id,
        }

        start = time.monotonic()
        try:
            resp = await self.http.post(endpoint.url, content=body, headers=headers,
                                        timeout=self.config.timeout_seconds)
        except httpx.HTTPError as e:
            error = str(e) or type(e).__name__
            await self._record(payload, job, WebhookDeliveryStatus.FAILED, error_message=error,
                               duration_ms=_elapsed_ms(start))
            log.warning("webhook_delivery_failed", error=error)
            raise WebhookDeliveryError(payload.webhook_id, None, error) from e

        duration = _elapsed_ms(start)
        response_body = resp.text[: self.config.max_response_chars]

        if not resp.is_success:
            error = f"HTTP {resp.status_code}"
            await self._record(payload, job, WebhookDeliveryStatus.FAILED,
                               response_status=resp.status_code, response_body=response_body,
                               error_message=error, duration_ms=duration)
            log.warning("webhook_delivery_failed", status=resp.status_code)
            raise WebhookDeliveryError(payload.webhook_id, resp.status_code, error)

        await self._record(payload, job, WebhookDeliveryStatus.SUCCESS,
                           response_status=resp.status_code, response_body=response_body,
                           duration_ms=duration)
        log.info("webhook_delivered", status=resp.status_code, duration_ms=duration)
        return {"status_code": resp.status_code, "duration_ms": duration}

    async def _record(self, payload: WebhookDeliveryPayload, job: Job, status: WebhookDeliveryStatus,
                      **fields) -> WebhookDelivery:
        delivery = WebhookDelivery(
            webhook_id=payload.webhook_id,
            event=payload.event,
            status=status,
            job_id=job.job_id,
            attempt=job.attempts + 1,
            delivered_at=self._clock(),
            **fields,
        )
        return await self.store.add_webhook_delivery(delivery)


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)
