"""Tests for the enqueue API and job health endpoints."""
import asyncio

import pytest
from fastapi.testclient import TestClient

from api.main import create_app
from core.runtime import JobRuntime
from database.store_memory import InMemoryStore
from job_queue.dispatcher import Queues
from job_queue.message_queue import JobStatus
from models.schemas import WebhookEndpoint


@pytest.fixture
def api_store():
    store = InMemoryStore()

    async def seed():
        for n, active in [(1, True), (2, True), (3, False)]:
            await store.save_webhook_endpoint(WebhookEndpoint(
                id=f"wh_{n}", business_id="biz_1", url=f"https://hooks.example.com/{n}",
                secret="s", is_active=active,
            ))

    asyncio.run(seed())
    return store


@pytest.fixture
def client(settings, api_store):
    app = create_app(settings, runtime=JobRuntime(settings, store=api_store))
    with TestClient(app) as c:
        yield c


def test_healthz(client: TestClient):
    r = client.get("/healthz")
    assert r.status_code == 200
    assert r.json()["status"] == "ok"


def test_jobs_health_lists_every_queue(client: TestClient):
    body = client.get("/jobs/health").json()
    assert set(body["queues"]) == set(Queues.ALL)
    assert body["queues"][Queues.SOCIAL][JobStatus.WAITING] == 0
    # workers are not started inside the API process by default
    assert not any(body["workers"].values())


def test_enqueue_social_publish_returns_handle(client: TestClient):
    r = client.post("/api/v1/jobs/social-publish", json={
        "post_id": "post_1", "platforms": ["FACEBOOK_PAGE", "INSTAGRAM_BUSINESS"], "content": "hello",
    })
    assert r.status_code == 202
    handle = r.json()
    assert handle["queue"] == Queues.SOCIAL
    assert handle["job_type"] == "publish"

    job = client.get(f"/api/v1/jobs/{Queues.SOCIAL}/{handle['job_id']}").json()
    assert job["status"] == JobStatus.WAITING
    assert job["payload"]["platforms"] == ["FACEBOOK_PAGE", "INSTAGRAM_BUSINESS"]
    assert job["max_attempts"] == 3


def test_enqueue_rejects_unknown_platform(client: TestClient):
    r = client.post("/api/v1/jobs/social-publish", json={
        "post_id": "post_1", "platforms": ["MYSPACE"], "content": "hello",
    })
    assert r.status_code == 422


def test_enqueue_event_sync(client: TestClient):
    r = client.post("/api/v1/jobs/event-sync", json={"event_sync_id": "sync_1", "force_update": True})
    assert r.status_code == 202
    job = client.get(f"/api/v1/jobs/{Queues.EVENT_SYNC}/{r.json()['job_id']}").json()
    assert job["payload"]["direction"] == "export"
    assert job["payload"]["force_update"] is True


def test_enqueue_webhook(client: TestClient):
    r = client.post("/api/v1/jobs/webhook", json={
        "webhook_id": "wh_1", "event": "booking.created", "data": {"booking_id": "bk_1"},
    })
    assert r.status_code == 202
    job = client.get(f"/api/v1/jobs/{Queues.WEBHOOK}/{r.json()['job_id']}").json()
    assert job["max_attempts"] == 5
    assert job["payload"]["data"] == {"booking_id": "bk_1"}


def test_broadcast_enqueues_one_job_per_active_endpoint(client: TestClient):
    r = client.post("/api/v1/jobs/webhook/broadcast", json={
        "business_id": "biz_1", "event": "booking.cancelled", "data": {"booking_id": "bk_9"},
    })
    assert r.status_code == 202
    assert r.json()["count"] == 2
    ids = {
        client.get(f"/api/v1/jobs/{Queues.WEBHOOK}/{h['job_id']}").json()["payload"]["webhook_id"]
        for h in r.json()["jobs"]
    }
    assert ids == {"wh_1", "wh_2"}


def test_enqueue_hold_expiry_is_delayed(client: TestClient):
    r = client.post("/api/v1/jobs/hold-expiry", json={"request_id": "req_1"})
    assert r.status_code == 202
    job = client.get(f"/api/v1/jobs/{Queues.SPACE_HOLD_EXPIRE}/{r.json()['job_id']}").json()
    assert job["status"] == JobStatus.DELAYED
    assert job["max_attempts"] == 1


def test_job_lookup_404s(client: TestClient):
    assert client.get("/api/v1/jobs/no-such-queue/job_x").status_code == 404
    assert client.get(f"/api/v1/jobs/{Queues.SOCIAL}/job_missing").status_code == 404
