from __future__ import annotations

from collections.abc import Iterator

import pytest
from fastapi.testclient import TestClient

from apps.api_gateway.main import app
from smartmeet_pipeline.resilience.rate_limit import RateLimitProfile
from smartmeet_pipeline.runtime import set_context

OWNER = {"X-Owner-Id": "owner_1"}
WORKER = {"Authorization": "Bearer test-worker-secret"}


@pytest.fixture()
def client(ctx) -> Iterator[TestClient]:
    set_context(ctx)
    try:
        yield TestClient(app)
    finally:
        set_context(None)


def test_health(client: TestClient) -> None:
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"ok": True}


def test_process_enqueues_job(client: TestClient, ctx, seed) -> None:
    job_id = seed()

    r = client.post(f"/v1/jobs/{job_id}/process", headers=OWNER)

    assert r.status_code == 202
    body = r.json()
    assert body["job_id"] == job_id
    assert body["enqueued"] is True
    assert body["priority"] == "NORMAL"
    assert r.headers["X-RateLimit-Limit"] == "50"
    assert r.headers["X-RateLimit-Remaining"] == "49"
    assert ctx.queue.length() == 1
    assert ctx.trigger.calls == 1


def test_process_requires_owner(client: TestClient, seed) -> None:
    job_id = seed()
    r = client.post(f"/v1/jobs/{job_id}/process")
    assert r.status_code == 401
    assert r.json()["detail"]["code"] == "unauthorized"


def test_process_hides_other_owners_jobs(client: TestClient, seed) -> None:
    job_id = seed()
    r = client.post(f"/v1/jobs/{job_id}/process", headers={"X-Owner-Id": "owner_2"})
    assert r.status_code == 404
    assert r.json() == {"code": "not_found", "message": "Job not found"}


def test_process_after_completion_conflicts(client: TestClient, ctx, seed) -> None:
    job_id = seed()
    ctx.orchestrator.process(job_id)

    r = client.post(f"/v1/jobs/{job_id}/process", headers=OWNER)

    assert r.status_code == 409
    assert r.json()["code"] == "conflict"


def test_process_rate_limited(client: TestClient, ctx, seed) -> None:
    ctx.rate_limiter.profiles["api"] = RateLimitProfile(points=1, window_sec=60)
    job_id = seed()
    assert client.post(f"/v1/jobs/{job_id}/process", headers=OWNER).status_code == 202

    r = client.post(f"/v1/jobs/{job_id}/process", headers=OWNER)

    assert r.status_code == 429
    assert r.json()["detail"] == {"code": "rate_limited", "message": "Too many requests"}
    assert r.headers["Retry-After"] == "60"
    assert r.headers["X-RateLimit-Remaining"] == "0"


def test_retry_of_pending_job_conflicts(client: TestClient, seed) -> None:
    job_id = seed()
    r = client.post(f"/v1/jobs/{job_id}/retry", headers=OWNER)
    assert r.status_code == 409


def test_retry_failed_job(client: TestClient, ctx, seed) -> None:
    job_id = seed(api_key=None)
    ctx.orchestrator.process(job_id)

    r = client.post(f"/v1/jobs/{job_id}/retry", headers=OWNER)

    assert r.status_code == 202
    assert ctx.queue.length() == 1


def test_status_endpoint(client: TestClient, ctx, seed) -> None:
    job_id = seed()
    ctx.orchestrator.process(job_id)

    r = client.get(f"/v1/jobs/{job_id}/status", headers=OWNER)

    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "COMPLETED"
    assert body["step"] == "COMPLETED"
    assert body["has_summary"] is True
    assert body["failed_step"] is None


def test_worker_endpoint_requires_secret(client: TestClient) -> None:
    r = client.post("/v1/worker/process")
    assert r.status_code == 401
    assert r.headers["WWW-Authenticate"] == "Bearer"

    r = client.post("/v1/worker/process", headers={"Authorization": "Bearer wrong"})
    assert r.status_code == 401


def test_worker_endpoint_rejects_non_ascii_secret(client: TestClient) -> None:
    r = client.post(
        "/v1/worker/process",
        headers={"Authorization": "Bearer секрет-воркера".encode()},
    )
    assert r.status_code == 401


def test_worker_endpoint_drains_queue(client: TestClient, ctx, seed) -> None:
    job_id = seed()
    client.post(f"/v1/jobs/{job_id}/process", headers=OWNER)

    r = client.get("/v1/worker/process", headers=WORKER)

    assert r.status_code == 200
    body = r.json()
    assert body["processed_count"] == 1
    assert body["results"][0]["action"] == "ok"
    assert ctx.store.get_job(job_id).summary == "Team agreed to ship v2."


def test_signed_artifact_url_roundtrip(client: TestClient, seed) -> None:
    job_id = seed()

    r = client.get(f"/v1/jobs/{job_id}/artifact-url", headers=OWNER)
    assert r.status_code == 200
    url = r.json()["url"]

    download = client.get(url)
    assert download.status_code == 200
    assert download.content == b"Alice: Let's ship v2."
    assert download.headers["content-type"].startswith("text/plain")

    tampered = client.get(url.replace("meeting.txt", "other.txt"))
    assert tampered.status_code == 403


def test_signed_artifact_url_expires(client: TestClient, seed, clock) -> None:
    job_id = seed()
    url = client.get(f"/v1/jobs/{job_id}/artifact-url", headers=OWNER).json()["url"]

    clock.advance(sec=3601)

    assert client.get(url).status_code == 403


def test_metrics_endpoint(client: TestClient, ctx, seed) -> None:
    job_id = seed()
    ctx.orchestrator.process(job_id)

    r = client.get("/metrics")

    assert r.status_code == 200
    assert "smartmeet_queue_depth" in r.text
    assert "smartmeet_job_outcomes_total" in r.text
