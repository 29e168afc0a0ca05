import asyncio

from fastapi.testclient import TestClient
import pytest

from nutribot.api.http_app import build_app
from nutribot.api.handlers.deps import ApiDeps
from nutribot.domain.models import JobSnapshot
from nutribot.repositories.stub import InMemoryJobQueue, InMemoryUserDirectory


def _api_app():
    # In-memory backends stand in for Postgres; the api role alone refuses to start without it.
    api_deps = ApiDeps(queue=InMemoryJobQueue(), users=InMemoryUserDirectory())
    app = build_app(role="api", run_id="integration-api", api_deps=api_deps, mode="memory")
    return app, api_deps


@pytest.mark.integration
def test_system_endpoints_report_role_and_mode() -> None:
    app, _ = _api_app()

    with TestClient(app) as client:
        health = client.get("/health")
        ready = client.get("/ready")

    assert health.status_code == 200
    assert health.json() == {"status": "ok", "role": "api", "mode": "memory"}
    assert ready.status_code == 200
    body = ready.json()
    assert body["worker_loop_enabled"] is False
    assert body["worker_loop_ready"] is True
    assert body["worker_metrics"]["concurrency"] == 0


@pytest.mark.integration
def test_webhook_is_enqueued_verbatim_as_one_job() -> None:
    app, deps = _api_app()
    event = {
        "event": "messages.upsert",
        "data": {"key": {"remoteJid": "5511999999999@s.whatsapp.net"}, "message": {"conversation": "oi"}},
    }

    with TestClient(app) as client:
        response = client.post("/webhooks", json=event)
        assert response.status_code == 200
        payload = response.json()
        assert payload["message"] == "Webhook received"
        job_id = payload["job_id"]
        assert job_id.startswith("job_")

        job = client.get(f"/jobs/{job_id}")
        assert job.status_code == 200
        assert job.json()["status"] == "queued"
        assert job.json()["payload"] == {"body": event}

        listed = client.get("/jobs", params={"status": "queued"})
        assert [item["job_id"] for item in listed.json()["items"]] == [job_id]
        assert client.get("/jobs", params={"status": "failed"}).json()["items"] == []

    snapshot = asyncio.run(deps.queue.get_job(job_id=job_id))
    assert snapshot is not None
    assert snapshot.queue == "webhooks"


@pytest.mark.integration
def test_each_delivery_of_the_same_webhook_creates_a_new_job() -> None:
    app, deps = _api_app()

    with TestClient(app) as client:
        first = client.post("/webhooks", json={"event": "status.update"}).json()["job_id"]
        second = client.post("/webhooks", json={"event": "status.update"}).json()["job_id"]

    assert first != second
    assert len(deps.queue.jobs) == 2


@pytest.mark.integration
def test_webhook_rejects_non_object_body() -> None:
    app, _ = _api_app()

    with TestClient(app) as client:
        response = client.post("/webhooks", json=["not", "an", "object"])

    assert response.status_code == 422


@pytest.mark.integration
def test_webhook_returns_503_when_queue_is_unavailable() -> None:
    class _DownQueue(InMemoryJobQueue):
        async def enqueue(self, *, queue: str, payload: dict[str, object]) -> JobSnapshot:
            del queue, payload
            raise ConnectionError("queue backend unreachable")

    app = build_app(
        role="api",
        run_id="integration-down",
        api_deps=ApiDeps(queue=_DownQueue(), users=InMemoryUserDirectory()),
    )

    with TestClient(app) as client:
        response = client.post("/webhooks", json={"event": "messages.upsert"})

    assert response.status_code == 503
    assert response.json() == {"detail": "failed to enqueue webhook"}


@pytest.mark.integration
def test_unknown_job_returns_404() -> None:
    app, _ = _api_app()

    with TestClient(app) as client:
        response = client.get("/jobs/job_01ARZ3NDEKTSV4RRFFQ69G5FAV")

    assert response.status_code == 404


@pytest.mark.integration
def test_user_registration_and_duplicate_phone() -> None:
    app, deps = _api_app()
    request = {"name": "Ana", "phone": "5511999999999", "target": 120, "weight": 70.5}

    with TestClient(app) as client:
        created = client.post("/users", json=request)
        duplicate = client.post("/users", json=request)
        invalid = client.post("/users", json={"name": "Bia", "phone": "+55 11"})

    assert created.status_code == 200
    assert created.json() == {
        "user_id": 1,
        "name": "Ana",
        "phone": "5511999999999",
        "target": 120.0,
        "weight": 70.5,
    }
    assert duplicate.status_code == 409
    assert invalid.status_code == 422
    user = asyncio.run(deps.users.get_user_by_phone(phone="5511999999999"))
    assert user.user_id == 1
