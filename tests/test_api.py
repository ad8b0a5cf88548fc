from datetime import timedelta

import pytest
from litestar.testing import TestClient

from queuedeck.client import QueueClient
from queuedeck.common.job import Outcome
from queuedeck.config import Settings
from queuedeck.dashboard import StaticTokenVerifier, create_app
from queuedeck.storage.memory_storage import MemoryStorage

ADMIN = {"Authorization": "Bearer admin-token"}


@pytest.fixture
def queue_client():
    settings = Settings(
        api_tokens={"admin-token": "admin", "owner-token": "owner", "viewer-token": "viewer"}
    )
    return QueueClient(MemoryStorage(queues=settings.queues), settings=settings)


@pytest.fixture
def api(queue_client):
    with TestClient(app=create_app(queue_client)) as test_client:
        yield test_client


def _failed_job(queue_client, queue="provision"):
    queue_client.add(queue, "provision_server", {"server_id": 9})
    job = queue_client.claim_next(queue, "worker-1")
    return queue_client.report_result(queue, job.id, Outcome.failure("boom", ["Traceback", "boom"]))


def test_health_needs_no_token(api):
    response = api.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "storage": "memory", "queues": 5}


def test_missing_token_is_unauthorized(api):
    response = api.get("/admin/queues")
    assert response.status_code == 401
    body = response.json()
    assert body["error"] == "Unauthorized"
    assert body["statusCode"] == 401
    assert body["message"]


def test_wrong_token_and_wrong_role(api):
    assert api.get("/admin/queues", headers={"Authorization": "Bearer nope"}).status_code == 401
    response = api.get("/admin/queues", headers={"Authorization": "Bearer viewer-token"})
    assert response.status_code == 403
    assert response.json()["error"] == "Forbidden"


def test_sse_requires_token(api):
    response = api.get("/admin/queues/events")
    assert response.status_code == 401


def test_list_queues_with_header_or_query_token(api, queue_client):
    queue_client.pause("stop")
    response = api.get("/admin/queues", headers=ADMIN)
    assert response.status_code == 200
    assert {"name": "stop", "paused": True} in response.json()
    assert api.get("/admin/queues", params={"token": "owner-token"}).status_code == 200


def test_list_jobs_wire_format(api, queue_client):
    _failed_job(queue_client)
    response = api.get("/admin/queues/provision/jobs", params={"state": "failed"}, headers=ADMIN)
    assert response.status_code == 200
    body = response.json()
    assert body["total"] == 1
    assert body["page"] == 1
    assert body["pageSize"] == 20
    item = body["items"][0]
    assert item["id"] == 1
    assert item["name"] == "provision_server"
    assert item["data"] == {"server_id": 9}
    assert item["attemptsMade"] == 1
    assert item["state"] == "failed"
    assert item["failedReason"] == "boom"
    assert item["stacktrace"] == ["Traceback", "boom"]
    assert isinstance(item["timestamp"], int)
    assert item["finishedOn"] >= item["processedOn"] >= item["timestamp"]


def test_list_jobs_defaults_to_waiting(api, queue_client):
    for _ in range(3):
        queue_client.add("start", "start_server")
    response = api.get("/admin/queues/start/jobs", params={"pageSize": 2}, headers=ADMIN)
    body = response.json()
    assert [item["id"] for item in body["items"]] == [3, 2]
    assert body["total"] == 3
    assert all(item["state"] == "waiting" for item in body["items"])


def test_list_jobs_rejects_bad_arguments(api):
    response = api.get("/admin/queues/start/jobs", params={"state": "paused"}, headers=ADMIN)
    assert response.status_code == 400
    assert response.json()["error"] == "InvalidArgument"

    response = api.get("/admin/queues/start/jobs", params={"page": "abc"}, headers=ADMIN)
    assert response.status_code == 400
    assert response.json()["error"] == "InvalidArgument"

    response = api.get("/admin/queues/start/jobs", params={"pageSize": 0}, headers=ADMIN)
    assert response.status_code == 400


def test_unknown_queue_is_not_found(api):
    response = api.get("/admin/queues/nope/jobs", headers=ADMIN)
    assert response.status_code == 404
    assert response.json()["error"] == "NotFound"
    assert api.post("/admin/queues/nope/pause", headers=ADMIN).status_code == 404


def test_job_details_and_counts(api, queue_client):
    queue_client.add("start", "start_server", delay=timedelta(hours=1))
    response = api.get("/admin/queues/start/1", headers=ADMIN)
    assert response.status_code == 200
    assert response.json()["state"] == "delayed"
    assert response.json()["delay"] > 0

    assert api.get("/admin/queues/start/99", headers=ADMIN).status_code == 404
    counts = api.get("/admin/queues/start/counts", headers=ADMIN).json()
    assert counts == {"waiting": 0, "active": 0, "delayed": 1, "completed": 0, "failed": 0}


def test_pause_and_resume(api, queue_client):
    response = api.post("/admin/queues/restart/pause", headers=ADMIN)
    assert response.status_code == 200
    assert response.json() == {"ok": True}
    assert queue_client.storage.get_queue("restart").paused is True

    assert api.post("/admin/queues/restart/resume", headers=ADMIN).json() == {"ok": True}
    assert queue_client.storage.get_queue("restart").paused is False


def test_drain_and_clean(api, queue_client):
    queue_client.add("delete", "delete_server")
    queue_client.add("delete", "delete_server", delay=timedelta(hours=1))
    assert api.post("/admin/queues/delete/drain", headers=ADMIN).json() == {"removed": 2}

    _failed_job(queue_client, "delete")
    assert api.post("/admin/queues/delete/clean", headers=ADMIN).json() == {"removed": 0}
    response = api.post("/admin/queues/delete/clean", params={"state": "failed"}, headers=ADMIN)
    assert response.json() == {"removed": 1}

    response = api.post("/admin/queues/delete/clean", params={"state": "waiting"}, headers=ADMIN)
    assert response.status_code == 400


def test_retry_promote_remove(api, queue_client):
    failed = _failed_job(queue_client)
    response = api.post(f"/admin/queues/provision/{failed.id}/retry", headers=ADMIN)
    assert response.json() == {"ok": True}
    assert queue_client.get_job("provision", failed.id).state.value == "waiting"

    response = api.post(f"/admin/queues/provision/{failed.id}/retry", headers=ADMIN)
    assert response.status_code == 409
    assert response.json()["error"] == "InvalidStateTransition"

    delayed = queue_client.add("provision", "provision_server", delay=timedelta(hours=1))
    response = api.post(f"/admin/queues/provision/{delayed.id}/promote", headers=ADMIN)
    assert response.json() == {"ok": True}

    response = api.post(f"/admin/queues/provision/{delayed.id}/remove", headers=ADMIN)
    assert response.json() == {"ok": True, "removed": True}
    response = api.post(f"/admin/queues/provision/{delayed.id}/remove", headers=ADMIN)
    assert response.json() == {"ok": True, "removed": False}


def test_static_token_verifier():
    verifier = StaticTokenVerifier({"a": "admin", "b": "viewer"})
    assert verifier.verify("a").role == "admin"
    assert verifier.verify("b").role == "viewer"
    assert verifier.verify("c") is None
