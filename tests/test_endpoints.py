import logging

import pytest
from fastapi.testclient import TestClient

from conftest import mint_event
from mint_orchestrator.app import StatusPollFilter, create_app
from mint_orchestrator.services.errors import StoreUnavailableError
from mint_orchestrator.services.process_state import ProcessState


@pytest.fixture
def client(orchestrator):
    with TestClient(create_app(orchestrator)) as test_client:
        yield test_client


def test_status_of_unknown_task_is_404(client):
    response = client.get("/api/v1/status/does-not-exist")
    assert response.status_code == 404
    assert response.json()["detail"] == "Task not found"


def test_manual_request_queues_task_and_reuses_it(client):
    response = client.post("/api/v1/process/42", params={"breed": "Sphynx"})
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "queued"
    assert body["provider"] == "stub"
    task_id = body["task_id"]

    again = client.post("/api/v1/process/42").json()
    assert again["status"] == "already_queued"
    assert again["task_id"] == task_id

    status = client.get(f"/api/v1/status/{task_id}", params={"minimal": True}).json()
    assert set(status) == {"task_id", "status", "progress", "message", "result", "updated_at"}
    assert status["status"] == "PENDING"

    full = client.get(f"/api/v1/status/{task_id}").json()
    assert full["timeout_at"] is not None
    assert full["options"]["created_from"] == "manual"


def test_manual_request_validation(client):
    assert client.post("/api/v1/process/abc").status_code == 400
    response = client.post("/api/v1/process/42", params={"provider": "midjourney"})
    assert response.status_code == 400
    assert "Unknown image provider" in response.json()["detail"]


def test_processed_subject_needs_force(client, orchestrator):
    state = ProcessState(processed_subjects={"42"})

    async def load():
        return ProcessState.from_dict(state.to_dict())

    orchestrator.state_store.load = load

    assert client.post("/api/v1/process/42").json()["status"] == "already_processed"
    assert client.post("/api/v1/process/42", params={"force": True}).json()["status"] == "queued"


def test_cron_runs_a_cycle(client, orchestrator, event_source):
    client.post("/api/v1/reset-block/100")
    event_source.head = 150
    event_source.events = [mint_event(7, 120)]

    summary = client.post("/api/v1/cron").json()
    assert summary["new_events_found"] == 1
    assert summary["new_tasks_created"] == 1
    assert summary["tasks_processed"] == 1
    assert summary["pending_tasks_remaining"] == 0
    assert summary["last_processed_block"] == 150
    assert "execution_time_ms" in summary

    # The scheduler may also call it with GET
    assert client.get("/api/v1/cron").json()["new_events_found"] == 0

    tasks = client.get("/api/v1/tasks", params={"status": "completed"}).json()
    assert tasks["count"] == 1
    assert tasks["tasks"][0]["subject_id"] == "7"
    assert tasks["tasks"][0]["result"]["token_uri"] == "ipfs://meta-7.json"


def test_list_tasks_rejects_unknown_status(client):
    response = client.get("/api/v1/tasks", params={"status": "paused"})
    assert response.status_code == 400


def test_reset_block(client, orchestrator):
    response = client.post("/api/v1/reset-block/1234")
    assert response.json()["last_processed_block"] == 1234
    assert client.post("/api/v1/reset-block/-5").status_code == 422


def test_metrics_and_cleanup(client):
    client.post("/api/v1/process/1")
    metrics = client.get("/api/v1/metrics").json()
    assert metrics["total_tasks"] == 1
    assert metrics["by_status"]["PENDING"] == 1
    assert metrics["pending_queue_length"] == 1

    # Live tasks are never cleaned up
    assert client.post("/api/v1/cleanup", params={"max_age_hours": 0.0001}).json() == {"removed": 0}


def test_store_outage_returns_503(client, orchestrator):
    async def unavailable():
        raise StoreUnavailableError("redis load failed: connection refused")

    orchestrator.state_store.load = unavailable

    response = client.post("/api/v1/cron")
    assert response.status_code == 503
    assert "Storage unavailable" in response.json()["detail"]


def test_health_reports_queue_and_cursor(client):
    client.post("/api/v1/reset-block/77")
    client.post("/api/v1/process/3")

    body = client.get("/api/v1/health").json()
    assert body["status"] == "healthy"
    assert body["queue_length"] == 1
    assert body["last_processed_block"] == 77
    assert body["default_provider"] == "stub"
    assert body["available_providers"] == ["stub"]


def test_health_is_503_when_state_store_is_down(client, orchestrator):
    async def unavailable():
        raise StoreUnavailableError("redis load failed: connection refused")

    orchestrator.state_store.load = unavailable

    response = client.get("/api/v1/health")
    assert response.status_code == 503
    assert response.json()["status"] == "unhealthy"
    assert "connection refused" in response.json()["checks"]["state_store"]


def access_record(path):
    return logging.LogRecord(
        "uvicorn.access", logging.INFO, __file__, 0,
        '%s - "%s %s HTTP/%s" %d', ("127.0.0.1:5000", "GET", path, "1.1", 200), None,
    )


def test_status_polls_are_left_out_of_the_access_log():
    status_filter = StatusPollFilter()
    assert not status_filter.filter(access_record("/api/v1/status/abc?minimal=true"))
    assert status_filter.filter(access_record("/api/v1/cron"))
