import inspect
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

sys.path.append(str(Path(__file__).resolve().parents[1]))

from minilend.application import DisbursementService, reset_disbursement_state
from minilend.core.config import QueueSettings
from minilend.domain import JobStatus, SystemAlert
from minilend.infrastructure import InMemoryDisbursementRepository

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


@pytest.fixture()
def repository():
    return InMemoryDisbursementRepository()


@pytest.fixture()
def client(repository, monkeypatch):
    monkeypatch.delenv("MONGODB_URI", raising=False)
    from minilend.app import create_app

    service = DisbursementService(repository, QueueSettings(), clock=lambda: NOW)
    app = create_app(settings=QueueSettings(), service=service)
    with TestClient(app) as test_client:
        yield test_client
    reset_disbursement_state()


def _enqueue(client, code: str = "TX1", amount: float = 1000) -> str:
    response = client.post(
        "/api/disbursement/queue",
        json={"recipientAddress": "0xabc", "amountKES": amount, "transactionCode": code},
    )
    assert response.status_code == 201
    return response.json()["jobId"]


def _worker_completes(repository, job_id: str, usdc: float) -> None:
    repository.transition_job(
        job_id,
        expected=JobStatus.PENDING,
        target=JobStatus.PROCESSING,
        set_fields={"processingStartedAt": NOW},
    )
    repository.transition_job(
        job_id,
        expected=JobStatus.PROCESSING,
        target=JobStatus.COMPLETED,
        set_fields={
            "completedAt": NOW,
            "result": {
                "success": True,
                "transactionHash": "0xfeed",
                "usdcAmount": usdc,
                "kesAmount": 1000,
                "recipient": "0xabc",
            },
        },
    )


def test_enqueue_complete_and_dashboard_total(client, repository):
    before = client.get("/api/disbursement/dashboard").json()["stats"]["totalUSDCDisbursed"]
    job_id = _enqueue(client)

    response = client.get("/api/disbursement/status", params={"jobId": job_id})
    assert response.status_code == 200
    body = response.json()
    assert body["jobId"] == job_id
    assert body["status"] == "pending"
    assert body["retryCount"] == 0
    assert body["maxRetries"] == 3
    assert body["createdAt"].startswith("2026-10-19T12:00:00")
    assert body["result"] is None

    _worker_completes(repository, job_id, 7.5)

    dashboard = client.get("/api/disbursement/dashboard").json()
    assert float(dashboard["stats"]["totalUSDCDisbursed"]) - float(before) == pytest.approx(7.5)
    assert dashboard["stats"]["completed"] == 1
    assert dashboard["stats"]["successRate"] == "100.00%"
    assert dashboard["recentJobs"][0]["result"]["transactionHash"] == "0xfeed"

    status = client.get("/api/disbursement/status", params={"jobId": job_id}).json()
    assert status["status"] == "completed"
    assert status["result"]["usdcAmount"] == 7.5


def test_status_errors(client):
    response = client.get("/api/disbursement/status")
    assert response.status_code == 400
    assert response.json() == {"error": "Missing jobId parameter"}

    response = client.get("/api/disbursement/status", params={"jobId": "nope"})
    assert response.status_code == 404
    assert response.json() == {"error": "Job not found"}


def test_enqueue_validation_and_duplicates(client):
    response = client.post(
        "/api/disbursement/queue",
        json={"recipientAddress": "0xabc", "amountKES": -1, "transactionCode": "TX1"},
    )
    assert response.status_code == 400
    assert "error" in response.json()

    response = client.post(
        "/api/disbursement/queue",
        json={"recipientAddress": "0xabc", "amountKES": True, "transactionCode": "TX1"},
    )
    assert response.status_code == 400

    response = client.post("/api/disbursement/queue", json=["not", "an", "object"])
    assert response.status_code == 400

    job_id = _enqueue(client)
    response = client.post(
        "/api/disbursement/queue",
        json={"recipientAddress": "0xabc", "amountKES": 1000, "transactionCode": "TX1"},
    )
    assert response.status_code == 409
    assert response.json()["jobId"] == job_id


def test_retry_endpoints(client, repository):
    job_id = _enqueue(client)

    response = client.post("/api/disbursement/retry", json={"jobId": job_id})
    assert response.status_code == 400
    assert "can only retry failed jobs" in response.json()["error"]

    repository.transition_job(job_id, expected=JobStatus.PENDING, target=JobStatus.PROCESSING)
    repository.transition_job(
        job_id,
        expected=JobStatus.PROCESSING,
        target=JobStatus.FAILED,
        set_fields={"failedAt": NOW, "error": "timeout", "retryCount": 1},
    )

    response = client.post("/api/disbursement/retry", json={"jobId": job_id})
    assert response.status_code == 200
    assert response.json() == {
        "success": True,
        "message": "Job queued for retry",
        "jobId": job_id,
        "retryCount": 1,
    }

    assert client.post("/api/disbursement/retry", json={}).status_code == 400
    assert client.post("/api/disbursement/retry", json={"jobId": "job-99999"}).status_code == 404

    response = client.put("/api/disbursement/retry")
    assert response.status_code == 200
    assert response.json()["count"] == 0


def test_reset_stuck_and_clear_completed(client, repository):
    stuck = _enqueue(client, "TX1")
    repository.transition_job(
        stuck,
        expected=JobStatus.PENDING,
        target=JobStatus.PROCESSING,
        set_fields={"processingStartedAt": NOW - timedelta(minutes=6)},
    )
    assert client.get("/api/disbursement/dashboard").json()["stats"]["stuck"] == 1

    response = client.post("/api/disbursement/reset-stuck")
    assert response.json() == {"success": True, "count": 1}
    assert client.get("/api/disbursement/dashboard").json()["stats"]["stuck"] == 0

    response = client.delete("/api/disbursement/completed")
    assert response.json() == {"success": True, "count": 0}


def test_list_jobs_endpoint(client):
    _enqueue(client, "TX1")
    response = client.get("/api/disbursement/jobs", params={"status": "pending"})
    assert response.status_code == 200
    assert len(response.json()["items"]) == 1

    assert client.get("/api/disbursement/jobs", params={"status": "lost"}).status_code == 400
    assert client.get("/api/disbursement/jobs", params={"limit": 0}).status_code == 400


def test_alerts_endpoints(client, repository):
    critical = repository.insert_alert(
        SystemAlert(type="INSUFFICIENT_BALANCE", severity="CRITICAL", message="low balance", timestamp=NOW)
    )
    repository.insert_alert(
        SystemAlert(type="RPC", severity="WARNING", message="rpc slow", timestamp=NOW - timedelta(minutes=1))
    )

    response = client.get("/api/disbursement/alerts", params={"unacknowledged": "true", "limit": 10})
    assert response.status_code == 200
    body = response.json()
    assert [alert["id"] for alert in body["alerts"]][0] == critical
    assert body["stats"] == {"total": 2, "unacknowledged": 2, "critical": 1}

    first = client.post("/api/disbursement/alerts", json={"alertId": critical})
    second = client.post("/api/disbursement/alerts", json={"alertId": critical})
    assert first.json() == {"success": True}
    assert second.json() == {"success": True}

    dashboard = client.get("/api/disbursement/dashboard").json()
    assert dashboard["stats"]["criticalAlerts"] == 0
    assert dashboard["stats"]["unacknowledgedAlerts"] == 1

    response = client.post("/api/disbursement/alerts", json={"acknowledgeAll": True})
    assert response.json() == {"success": True, "acknowledgedCount": 1}
    response = client.post("/api/disbursement/alerts", json={"acknowledgeAll": True})
    assert response.json()["acknowledgedCount"] == 0

    response = client.post("/api/disbursement/alerts", json={"alertId": "alert-404"})
    assert response.status_code == 404
    assert response.json() == {"error": "Alert not found"}

    response = client.post("/api/disbursement/alerts", json={})
    assert response.status_code == 400
    assert response.json() == {"error": "Missing alertId or acknowledgeAll parameter"}

    assert client.get("/api/disbursement/alerts", params={"limit": "many"}).status_code == 400


def test_health_and_root(client):
    response = client.get("/api/disbursement/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy", "store": "memory", "reachable": True}

    response = client.get("/")
    assert response.json()["health"] == "/api/disbursement/health"


def test_store_bound_handlers_run_in_threadpool():
    from minilend.routes import disbursement

    endpoints = [route.endpoint for route in disbursement.router.routes]
    assert endpoints
    assert not any(inspect.iscoroutinefunction(endpoint) for endpoint in endpoints)
