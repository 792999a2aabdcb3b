"""Tests for the HTTP surface."""

from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from scriptorium.api.app import create_app
from scriptorium.batch.job import BatchJob, JobStatus
from scriptorium.batch.trigger import Orchestrator
from scriptorium.errors import ClientError
from scriptorium.library.models import Stage


@pytest.fixture
def orchestrator(settings, db, store, client, payloads):
    return Orchestrator(settings, db=db, store=store, client=client, payloads=payloads)


@pytest.fixture
def handled():
    return []


@pytest.fixture
def api(settings, orchestrator, handled):
    def handler_factory(stage):
        def handler(page_id, timeout):
            handled.append((stage, page_id))
            if page_id == "bad":
                raise ClientError("Page not found: bad")

        return handler

    app = create_app(settings, orchestrator=orchestrator, handler_factory=handler_factory)
    return TestClient(app)


def _insert_job(store, job_id="job-1", status=JobStatus.PENDING):
    store.insert(
        BatchJob(
            id=job_id,
            remote_name=f"batches/{job_id}",
            type=Stage.OCR,
            book_id="b1",
            page_ids=["b1-p001"],
            total_pages=1,
            status=status,
        )
    )


def test_cron_endpoint_returns_stats(api, make_book):
    """Test the trigger runs a cycle and reports its summary."""
    make_book("b1", 2)

    resp = api.get("/api/cron/process-batches")

    assert resp.status_code == 200
    data = resp.json()
    assert data["stats"]["new_jobs_created"] == 1
    assert set(data["stats"]) == {
        "jobs_checked",
        "jobs_completed",
        "jobs_still_running",
        "pages_saved",
        "new_jobs_created",
    }
    assert "summary" in data and "message" in data["summary"]


def test_cron_endpoint_post_skip_new_work(api, client, make_book):
    make_book("b1", 2)

    resp = api.post("/api/cron/process-batches", params={"skip_new_work": "true"})

    assert resp.status_code == 200
    assert resp.json()["stats"]["new_jobs_created"] == 0
    assert client.uploads == []


def test_cron_endpoint_unexpected_error(api, orchestrator):
    """Test an unexpected failure returns 500 with details."""
    with patch.object(Orchestrator, "run_cycle", side_effect=RuntimeError("database unavailable")):
        resp = api.get("/api/cron/process-batches")

    assert resp.status_code == 500
    assert resp.json() == {"error": "Cron job failed", "details": "database unavailable"}


def test_list_and_get_jobs(api, store):
    _insert_job(store, "job-1")
    _insert_job(store, "job-2")

    listed = api.get("/api/batch-jobs").json()["jobs"]
    assert {j["id"] for j in listed} == {"job-1", "job-2"}

    resp = api.get("/api/batch-jobs/job-1")
    assert resp.status_code == 200
    assert resp.json()["job"]["status"] == "pending"

    assert api.get("/api/batch-jobs/missing").status_code == 404


def test_job_actions(api, store, client):
    """Test refresh and cancel actions and an invalid transition."""
    _insert_job(store, "job-1")
    client.states["batches/job-1"] = "JOB_STATE_RUNNING"

    resp = api.post("/api/batch-jobs/job-1", json={"action": "refresh"})
    assert resp.json()["job"]["status"] == "processing"

    resp = api.post("/api/batch-jobs/job-1", json={"action": "cancel"})
    assert resp.json()["job"]["status"] == "cancelled"

    resp = api.post("/api/batch-jobs/job-1", json={"action": "cancel"})
    assert resp.status_code == 400

    assert api.post("/api/batch-jobs/job-1", json={"action": "explode"}).status_code == 422
    assert api.post("/api/batch-jobs/ghost", json={"action": "refresh"}).status_code == 404


def test_complete_action_saves_results(api, store, client, make_book):
    from scriptorium.batch.provider import ResultItem

    make_book("b1", 1)
    _insert_job(store, "job-1")
    client.states["batches/job-1"] = "JOB_STATE_SUCCEEDED"
    client.results["batches/job-1"] = [ResultItem(key="b1-p001", text="text")]

    resp = api.post("/api/batch-jobs/job-1", json={"action": "complete"})

    assert resp.status_code == 200
    assert resp.json()["job"]["status"] == "saved"
    assert resp.json()["stats"]["pages_saved"] == 1


def test_submit_job(api, store, make_book):
    make_book("b1", 3)

    resp = api.post("/api/batch-jobs", json={"book_id": "b1", "type": "ocr"})

    assert resp.status_code == 200
    assert resp.json()["jobs"][0]["total_pages"] == 3

    again = api.post("/api/batch-jobs", json={"book_id": "b1", "type": "ocr"})
    assert again.status_code == 409


def test_submit_job_unknown_book(api):
    assert api.post("/api/batch-jobs", json={"book_id": "nope"}).status_code == 404


def test_process_endpoint(api, handled):
    """Test interactive processing reports failures by id."""
    resp = api.post("/api/process", json={"page_ids": ["p1", "bad", "p3"], "stage": "translate"})

    assert resp.status_code == 200
    data = resp.json()
    assert data["succeeded"] == 2
    assert data["failed_ids"] == ["bad"]
    assert data["banner"].startswith("Completed with 1 failures")
    assert {stage for stage, _ in handled} == {Stage.TRANSLATE}
