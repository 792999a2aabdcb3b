"""Tests for BatchJob records and JobStateStore."""

import pytest

from scriptorium.batch.job import BatchJob, JobStatus, can_transition
from scriptorium.errors import JobNotFoundError
from scriptorium.library.models import Stage


def _job(job_id, book_id="b1", stage=Stage.OCR, status=JobStatus.PENDING, pages=3):
    return BatchJob(
        id=job_id,
        remote_name=f"batches/{job_id}",
        type=stage,
        book_id=book_id,
        book_title="A Book",
        page_ids=[f"{book_id}-p{i}" for i in range(pages)],
        total_pages=pages,
        status=status,
    )


def test_insert_and_get(store):
    """Test a job round-trips through the store."""
    job = _job("j1")
    job.skipped_page_ids = ["b1-p9"]
    store.insert(job)

    loaded = store.get("j1")
    assert loaded.type is Stage.OCR
    assert loaded.status is JobStatus.PENDING
    assert loaded.page_ids == ["b1-p0", "b1-p1", "b1-p2"]
    assert loaded.skipped_page_ids == ["b1-p9"]
    assert loaded.created_at is not None


def test_update_persists_counters(store):
    store.insert(_job("j1"))
    job = store.get("j1")
    job.status = JobStatus.SAVED
    job.completed_pages = 2
    job.failed_pages = 1
    store.update(job)

    loaded = store.get("j1")
    assert loaded.status is JobStatus.SAVED
    assert (loaded.completed_pages, loaded.failed_pages) == (2, 1)
    assert loaded.remaining_pages == 0


def test_update_unknown_job(store):
    with pytest.raises(JobNotFoundError):
        store.update(_job("ghost"))


def test_require_unknown_job(store):
    with pytest.raises(JobNotFoundError):
        store.require("ghost")


def test_active_queries(store):
    """Test the ceiling counts running jobs while completed ones still block resubmission."""
    store.insert(_job("j1", "b1", Stage.OCR, JobStatus.PENDING))
    store.insert(_job("j2", "b2", Stage.OCR, JobStatus.PROCESSING))
    store.insert(_job("j3", "b3", Stage.OCR, JobStatus.COMPLETED))
    store.insert(_job("j4", "b4", Stage.TRANSLATE, JobStatus.PENDING))
    store.insert(_job("j5", "b5", Stage.OCR, JobStatus.SAVED))

    assert store.count_active() == 3
    assert store.active_book_ids(Stage.OCR) == {"b1", "b2", "b3"}
    assert store.has_active("b4", Stage.TRANSLATE)
    assert not store.has_active("b4", Stage.OCR)
    assert [j.id for j in store.list_by_status([JobStatus.COMPLETED])] == ["j3"]


def test_list_recent_newest_first(store):
    for i in range(3):
        store.insert(_job(f"j{i}", book_id="b1" if i < 2 else "b2"))

    assert [j.id for j in store.list_recent(limit=2)] == ["j2", "j1"]
    assert [j.id for j in store.list_recent(book_id="b1")] == ["j1", "j0"]


@pytest.mark.parametrize(
    "status,action,allowed",
    [
        (JobStatus.PENDING, "cancel", True),
        (JobStatus.PROCESSING, "cancel", True),
        (JobStatus.SAVED, "cancel", False),
        (JobStatus.CANCELLED, "cancel", False),
        (JobStatus.PROCESSING, "refresh", True),
        (JobStatus.EXPIRED, "refresh", False),
        (JobStatus.COMPLETED, "complete", True),
        (JobStatus.SAVED, "complete", False),
        (JobStatus.PENDING, "explode", False),
    ],
)
def test_can_transition(status, action, allowed):
    ok, reason = can_transition(status, action)
    assert ok is allowed
    assert (reason is None) is allowed
