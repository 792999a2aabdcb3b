"""Tests for BatchPlanner."""

import json

from scriptorium.batch.job import BatchJob, JobStatus
from scriptorium.batch.planner import BatchPlanner, chunk, diversify
from scriptorium.errors import ErrorKind, TransientError
from scriptorium.library.models import Book, Stage
from scriptorium.library.selector import WorkSelector


def _no_adjacent_repeats_while_others_remain(picks, key):
    remaining = {}
    for item in picks:
        remaining[key(item)] = remaining.get(key(item), 0) + 1
    previous = None
    for item in picks:
        group = key(item)
        if group == previous:
            others = [g for g, n in remaining.items() if g != group and n > 0]
            if others:
                return False
        remaining[group] -= 1
        previous = group
    return True


def test_diversify_round_robin_by_group():
    """Test groups are interleaved largest first."""
    books = [Book(id=f"l{i}", title="", language="Latin") for i in range(3)]
    books += [Book(id=f"g{i}", title="", language="German") for i in range(2)]
    books += [Book(id="f0", title="", language="French")]

    order = [b.id for b in diversify(books, key=lambda b: b.language)]

    assert order == ["l0", "g0", "f0", "l1", "g1", "l2"]
    assert _no_adjacent_repeats_while_others_remain(diversify(books, lambda b: b.language), lambda b: b.language)


def test_diversify_ties_keep_first_appearance():
    items = ["a1", "b1", "a2", "b2"]
    assert diversify(items, key=lambda s: s[0]) == ["a1", "b1", "a2", "b2"]


def test_diversify_single_group_and_empty():
    assert diversify([], key=len) == []
    assert diversify(["x", "y"], key=lambda s: "same") == ["x", "y"]


def test_chunk_keeps_partial_tail():
    chunks = chunk(list(range(27)), 25)
    assert [len(c) for c in chunks] == [25, 2]
    assert chunk([], 25) == []


def _planner(settings, db, store, client, payloads):
    return BatchPlanner(settings, db, store, client, payloads)


def test_plan_27_pages_creates_two_jobs(settings, db, store, client, payloads, make_book):
    """Test a 27-page backlog with batch size 25 becomes jobs of 25 and 2."""
    make_book("b1", 27)
    backlog = WorkSelector(db, store).backlog_by_book(Stage.OCR)

    report = _planner(settings, db, store, client, payloads).plan(backlog, Stage.OCR)

    assert [j.total_pages for j in report.jobs] == [25, 2]
    assert all(j.status is JobStatus.PENDING for j in report.jobs)
    assert len({j.plan_id for j in report.jobs}) == 1
    assert report.errors == []
    # Every page appears in exactly one job
    page_ids = [pid for j in report.jobs for pid in j.page_ids]
    assert sorted(page_ids) == sorted(p.id for p in db.list_pages("b1"))
    # Uploaded artifacts are cleaned up
    assert client.deleted == [u["name"] for u in client.uploads]
    assert store.count_active() == 2


def test_plan_counts_only_included_requests(settings, db, store, client, make_book):
    """Test pages whose image cannot be fetched are skipped, not failed."""
    from scriptorium.batch.payload import PayloadBuilder
    from scriptorium.library.images import ImageFetchError

    make_book("b1", 4)

    def loader(url):
        if url.endswith("/2.jpg"):
            raise ImageFetchError("gone")
        return "aW1n"

    planner = BatchPlanner(settings, db, store, client, PayloadBuilder(settings, image_loader=loader))
    report = planner.plan(WorkSelector(db, store).backlog_by_book(Stage.OCR), Stage.OCR)

    job = report.jobs[0]
    assert job.total_pages == 3
    assert job.skipped_page_ids == ["b1-p002"]
    assert "b1-p002" not in job.page_ids
    assert job.failed_pages == 0
    uploaded_keys = [json.loads(line)["key"] for line in client.uploads[0]["jsonl"].strip().split("\n")]
    assert uploaded_keys == job.page_ids


def test_chunk_with_nothing_includable_submits_nothing(settings, db, store, client, payloads, make_book):
    make_book("b1", 2, photo=False)

    report = _planner(settings, db, store, client, payloads).plan(
        WorkSelector(db, store).backlog_by_book(Stage.OCR), Stage.OCR
    )

    assert report.jobs == []
    assert report.skipped_page_ids == ["b1-p001", "b1-p002"]
    assert client.uploads == []
    assert store.count_active() == 0


def test_chunk_failure_is_isolated(settings, db, store, client, payloads, make_book):
    """Test a failing chunk is recorded and the next book is still planned."""
    make_book("b1", 2, language="Latin")
    make_book("b2", 2, language="German")
    backlog = WorkSelector(db, store).backlog_by_book(Stage.OCR)

    calls = {"n": 0}
    original_create = client.create_job

    def flaky_create(artifact, display_name, model=None):
        calls["n"] += 1
        if calls["n"] == 1:
            raise TransientError("provider unavailable")
        return original_create(artifact, display_name, model)

    client.create_job = flaky_create
    report = _planner(settings, db, store, client, payloads).plan(backlog, Stage.OCR)

    assert len(report.jobs) == 1
    assert len(report.errors) == 1
    failed = [c for c in report.chunks if c.error][0]
    assert failed.error_kind is ErrorKind.TRANSIENT
    # Both uploads were cleaned up, including the one whose job creation failed
    assert len(client.deleted) == 2


def test_cleanup_failure_is_swallowed(settings, db, store, client, payloads, make_book):
    make_book("b1", 1)
    client.delete_error = RuntimeError("delete failed")

    report = _planner(settings, db, store, client, payloads).plan(
        WorkSelector(db, store).backlog_by_book(Stage.OCR), Stage.OCR
    )

    assert len(report.jobs) == 1
    assert report.errors == []


def test_book_with_active_job_is_skipped(settings, db, store, client, payloads, make_book):
    """Test the planner re-checks the active set before submitting."""
    make_book("b1", 3)
    backlog = WorkSelector(db, store).backlog_by_book(Stage.OCR)
    store.insert(
        BatchJob(id="existing", remote_name="batches/x", type=Stage.OCR, book_id="b1", page_ids=[], total_pages=0)
    )

    report = _planner(settings, db, store, client, payloads).plan(backlog, Stage.OCR)

    assert report.jobs == []
    assert report.busy_book_ids == ["b1"]
    assert client.uploads == []


def test_max_jobs_limits_submissions(settings, db, store, client, payloads, make_book):
    for i in range(4):
        make_book(f"b{i}", 2)

    report = _planner(settings, db, store, client, payloads).plan(
        WorkSelector(db, store).backlog_by_book(Stage.OCR), Stage.OCR, max_jobs=2
    )

    assert len(report.jobs) == 2


def test_submit_book(settings, db, store, client, payloads, make_book):
    make_book("b1", 3, ocr=True)

    report = _planner(settings, db, store, client, payloads).submit_book("b1", Stage.TRANSLATE)

    job = report.jobs[0]
    assert job.type is Stage.TRANSLATE
    assert job.total_pages == 3
    assert job.language == "Latin"
    assert job.book_title == "Title of b1"
