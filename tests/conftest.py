"""Shared fixtures and fakes for scriptorium tests."""

import tempfile
from pathlib import Path
from typing import Optional

import pytest

from scriptorium.batch.job import JobStatus
from scriptorium.batch.payload import PayloadBuilder
from scriptorium.batch.provider import PollResult, ResultItem, ResultLocation, translate_state
from scriptorium.batch.store import JobStateStore
from scriptorium.config import Settings
from scriptorium.library.db import LibraryDB
from scriptorium.library.models import Book, Page, StageResult


class FakeRemoteClient:
    """In-memory RemoteJobClient.

    Poll answers come from ``states`` (reference -> raw provider state) and
    results from ``results`` (reference -> list of ResultItem).
    """

    def __init__(self):
        self.uploads = []
        self.created = []
        self.deleted = []
        self.cancelled = []
        self.states = {}
        self.results = {}
        self.inline = set()
        self.poll_errors = {}
        self.upload_error: Optional[Exception] = None
        self.create_error: Optional[Exception] = None
        self.delete_error: Optional[Exception] = None
        self._counter = 0

    def upload(self, jsonl: str, display_name: str) -> str:
        if self.upload_error:
            raise self.upload_error
        self._counter += 1
        name = f"files/upload-{self._counter}"
        self.uploads.append({"name": name, "jsonl": jsonl, "display_name": display_name})
        return name

    def create_job(self, artifact: str, display_name: str, model: Optional[str] = None) -> str:
        if self.create_error:
            raise self.create_error
        reference = f"batches/job-{len(self.created) + 1}"
        self.created.append({"reference": reference, "artifact": artifact, "model": model})
        self.states[reference] = "JOB_STATE_PENDING"
        return reference

    def poll(self, reference: str) -> PollResult:
        if reference in self.poll_errors:
            raise self.poll_errors[reference]
        state = self.states.get(reference, "NOT_FOUND")
        status = translate_state(state)
        location = None
        if status is JobStatus.SAVED and reference in self.results:
            if reference in self.inline:
                location = ResultLocation(inline=[{"ref": reference}])
            else:
                location = ResultLocation(file_name=f"files/results-{reference.split('/')[-1]}")
        error = "quota exceeded" if status is JobStatus.FAILED else None
        return PollResult(state=state, status=status, location=location, error=error)

    def fetch_results(self, location: ResultLocation) -> list[ResultItem]:
        if location.inline is not None:
            reference = location.inline[0]["ref"]
        else:
            reference = "batches/" + location.file_name.split("results-")[-1]
        return list(self.results[reference])

    def delete_temp(self, artifact: str) -> None:
        self.deleted.append(artifact)
        if self.delete_error:
            raise self.delete_error

    def cancel(self, reference: str) -> None:
        self.cancelled.append(reference)
        self.states[reference] = "JOB_STATE_CANCELLED"

    def list_jobs(self, page_size: int = 100) -> list[dict]:
        names = [c["reference"] for c in reversed(self.created)][:page_size]
        return [{"name": name, "metadata": {"state": self.states.get(name)}} for name in names]


@pytest.fixture
def temp_dir():
    """Create temporary working directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def settings(temp_dir):
    return Settings(db_path=temp_dir / "library.db", gemini_api_key="test-key")


@pytest.fixture
def db(settings):
    library = LibraryDB(settings.db_path)
    yield library
    library.close()


@pytest.fixture
def store(settings):
    jobs = JobStateStore(settings.db_path)
    yield jobs
    jobs.close()


@pytest.fixture
def client():
    return FakeRemoteClient()


@pytest.fixture
def payloads(settings):
    """PayloadBuilder that never touches the network."""
    return PayloadBuilder(settings, image_loader=lambda url: "aW1hZ2U=")


def add_book(
    db: LibraryDB,
    book_id: str,
    pages: int,
    language: str = "Latin",
    ocr: bool = False,
    translated: bool = False,
    photo: bool = True,
) -> Book:
    """Insert a book with ``pages`` pages numbered from 1."""
    book = Book(id=book_id, title=f"Title of {book_id}", language=language)
    db.upsert_book(book)
    for n in range(1, pages + 1):
        db.upsert_page(
            Page(
                id=f"{book_id}-p{n:03d}",
                book_id=book_id,
                page_number=n,
                photo=f"https://images.example/{book_id}/{n}.jpg" if photo else None,
                ocr=StageResult(text=f"ocr text {n}") if ocr or translated else None,
                translation=StageResult(text=f"translation {n}") if translated else None,
            )
        )
    db.update_book_counts(book_id)
    return db.get_book(book_id)


@pytest.fixture
def make_book(db):
    def _make(book_id: str, pages: int, **kwargs) -> Book:
        return add_book(db, book_id, pages, **kwargs)

    return _make
