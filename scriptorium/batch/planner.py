"""Turn a backlog of pages into submitted batch jobs."""

import time
import uuid
from dataclasses import dataclass, field
from typing import Callable, Hashable, Iterable, Mapping, Optional, TypeVar

from ..config import Settings
from ..errors import ErrorKind, classify_error
from ..library.db import LibraryDB
from ..library.models import Book, Page, Stage
from ..logger import logger as LOGGER
from .job import BatchJob, JobStatus
from .payload import PayloadBuilder, to_jsonl
from .provider import RemoteJobClient
from .store import JobStateStore


T = TypeVar("T")


def diversify(items: Iterable[T], key: Callable[[T], Hashable]) -> list[T]:
    """Interleave items so no group dominates the front of the list.

    Items are grouped by ``key``; groups are ordered by descending size
    (ties keep first-appearance order) and one item is taken from each
    group per round.
    """
    groups: dict = {}
    for item in items:
        groups.setdefault(key(item), []).append(item)

    ordered = sorted(groups.values(), key=len, reverse=True)
    result = []
    for i in range(max((len(g) for g in ordered), default=0)):
        for group in ordered:
            if i < len(group):
                result.append(group[i])
    return result


def chunk(items: list[T], size: int) -> list[list[T]]:
    """Split into consecutive chunks of ``size``; the last may be shorter."""
    if size < 1:
        raise ValueError("Chunk size must be at least 1")
    return [items[i : i + size] for i in range(0, len(items), size)]


def new_job_id() -> str:
    return f"batch_{int(time.time() * 1000)}_{uuid.uuid4().hex[:6]}"


@dataclass
class ChunkOutcome:
    """Result of one chunk submission attempt."""

    book_id: str
    stage: Stage
    page_ids: list[str]
    job: Optional[BatchJob] = None
    skipped_page_ids: list[str] = field(default_factory=list)
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None

    @property
    def submitted(self) -> bool:
        return self.job is not None


@dataclass
class PlanReport:
    """Everything one planning pass did."""

    stage: Stage
    chunks: list[ChunkOutcome] = field(default_factory=list)
    busy_book_ids: list[str] = field(default_factory=list)

    @property
    def jobs(self) -> list[BatchJob]:
        return [c.job for c in self.chunks if c.job is not None]

    @property
    def skipped_page_ids(self) -> list[str]:
        return [pid for c in self.chunks for pid in c.skipped_page_ids]

    @property
    def errors(self) -> list[str]:
        return [f"{c.book_id}: {c.error}" for c in self.chunks if c.error]


class BatchPlanner:
    """Groups outstanding pages into chunks and submits them as batch jobs."""

    def __init__(
        self,
        settings: Settings,
        db: LibraryDB,
        store: JobStateStore,
        client: RemoteJobClient,
        payloads: Optional[PayloadBuilder] = None,
    ):
        self.settings = settings
        self.db = db
        self.store = store
        self.client = client
        self.payloads = payloads or PayloadBuilder(settings)

    def _language(self, book: Book) -> str:
        return book.language or self.settings.default_language

    def plan(
        self,
        backlogs: Mapping[str, list[Page]],
        stage: Stage,
        max_jobs: Optional[int] = None,
    ) -> PlanReport:
        """Submit jobs for the given per-book backlogs.

        Args:
            backlogs: Outstanding pages keyed by book id
            stage: Stage to request
            max_jobs: Stop after this many jobs have been created

        Returns:
            PlanReport with one ChunkOutcome per attempted chunk
        """
        report = PlanReport(stage=stage)
        books = [b for b in (self.db.get_book(book_id) for book_id in backlogs) if b is not None]

        for book in diversify(books, key=self._language):
            if max_jobs is not None and len(report.jobs) >= max_jobs:
                break

            if self.store.has_active(book.id, stage):
                LOGGER.info(f"Skipping {book.name}: {stage.value} job already in flight")
                report.busy_book_ids.append(book.id)
                continue

            pages = backlogs[book.id]
            neighbours = {p.page_number: p for p in self.db.list_pages(book.id)} if stage is Stage.TRANSLATE else {}
            plan_id = uuid.uuid4().hex

            for pages_chunk in chunk(pages, self.settings.batch_size):
                if max_jobs is not None and len(report.jobs) >= max_jobs:
                    break
                report.chunks.append(self.submit_chunk(book, stage, pages_chunk, plan_id, neighbours))

        LOGGER.info(
            f"Planned {stage.value}: {len(report.jobs)} jobs, "
            f"{len(report.skipped_page_ids)} pages skipped, {len(report.errors)} errors"
        )
        return report

    def submit_chunk(
        self,
        book: Book,
        stage: Stage,
        pages: list[Page],
        plan_id: Optional[str] = None,
        neighbours: Optional[dict[int, Page]] = None,
    ) -> ChunkOutcome:
        """Build, upload and create one remote job. Never raises."""
        outcome = ChunkOutcome(book_id=book.id, stage=stage, page_ids=[p.id for p in pages])
        language = self._language(book)

        try:
            requests, outcome.skipped_page_ids = self.payloads.build_requests(pages, stage, language, neighbours)
        except Exception as e:
            outcome.error = f"Payload construction failed: {e}"
            outcome.error_kind = classify_error(e)
            LOGGER.error(f"{book.name}: {outcome.error}")
            return outcome

        if not requests:
            LOGGER.info(f"{book.name}: no includable pages in chunk, nothing submitted")
            return outcome

        display_name = f"{stage.value}-{book.id[:8]}-{int(time.time() * 1000)}"
        artifact = None
        try:
            artifact = self.client.upload(to_jsonl(requests), f"{display_name}.jsonl")
            reference = self.client.create_job(artifact, display_name, self.settings.batch_model)
            job = BatchJob(
                id=new_job_id(),
                remote_name=reference,
                type=stage,
                book_id=book.id,
                book_title=book.name,
                plan_id=plan_id,
                model=self.settings.batch_model,
                language=language,
                status=JobStatus.PENDING,
                page_ids=[r["key"] for r in requests],
                total_pages=len(requests),
                skipped_page_ids=list(outcome.skipped_page_ids),
            )
            outcome.job = self.store.insert(job)
            LOGGER.info(f"Submitted {stage.value} job {job.id} for {book.name}: {job.total_pages} pages")
        except Exception as e:
            outcome.error = str(e)
            outcome.error_kind = classify_error(e)
            LOGGER.error(f"Failed to submit {stage.value} chunk for {book.name}: {e}")
        finally:
            if artifact:
                try:
                    self.client.delete_temp(artifact)
                except Exception as e:
                    LOGGER.warning(f"Could not delete uploaded file {artifact}: {e}")

        return outcome

    def submit_book(self, book_id: str, stage: Stage, page_ids: Optional[list[str]] = None) -> PlanReport:
        """Submit every outstanding page of one book for ``stage``."""
        pages = [p for p in (self.db.get_pages(page_ids) if page_ids else self.db.list_pages(book_id))
                 if p.book_id == book_id and p.needs(stage)]
        return self.plan({book_id: pages} if pages else {}, stage)
