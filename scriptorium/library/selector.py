"""Query pages that still need a pipeline stage."""

from typing import Iterable, Optional, Protocol

from .db import LibraryDB
from .models import BookBacklog, Page, Stage


class ActiveJobIndex(Protocol):
    """Answers which books currently have an in-flight job for a stage."""

    def active_book_ids(self, stage: Stage) -> set[str]: ...


class WorkSelector:
    """Read-only view over the page store for outstanding work."""

    def __init__(self, db: LibraryDB, jobs: Optional[ActiveJobIndex] = None):
        self.db = db
        self.jobs = jobs

    def _busy_books(self, stage: Stage) -> set[str]:
        if self.jobs is None:
            return set()
        return self.jobs.active_book_ids(stage)

    def pages_needing(
        self,
        stage: Stage,
        book_id: Optional[str] = None,
        page_ids: Optional[Iterable[str]] = None,
    ) -> list[Page]:
        """Return pages lacking ``stage`` whose prerequisite is satisfied.

        Pages belonging to a book with an active batch job for ``stage`` are
        left out. Results are ordered by book, then page number.
        """
        if page_ids is not None:
            pages = self.db.get_pages(page_ids)
            if book_id is not None:
                pages = [p for p in pages if p.book_id == book_id]
        else:
            pages = self.db.list_pages(book_id)

        busy = self._busy_books(stage)
        return [p for p in pages if p.book_id not in busy and p.needs(stage)]

    def backlog_by_book(self, stage: Stage, book_id: Optional[str] = None) -> dict[str, list[Page]]:
        """Group outstanding pages by book, preserving store order."""
        grouped: dict[str, list[Page]] = {}
        for page in self.pages_needing(stage, book_id=book_id):
            grouped.setdefault(page.book_id, []).append(page)
        return grouped

    def book_backlogs(self, stages: Iterable[Stage] = tuple(Stage)) -> list[BookBacklog]:
        """Outstanding page counts per stage for every book with any work left.

        Active jobs are not filtered here; callers decide per stage.
        """
        stages = list(stages)
        backlogs = []
        for book in self.db.list_books():
            pages = self.db.list_pages(book.id)
            outstanding = {stage: sum(1 for p in pages if p.needs(stage)) for stage in stages}
            if any(outstanding.values()):
                backlogs.append(BookBacklog(book=book, outstanding=outstanding))
        return backlogs
