"""Wire components together and run one processing cycle."""

import time
from functools import cached_property
from typing import Optional

from ..config import Settings
from ..library.db import LibraryDB
from ..library.selector import WorkSelector
from ..logger import logger as LOGGER
from .gemini import GeminiBatchClient
from .payload import PayloadBuilder
from .planner import BatchPlanner
from .provider import RemoteJobClient
from .queuer import WorkQueuer
from .store import JobStateStore
from .synchronizer import Synchronizer


class Orchestrator:
    """Holds the stores and lazily-built batch components for one process.

    The remote client is only constructed when first needed, so read-only
    operations work without provider credentials.
    """

    def __init__(
        self,
        settings: Settings,
        db: Optional[LibraryDB] = None,
        store: Optional[JobStateStore] = None,
        client: Optional[RemoteJobClient] = None,
        payloads: Optional[PayloadBuilder] = None,
    ):
        self.settings = settings
        self.db = db or LibraryDB(settings.db_path)
        self.store = store or JobStateStore(settings.db_path)
        self._client = client
        self._payloads = payloads

    @property
    def client(self) -> RemoteJobClient:
        if self._client is None:
            self._client = GeminiBatchClient(self.settings)
        return self._client

    @cached_property
    def selector(self) -> WorkSelector:
        return WorkSelector(self.db, self.store)

    @cached_property
    def planner(self) -> BatchPlanner:
        return BatchPlanner(self.settings, self.db, self.store, self.client, self._payloads)

    @cached_property
    def synchronizer(self) -> Synchronizer:
        return Synchronizer(self.db, self.store, self.client)

    @cached_property
    def queuer(self) -> WorkQueuer:
        return WorkQueuer(self.settings, self.selector, self.planner, self.store)

    def run_cycle(self, skip_new_work: bool = False, max_new_jobs: Optional[int] = None) -> dict:
        """Synchronize in-flight jobs, then queue new work unless skipped."""
        return run_cycle(self, skip_new_work=skip_new_work, max_new_jobs=max_new_jobs)

    def close(self):
        self.db.close()
        self.store.close()


def run_cycle(orchestrator: Orchestrator, skip_new_work: bool = False, max_new_jobs: Optional[int] = None) -> dict:
    """Run Synchronizer then WorkQueuer and summarise both.

    Returns:
        Dict with ``stats``, ``collected``, ``queued``, ``errors``,
        ``duration_ms`` and ``summary.message``
    """
    start = time.monotonic()

    LOGGER.info("Cycle phase 1: collecting finished batch jobs")
    sync = orchestrator.synchronizer.synchronize()

    queued = []
    errors = list(sync.errors)
    new_jobs = 0
    if skip_new_work:
        LOGGER.info("Cycle phase 2 skipped: new work disabled for this run")
    else:
        LOGGER.info("Cycle phase 2: queuing new work")
        queue = orchestrator.queuer.queue(max_new_jobs=max_new_jobs)
        new_jobs = len(queue.jobs)
        errors.extend(queue.errors)
        queued = [
            {
                "job_id": job.id,
                "book_id": job.book_id,
                "book_title": job.book_title,
                "type": job.type.value,
                "pages": job.total_pages,
            }
            for job in queue.jobs
        ]

    stats = {
        "jobs_checked": sync.jobs_checked,
        "jobs_completed": sync.jobs_completed,
        "jobs_still_running": sync.jobs_still_running,
        "pages_saved": sync.pages_saved,
        "new_jobs_created": new_jobs,
    }
    message = (
        f"Collected {stats['pages_saved']} pages from {stats['jobs_completed']} jobs. "
        f"{stats['jobs_still_running']} jobs still running. Created {stats['new_jobs_created']} new jobs."
    )
    LOGGER.info(message)

    return {
        "success": True,
        "duration_ms": int((time.monotonic() - start) * 1000),
        "stats": stats,
        "collected": sync.collected,
        "queued": queued,
        "errors": errors,
        "summary": {"message": message},
    }
