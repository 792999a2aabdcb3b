"""Drain in-flight batch jobs and apply their results to pages."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from ..errors import ErrorKind, InvalidTransitionError, ItemOutcome, TransientError, classify_error
from ..library.db import LibraryDB
from ..library.models import StageResult
from ..logger import logger as LOGGER
from .job import SCAN_STATUSES, BatchJob, JobStatus, can_transition
from .provider import PollResult, RemoteJobClient, ResultLocation
from .store import JobStateStore


MAX_ERROR_LENGTH = 500


@dataclass
class SyncReport:
    """Counters and per-job notes from one synchronization pass."""

    jobs_checked: int = 0
    jobs_completed: int = 0
    jobs_still_running: int = 0
    jobs_failed: int = 0
    jobs_expired: int = 0
    jobs_cancelled: int = 0
    pages_saved: int = 0
    pages_failed: int = 0
    collected: list[dict] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    # Typed problems keyed by job id, or by page id for page write failures
    issues: list[ItemOutcome] = field(default_factory=list)

    def note(self, item_id: str, kind: ErrorKind, error: str) -> None:
        self.issues.append(ItemOutcome(item_id, False, error=error, error_kind=kind))

    def to_dict(self) -> dict:
        return {
            "jobs_checked": self.jobs_checked,
            "jobs_completed": self.jobs_completed,
            "jobs_still_running": self.jobs_still_running,
            "jobs_failed": self.jobs_failed,
            "jobs_expired": self.jobs_expired,
            "jobs_cancelled": self.jobs_cancelled,
            "pages_saved": self.pages_saved,
            "pages_failed": self.pages_failed,
            "issues": [{"id": o.item_id, "kind": o.error_kind.value, "error": o.error} for o in self.issues],
        }


class Synchronizer:
    """Polls each in-flight job once and settles the ones that finished."""

    def __init__(self, db: LibraryDB, store: JobStateStore, client: RemoteJobClient):
        self.db = db
        self.store = store
        self.client = client

    def synchronize(self) -> SyncReport:
        """Check every job in the scan set, one at a time.

        A failure on one job is recorded and leaves that job as it was; the
        pass carries on with the next job.
        """
        report = SyncReport()
        jobs = self.store.list_by_status(SCAN_STATUSES)
        LOGGER.info(f"Synchronizing {len(jobs)} batch jobs")

        for job in jobs:
            report.jobs_checked += 1
            try:
                self._sync_job(job, report)
            except Exception as e:
                LOGGER.error(f"Error syncing job {job.id} ({job.remote_name}): {e}")
                report.errors.append(f"{job.id}: {e}")
                report.note(job.id, classify_error(e), str(e))

        LOGGER.info(
            f"Sync done: {report.jobs_completed} saved, {report.jobs_still_running} running, "
            f"{report.pages_saved} pages saved, {len(report.errors)} errors"
        )
        return report

    def _sync_job(self, job: BatchJob, report: SyncReport) -> None:
        poll = self.client.poll(job.remote_name)
        job.provider_state = poll.state

        if poll.status is JobStatus.SAVED:
            self._reconcile(job, poll.location, report)
        elif poll.status is JobStatus.PROCESSING:
            if job.status is JobStatus.PENDING:
                job.status = JobStatus.PROCESSING
            self.store.update(job)
            report.jobs_still_running += 1
        else:
            self._close(job, poll)
            if job.status is JobStatus.FAILED:
                report.jobs_failed += 1
            elif job.status is JobStatus.EXPIRED:
                report.jobs_expired += 1
                report.note(job.id, ErrorKind.EXPIRED, job.error)
            elif job.status is JobStatus.CANCELLED:
                report.jobs_cancelled += 1

    def _close(self, job: BatchJob, poll: PollResult) -> None:
        """Apply a terminal non-success provider state."""
        job.status = poll.status
        if poll.status is JobStatus.FAILED:
            job.error = (poll.error or f"Batch job failed ({poll.state})")[:MAX_ERROR_LENGTH]
            job.failed_pages = job.total_pages - job.completed_pages
            job.completed_at = datetime.utcnow()
        elif poll.status is JobStatus.EXPIRED:
            job.error = "Job no longer available from provider"
        self.store.update(job)
        LOGGER.warning(f"Job {job.id} ended as {job.status.value} (provider state {poll.state})")

    def _reconcile(self, job: BatchJob, location: Optional[ResultLocation], report: SyncReport) -> None:
        """Write a succeeded job's results onto its pages and mark it saved."""
        if job.status is JobStatus.SAVED:
            return
        if location is None or location.is_empty:
            raise TransientError(f"Job {job.remote_name} succeeded but reported no results")

        items = self.client.fetch_results(location)

        requested = set(job.page_ids)
        seen = set()
        completed = failed = 0
        now = datetime.utcnow()

        for item in items:
            if item.key not in requested or item.key in seen:
                continue
            seen.add(item.key)

            if not item.ok:
                LOGGER.debug(f"Job {job.id} page {item.key} failed: {item.error}")
                failed += 1
                continue

            result = StageResult(
                text=item.text,
                model=job.model,
                source="batch",
                language=job.language,
                batch_job_id=job.id,
                input_tokens=item.input_tokens,
                output_tokens=item.output_tokens,
                created_at=now,
                updated_at=now,
            )
            try:
                self.db.set_stage_result(item.key, job.type, result)
                completed += 1
            except Exception as e:
                LOGGER.error(f"Failed to save {job.type.value} for page {item.key}: {e}")
                report.note(item.key, ErrorKind.RECONCILE, str(e))
                failed += 1

        missing = len(requested - seen)
        if missing:
            LOGGER.warning(f"Job {job.id}: {missing} requested pages returned no result")

        job.completed_pages = completed
        job.failed_pages = failed + missing
        job.status = JobStatus.SAVED
        job.completed_at = now
        self.store.update(job)

        if job.book_id:
            self.db.update_book_counts(job.book_id)

        report.jobs_completed += 1
        report.pages_saved += completed
        report.pages_failed += job.failed_pages
        if job.failed_pages:
            report.note(job.id, ErrorKind.PARTIAL, f"{job.failed_pages} of {job.total_pages} pages failed")
        report.collected.append(
            {
                "job_id": job.id,
                "book_id": job.book_id,
                "book_title": job.book_title,
                "type": job.type.value,
                "completed": completed,
                "failed": job.failed_pages,
            }
        )
        LOGGER.info(f"Saved job {job.id} ({job.book_title}): {completed} pages, {job.failed_pages} failed")

    # -- manual actions --------------------------------------------------

    def _check(self, job: BatchJob, action: str) -> None:
        allowed, reason = can_transition(job.status, action)
        if not allowed:
            raise InvalidTransitionError(reason)

    def refresh_job(self, job_id: str) -> BatchJob:
        """Poll one job and record its state without applying results.

        A succeeded job is marked ``completed`` so the next pass collects it.
        """
        job = self.store.require(job_id)
        self._check(job, "refresh")

        poll = self.client.poll(job.remote_name)
        job.provider_state = poll.state
        if poll.status is JobStatus.SAVED:
            job.status = JobStatus.COMPLETED
            self.store.update(job)
        elif poll.status is JobStatus.PROCESSING:
            if job.status is JobStatus.PENDING:
                job.status = JobStatus.PROCESSING
            self.store.update(job)
        else:
            self._close(job, poll)
        return job

    def reconcile_job(self, job_id: str) -> SyncReport:
        """Synchronize a single job immediately."""
        job = self.store.require(job_id)
        self._check(job, "complete")

        report = SyncReport(jobs_checked=1)
        self._sync_job(job, report)
        return report

    def cancel_job(self, job_id: str) -> BatchJob:
        """Cancel the remote job and mark the record cancelled."""
        job = self.store.require(job_id)
        self._check(job, "cancel")

        self.client.cancel(job.remote_name)
        job.status = JobStatus.CANCELLED
        job.completed_at = datetime.utcnow()
        self.store.update(job)
        LOGGER.info(f"Cancelled job {job.id}")
        return job
