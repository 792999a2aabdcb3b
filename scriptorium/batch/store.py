"""Persistent record of submitted batch jobs."""

import json
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Iterable, Optional

from ..errors import JobNotFoundError
from ..library.db import connect
from ..library.models import Stage
from .job import ACTIVE_STATUSES, BLOCKING_STATUSES, BatchJob, JobStatus


class JobStateStore:
    """SQLite-backed store of BatchJob records.

    Jobs are append-only: rows are inserted and updated, never deleted.
    """

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self.conn = connect(self.db_path)
        self._lock = threading.RLock()
        self._create_schema()

    def _create_schema(self):
        with self._lock:
            cursor = self.conn.cursor()

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS batch_jobs (
                    id TEXT PRIMARY KEY,
                    remote_name TEXT NOT NULL,
                    type TEXT NOT NULL,
                    book_id TEXT,
                    book_title TEXT,
                    plan_id TEXT,
                    model TEXT,
                    language TEXT,
                    status TEXT NOT NULL,
                    provider_state TEXT,
                    page_ids TEXT NOT NULL,
                    total_pages INTEGER NOT NULL,
                    completed_pages INTEGER NOT NULL DEFAULT 0,
                    failed_pages INTEGER NOT NULL DEFAULT 0,
                    skipped_page_ids TEXT,
                    error TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    completed_at TEXT
                )
            """)

            cursor.execute("CREATE INDEX IF NOT EXISTS idx_batch_jobs_status ON batch_jobs (status)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_batch_jobs_book ON batch_jobs (book_id, type)")

            self.conn.commit()

    def insert(self, job: BatchJob) -> BatchJob:
        """Record a newly submitted job."""
        now = datetime.utcnow()
        job.created_at = job.created_at or now
        job.updated_at = now
        with self._lock:
            self.conn.execute(
                """
                INSERT INTO batch_jobs
                (id, remote_name, type, book_id, book_title, plan_id, model, language, status,
                 provider_state, page_ids, total_pages, completed_pages, failed_pages,
                 skipped_page_ids, error, created_at, updated_at, completed_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
                _job_values(job),
            )
            self.conn.commit()
        return job

    def update(self, job: BatchJob) -> BatchJob:
        """Persist the mutable fields of an existing job.

        Raises:
            JobNotFoundError: If the job was never inserted
        """
        job.updated_at = datetime.utcnow()
        with self._lock:
            cursor = self.conn.execute(
                """
                UPDATE batch_jobs SET
                    status = ?, provider_state = ?, completed_pages = ?, failed_pages = ?,
                    skipped_page_ids = ?, error = ?, updated_at = ?, completed_at = ?
                WHERE id = ?
            """,
                (
                    job.status.value,
                    job.provider_state,
                    job.completed_pages,
                    job.failed_pages,
                    json.dumps(job.skipped_page_ids),
                    job.error,
                    job.updated_at.isoformat(),
                    job.completed_at.isoformat() if job.completed_at else None,
                    job.id,
                ),
            )
            self.conn.commit()
        if cursor.rowcount == 0:
            raise JobNotFoundError(f"Batch job not found: {job.id}")
        return job

    def get(self, job_id: str) -> Optional[BatchJob]:
        with self._lock:
            row = self.conn.execute("SELECT * FROM batch_jobs WHERE id = ?", (job_id,)).fetchone()
        return _row_to_job(row) if row else None

    def require(self, job_id: str) -> BatchJob:
        job = self.get(job_id)
        if job is None:
            raise JobNotFoundError(f"Batch job not found: {job_id}")
        return job

    def list_by_status(self, statuses: Iterable[JobStatus]) -> list[BatchJob]:
        """Jobs in any of ``statuses``, oldest first."""
        values = [JobStatus(s).value for s in statuses]
        if not values:
            return []
        placeholders = ",".join("?" for _ in values)
        with self._lock:
            rows = self.conn.execute(
                f"SELECT * FROM batch_jobs WHERE status IN ({placeholders}) ORDER BY created_at, id",
                values,
            ).fetchall()
        return [_row_to_job(row) for row in rows]

    def list_recent(self, limit: int = 50, book_id: Optional[str] = None) -> list[BatchJob]:
        """Most recently created jobs first."""
        with self._lock:
            if book_id is None:
                rows = self.conn.execute(
                    "SELECT * FROM batch_jobs ORDER BY created_at DESC, id DESC LIMIT ?", (limit,)
                ).fetchall()
            else:
                rows = self.conn.execute(
                    "SELECT * FROM batch_jobs WHERE book_id = ? ORDER BY created_at DESC, id DESC LIMIT ?",
                    (book_id, limit),
                ).fetchall()
        return [_row_to_job(row) for row in rows]

    def count_active(self) -> int:
        """Number of in-flight jobs across all books and stages."""
        values = [s.value for s in ACTIVE_STATUSES]
        placeholders = ",".join("?" for _ in values)
        with self._lock:
            row = self.conn.execute(
                f"SELECT COUNT(*) FROM batch_jobs WHERE status IN ({placeholders})", values
            ).fetchone()
        return row[0]

    def active_book_ids(self, stage: Stage) -> set[str]:
        """Books with a job for ``stage`` that blocks a new submission."""
        values = [s.value for s in BLOCKING_STATUSES]
        placeholders = ",".join("?" for _ in values)
        with self._lock:
            rows = self.conn.execute(
                f"SELECT DISTINCT book_id FROM batch_jobs WHERE type = ? AND status IN ({placeholders})",
                [stage.value, *values],
            ).fetchall()
        return {row[0] for row in rows if row[0]}

    def has_active(self, book_id: str, stage: Stage) -> bool:
        return book_id in self.active_book_ids(stage)

    def close(self):
        self.conn.close()


def _job_values(job: BatchJob) -> tuple:
    return (
        job.id,
        job.remote_name,
        job.type.value,
        job.book_id,
        job.book_title,
        job.plan_id,
        job.model,
        job.language,
        job.status.value,
        job.provider_state,
        json.dumps(job.page_ids),
        job.total_pages,
        job.completed_pages,
        job.failed_pages,
        json.dumps(job.skipped_page_ids),
        job.error,
        job.created_at.isoformat(),
        job.updated_at.isoformat(),
        job.completed_at.isoformat() if job.completed_at else None,
    )


def _row_to_job(row: sqlite3.Row) -> BatchJob:
    return BatchJob(
        id=row["id"],
        remote_name=row["remote_name"],
        type=Stage(row["type"]),
        book_id=row["book_id"],
        book_title=row["book_title"],
        plan_id=row["plan_id"],
        model=row["model"],
        language=row["language"],
        status=JobStatus(row["status"]),
        provider_state=row["provider_state"],
        page_ids=json.loads(row["page_ids"]),
        total_pages=row["total_pages"],
        completed_pages=row["completed_pages"],
        failed_pages=row["failed_pages"],
        skipped_page_ids=json.loads(row["skipped_page_ids"] or "[]"),
        error=row["error"],
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
        completed_at=datetime.fromisoformat(row["completed_at"]) if row["completed_at"] else None,
    )
