"""Batch job record and its status lifecycle."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from ..library.models import Stage


class JobStatus(str, Enum):
    """Canonical status of a submitted batch job."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    SAVED = "saved"
    FAILED = "failed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


# Jobs still running at the provider; these count against the in-flight ceiling
ACTIVE_STATUSES = frozenset({JobStatus.PENDING, JobStatus.PROCESSING})

# Jobs that block a new submission for the same (book, stage). A completed job
# has results waiting to be collected.
BLOCKING_STATUSES = ACTIVE_STATUSES | {JobStatus.COMPLETED}

# Jobs the synchronizer still has to drain
SCAN_STATUSES = frozenset({JobStatus.PENDING, JobStatus.PROCESSING, JobStatus.COMPLETED})

TERMINAL_STATUSES = frozenset({JobStatus.SAVED, JobStatus.FAILED, JobStatus.EXPIRED, JobStatus.CANCELLED})


@dataclass
class BatchJob:
    """One submission to the batch inference provider."""

    id: str
    remote_name: str
    type: Stage
    book_id: Optional[str]
    page_ids: list[str]
    total_pages: int
    status: JobStatus = JobStatus.PENDING
    book_title: Optional[str] = None
    plan_id: Optional[str] = None
    model: Optional[str] = None
    language: Optional[str] = None
    provider_state: Optional[str] = None
    completed_pages: int = 0
    failed_pages: int = 0
    skipped_page_ids: list[str] = field(default_factory=list)
    error: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def remaining_pages(self) -> int:
        return max(0, self.total_pages - self.completed_pages - self.failed_pages)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "remote_name": self.remote_name,
            "type": self.type.value,
            "book_id": self.book_id,
            "book_title": self.book_title,
            "plan_id": self.plan_id,
            "model": self.model,
            "language": self.language,
            "status": self.status.value,
            "provider_state": self.provider_state,
            "page_ids": list(self.page_ids),
            "total_pages": self.total_pages,
            "completed_pages": self.completed_pages,
            "failed_pages": self.failed_pages,
            "skipped_page_ids": list(self.skipped_page_ids),
            "error": self.error,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


def can_transition(status: JobStatus, action: str) -> tuple[bool, Optional[str]]:
    """Check whether a manual action is allowed for a job in ``status``."""
    if action == "cancel":
        if status in TERMINAL_STATUSES:
            return False, "Job already finished"
        return True, None
    if action == "refresh":
        if status not in SCAN_STATUSES:
            return False, f"Cannot refresh a {status.value} job"
        return True, None
    if action == "complete":
        if status == JobStatus.SAVED:
            return False, "Results already saved"
        if status not in SCAN_STATUSES:
            return False, f"Cannot collect results for a {status.value} job"
        return True, None
    return False, f"Invalid action: {action}"
