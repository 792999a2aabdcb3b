"""Contract for the remote batch inference provider."""

import json
from dataclasses import dataclass
from typing import Any, Iterable, Optional, Protocol

from ..logger import logger as LOGGER
from .job import JobStatus


# Raw state reported when the provider no longer knows the job (HTTP 404).
NOT_FOUND = "NOT_FOUND"

PROVIDER_STATE_MAP = {
    "JOB_STATE_PENDING": JobStatus.PROCESSING,
    "JOB_STATE_QUEUED": JobStatus.PROCESSING,
    "JOB_STATE_RUNNING": JobStatus.PROCESSING,
    "BATCH_STATE_PENDING": JobStatus.PROCESSING,
    "BATCH_STATE_RUNNING": JobStatus.PROCESSING,
    "PENDING": JobStatus.PROCESSING,
    "QUEUED": JobStatus.PROCESSING,
    "RUNNING": JobStatus.PROCESSING,
    "JOB_STATE_SUCCEEDED": JobStatus.SAVED,
    "BATCH_STATE_SUCCEEDED": JobStatus.SAVED,
    "SUCCEEDED": JobStatus.SAVED,
    "COMPLETED": JobStatus.SAVED,
    "JOB_STATE_FAILED": JobStatus.FAILED,
    "BATCH_STATE_FAILED": JobStatus.FAILED,
    "FAILED": JobStatus.FAILED,
    "JOB_STATE_CANCELLED": JobStatus.CANCELLED,
    "BATCH_STATE_CANCELLED": JobStatus.CANCELLED,
    "CANCELLED": JobStatus.CANCELLED,
    "JOB_STATE_EXPIRED": JobStatus.EXPIRED,
    "BATCH_STATE_EXPIRED": JobStatus.EXPIRED,
    "EXPIRED": JobStatus.EXPIRED,
    NOT_FOUND: JobStatus.EXPIRED,
}


def translate_state(raw_state: Optional[str]) -> JobStatus:
    """Map a provider state string to a canonical job status.

    Unrecognised spellings are treated as still running so the job is
    polled again rather than closed prematurely.
    """
    if not raw_state:
        return JobStatus.PROCESSING
    status = PROVIDER_STATE_MAP.get(raw_state.strip().upper())
    if status is None:
        LOGGER.warning(f"Unknown provider state {raw_state!r}, treating as processing")
        return JobStatus.PROCESSING
    return status


@dataclass
class ResultLocation:
    """Where a finished job's results live: a downloadable file or inline records."""

    file_name: Optional[str] = None
    inline: Optional[list] = None

    @property
    def is_empty(self) -> bool:
        return not self.file_name and self.inline is None


@dataclass
class PollResult:
    state: str
    status: JobStatus
    location: Optional[ResultLocation] = None
    error: Optional[str] = None


@dataclass
class ResultItem:
    """One per-request result of a batch job."""

    key: Optional[str]
    text: Optional[str] = None
    error: Optional[str] = None
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None and bool(self.text and self.text.strip())


class RemoteJobClient(Protocol):
    """Operations the orchestrator needs from a batch provider."""

    def upload(self, jsonl: str, display_name: str) -> str:
        """Upload a JSONL request file and return its artifact name."""
        ...

    def create_job(self, artifact: str, display_name: str, model: Optional[str] = None) -> str:
        """Create a batch job over an uploaded artifact and return its reference."""
        ...

    def poll(self, reference: str) -> PollResult: ...

    def fetch_results(self, location: ResultLocation) -> list[ResultItem]: ...

    def delete_temp(self, artifact: str) -> None: ...

    def cancel(self, reference: str) -> None: ...

    def list_jobs(self, page_size: int = 100) -> list[dict]:
        """Raw job descriptions as the provider reports them, newest first."""
        ...


def parse_jsonl(text: str) -> list[dict]:
    """Parse JSONL, skipping blank and malformed lines."""
    records = []
    for line_no, line in enumerate(text.splitlines(), start=1):
        line = line.strip()
        if not line:
            continue
        try:
            record = json.loads(line)
        except json.JSONDecodeError as e:
            LOGGER.warning(f"Skipping malformed result line {line_no}: {e}")
            continue
        if isinstance(record, dict):
            records.append(record)
    return records


def _error_message(error: Any) -> str:
    if isinstance(error, dict):
        return str(error.get("message") or error.get("status") or error)
    return str(error)


def _response_text(response: dict) -> Optional[str]:
    candidates = response.get("candidates") or []
    if not candidates:
        return None
    parts = (candidates[0].get("content") or {}).get("parts") or []
    texts = [p.get("text") for p in parts if isinstance(p, dict) and p.get("text")]
    return "".join(texts) if texts else None


def parse_result_item(record: dict) -> ResultItem:
    """Normalise one provider result record.

    Accepts both ``key`` and ``custom_id`` as the request key.
    """
    key = record.get("key") or record.get("custom_id")
    if "error" in record and record["error"]:
        return ResultItem(key=key, error=_error_message(record["error"]))

    response = record.get("response") or {}
    usage = response.get("usageMetadata") or {}
    text = _response_text(response)
    if not text or not text.strip():
        reason = None
        candidates = response.get("candidates") or []
        if candidates:
            reason = candidates[0].get("finishReason")
        return ResultItem(key=key, error=f"Empty response{f' ({reason})' if reason else ''}")

    return ResultItem(
        key=key,
        text=text,
        input_tokens=int(usage.get("promptTokenCount") or 0),
        output_tokens=int(usage.get("candidatesTokenCount") or 0),
    )


def parse_result_items(records: Iterable[dict]) -> list[ResultItem]:
    return [parse_result_item(r) for r in records if isinstance(r, dict)]
