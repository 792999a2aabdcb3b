"""Error taxonomy and per-item result types."""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

import httpx
import openai
import requests


class ErrorKind(str, Enum):
    """Classes of failure the orchestrator distinguishes between."""

    TRANSIENT = "transient"
    CLIENT = "client"
    PARTIAL = "partial"
    EXPIRED = "expired"
    RECONCILE = "reconcile"


class ScriptoriumError(Exception):
    """Base class for errors raised by this package."""

    kind = ErrorKind.TRANSIENT


class TransientError(ScriptoriumError):
    """Raised when a remote call may succeed if attempted again."""

    kind = ErrorKind.TRANSIENT


class ClientError(ScriptoriumError):
    """Raised when a request is invalid and retrying cannot help."""

    kind = ErrorKind.CLIENT


class JobNotFoundError(ScriptoriumError):
    """Raised when a batch job id is not present in the job store."""

    kind = ErrorKind.CLIENT


class InvalidTransitionError(ScriptoriumError):
    """Raised when a manual action is not allowed for the job's status."""

    kind = ErrorKind.CLIENT


class ConfigError(ScriptoriumError):
    """Raised when required configuration is missing or malformed."""

    kind = ErrorKind.CLIENT


# 408 and 429 are 4xx but the request itself is fine.
RETRYABLE_STATUS_CODES = {408, 429, 500, 502, 503, 504}


def is_client_status(status: Optional[int]) -> bool:
    return status is not None and 400 <= status < 500 and status not in RETRYABLE_STATUS_CODES


def classify_error(exc: BaseException) -> ErrorKind:
    """Map an exception raised by a remote call onto the error taxonomy."""
    if isinstance(exc, ScriptoriumError):
        return exc.kind

    if isinstance(exc, (openai.RateLimitError, openai.APITimeoutError, openai.APIConnectionError)):
        return ErrorKind.TRANSIENT
    if isinstance(exc, openai.APIStatusError):
        return ErrorKind.CLIENT if is_client_status(exc.status_code) else ErrorKind.TRANSIENT

    if isinstance(exc, requests.HTTPError):
        status = exc.response.status_code if exc.response is not None else None
        return ErrorKind.CLIENT if is_client_status(status) else ErrorKind.TRANSIENT
    if isinstance(exc, httpx.HTTPStatusError):
        return ErrorKind.CLIENT if is_client_status(exc.response.status_code) else ErrorKind.TRANSIENT

    # Network errors, timeouts and anything unexpected are worth another attempt
    return ErrorKind.TRANSIENT


@dataclass
class ItemOutcome:
    """Result of processing a single unit of work."""

    item_id: str
    success: bool
    attempts: int = 0
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
