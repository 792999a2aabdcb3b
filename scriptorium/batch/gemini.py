"""Gemini Batch API client."""

import random
import time
from typing import Any, Callable, Optional

import requests

from ..config import Settings
from ..errors import RETRYABLE_STATUS_CODES, ClientError, TransientError, is_client_status
from ..logger import logger as LOGGER
from .provider import NOT_FOUND, PollResult, ResultItem, ResultLocation, parse_jsonl, parse_result_items, translate_state


def _backoff_delay(attempt: int, *, base: float = 1.5, max_delay: float = 60.0, jitter_ratio: float = 0.25) -> float:
    """Compute an exponential backoff delay with optional jitter."""
    delay = min(base * (2 ** (attempt - 1)), max_delay)
    if jitter_ratio > 0:
        jitter = delay * jitter_ratio
        delay = max(0.0, delay + random.uniform(-jitter, jitter))
    return delay


def _error_text(resp: requests.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        return resp.text[:500]
    error = data.get("error") if isinstance(data, dict) else None
    if isinstance(error, dict) and error.get("message"):
        return error["message"]
    return resp.text[:500]


class GeminiBatchClient:
    """RemoteJobClient implementation over the Gemini REST endpoints.

    Transient statuses (429, 5xx) and connection errors are retried inside
    each call with exponential backoff; anything else surfaces as
    ``ClientError`` or ``TransientError``.
    """

    def __init__(
        self,
        settings: Settings,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.settings = settings
        self.api_key = settings.require_api_key()
        self.base_url = settings.gemini_base_url.rstrip("/")
        self.upload_url = settings.gemini_upload_url.rstrip("/")
        self.download_url = settings.gemini_download_url.rstrip("/")
        self.model = settings.batch_model
        self.timeout = settings.request_timeout
        self.max_retries = settings.provider_max_retries
        self.backoff_base = settings.provider_backoff_base
        self.session = session or requests.Session()
        self._sleep = sleep

    def _request(self, method: str, url: str, *, allow_404: bool = False, **kwargs) -> requests.Response:
        """Send a request, retrying transient failures.

        Raises:
            ClientError: Non-retryable 4xx response
            TransientError: Retries exhausted on 429/5xx or network errors
        """
        params = dict(kwargs.pop("params", None) or {})
        params["key"] = self.api_key
        kwargs.setdefault("timeout", self.timeout)

        attempt = 0
        while True:
            attempt += 1
            try:
                resp = self.session.request(method, url, params=params, **kwargs)
            except (requests.ConnectionError, requests.Timeout) as e:
                if attempt <= self.max_retries:
                    delay = _backoff_delay(attempt, base=self.backoff_base)
                    LOGGER.warning(f"{method} {url} failed ({e}); retry {attempt}/{self.max_retries} in {delay:.1f}s")
                    self._sleep(delay)
                    continue
                raise TransientError(f"{method} {url} failed after {attempt} attempts: {e}") from e

            if resp.ok or (allow_404 and resp.status_code == 404):
                return resp

            status = resp.status_code
            if status in RETRYABLE_STATUS_CODES and attempt <= self.max_retries:
                delay = _backoff_delay(attempt, base=self.backoff_base)
                LOGGER.warning(f"{method} {url} returned {status}; retry {attempt}/{self.max_retries} in {delay:.1f}s")
                self._sleep(delay)
                continue

            message = f"{method} {url} returned {status}: {_error_text(resp)}"
            if is_client_status(status):
                raise ClientError(message)
            raise TransientError(message)

    # -- submission ------------------------------------------------------

    def upload(self, jsonl: str, display_name: str) -> str:
        """Upload a JSONL request file with the two-step resumable protocol.

        Returns:
            File resource name, e.g. ``files/abc123``
        """
        body = jsonl.encode("utf-8")
        start = self._request(
            "POST",
            self.upload_url,
            headers={
                "Content-Type": "application/json",
                "X-Goog-Upload-Protocol": "resumable",
                "X-Goog-Upload-Command": "start",
                "X-Goog-Upload-Header-Content-Length": str(len(body)),
                "X-Goog-Upload-Header-Content-Type": "application/jsonl",
            },
            json={"file": {"display_name": display_name}},
        )
        upload_url = start.headers.get("X-Goog-Upload-URL") or start.headers.get("x-goog-upload-url")
        if not upload_url:
            raise TransientError("No upload URL returned")

        resp = self._request(
            "PUT",
            upload_url,
            headers={
                "Content-Type": "application/jsonl",
                "X-Goog-Upload-Command": "upload, finalize",
                "X-Goog-Upload-Offset": "0",
            },
            data=body,
        )
        file_info = resp.json().get("file") or {}
        name = file_info.get("name")
        if not name:
            raise TransientError("Upload response did not include a file name")
        LOGGER.debug(f"Uploaded {display_name} as {name} ({len(body)} bytes)")
        return name

    def create_job(self, artifact: str, display_name: str, model: Optional[str] = None) -> str:
        model = model or self.model
        resp = self._request(
            "POST",
            f"{self.base_url}/models/{model}:batchGenerateContent",
            json={"batch": {"display_name": display_name, "input_config": {"file_name": artifact}}},
        )
        name = resp.json().get("name")
        if not name:
            raise TransientError("Batch creation response did not include a job name")
        LOGGER.info(f"Created batch job {name} ({display_name})")
        return name

    # -- status and results ----------------------------------------------

    def poll(self, reference: str) -> PollResult:
        resp = self._request("GET", f"{self.base_url}/{reference}", allow_404=True)
        if resp.status_code == 404:
            return PollResult(state=NOT_FOUND, status=translate_state(NOT_FOUND))

        data = resp.json()
        metadata = data.get("metadata") or {}
        state = metadata.get("state") or data.get("state") or "UNKNOWN"

        error = data.get("error") or metadata.get("error")
        error_message = None
        if error:
            error_message = error.get("message") if isinstance(error, dict) else str(error)

        return PollResult(
            state=state,
            status=translate_state(state),
            location=_result_location(data),
            error=error_message,
        )

    def fetch_results(self, location: ResultLocation) -> list[ResultItem]:
        if location.file_name:
            resp = self._request(
                "GET",
                f"{self.download_url}/{location.file_name}:download",
                params={"alt": "media"},
            )
            return parse_result_items(parse_jsonl(resp.text))
        if location.inline is not None:
            return parse_result_items(location.inline)
        raise TransientError("No results found in batch job")

    # -- housekeeping ----------------------------------------------------

    def delete_temp(self, artifact: str) -> None:
        self._request("DELETE", f"{self.base_url}/{artifact}", allow_404=True)

    def cancel(self, reference: str) -> None:
        self._request("POST", f"{self.base_url}/{reference}:cancel")

    def list_jobs(self, page_size: int = 100) -> list[dict]:
        resp = self._request("GET", f"{self.base_url}/batches", params={"pageSize": page_size})
        data = resp.json()
        return data.get("operations") or data.get("batches") or data.get("batchJobs") or []


def _result_location(data: dict) -> Optional[ResultLocation]:
    """Find where a finished job put its results.

    The API has reported this under ``response``, ``dest`` and
    ``metadata.output`` across versions.
    """
    metadata = data.get("metadata") or {}
    containers: list[Any] = [
        data.get("response"),
        data.get("dest"),
        metadata.get("output"),
        metadata.get("dest"),
    ]
    for container in containers:
        if not isinstance(container, dict):
            continue
        file_name = container.get("responsesFile") or container.get("fileName")
        if file_name:
            return ResultLocation(file_name=file_name)
        inline = container.get("inlinedResponses")
        if isinstance(inline, dict):
            inline = inline.get("inlinedResponses")
        if isinstance(inline, list):
            return ResultLocation(inline=inline)
    return None
