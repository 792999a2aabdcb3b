"""Bounded-concurrency processing of explicitly selected items."""

import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from ..config import Settings
from ..errors import ErrorKind, ItemOutcome, classify_error
from ..logger import logger as LOGGER
from .progress import ProgressCallback, ProgressThrottle


# Called with (item_id, timeout_seconds); raises on failure. The processor stops
# waiting once the timeout passes, whether or not the handler honours it.
ItemHandler = Callable[[str, float], Any]


@dataclass
class ProcessingReport:
    """Outcome of one interactive run."""

    item_ids: list[str]
    outcomes: list[ItemOutcome] = field(default_factory=list)
    cancelled: bool = False

    @property
    def total(self) -> int:
        return len(self.item_ids)

    @property
    def succeeded(self) -> int:
        return sum(1 for o in self.outcomes if o.success)

    @property
    def failed(self) -> int:
        return sum(1 for o in self.outcomes if not o.success)

    @property
    def failed_ids(self) -> list[str]:
        """Failed item ids in the order they were requested."""
        failed = {o.item_id for o in self.outcomes if not o.success}
        return [item_id for item_id in self.item_ids if item_id in failed]

    @property
    def banner(self) -> str:
        if self.cancelled:
            return (
                f"Stopped after {self.succeeded + self.failed} of {self.total} items "
                f"({self.succeeded} succeeded, {self.failed} failed)"
            )
        if self.failed == 0:
            return f"All {self.succeeded} items processed successfully"
        return f"Completed with {self.failed} failures ({self.succeeded} of {self.total} succeeded)"

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "failed_ids": self.failed_ids,
            "cancelled": self.cancelled,
            "banner": self.banner,
            "errors": {o.item_id: o.error for o in self.outcomes if not o.success},
        }


class InteractiveProcessor:
    """Runs a handler over items in waves with per-item retry.

    Transient failures are retried after ``retry_base_delay * 2**attempt``
    seconds; client failures are not retried.
    """

    def __init__(
        self,
        handler: ItemHandler,
        concurrency: int = 5,
        max_attempts: int = 3,
        retry_base_delay: float = 1.0,
        attempt_timeout: float = 120.0,
        wave_pause: float = 0.3,
        progress: Optional[ProgressCallback] = None,
        progress_interval: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.handler = handler
        self.concurrency = concurrency
        self.max_attempts = max_attempts
        self.retry_base_delay = retry_base_delay
        self.attempt_timeout = attempt_timeout
        self.wave_pause = wave_pause
        self.progress = progress
        self.progress_interval = progress_interval
        self._sleep = sleep
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        handler: ItemHandler,
        progress: Optional[ProgressCallback] = None,
        **overrides,
    ) -> "InteractiveProcessor":
        options = dict(
            concurrency=settings.concurrency,
            max_attempts=settings.max_attempts,
            retry_base_delay=settings.retry_base_delay,
            attempt_timeout=settings.attempt_timeout,
            wave_pause=settings.wave_pause,
            progress_interval=settings.progress_interval,
        )
        options.update({k: v for k, v in overrides.items() if v is not None})
        return cls(handler, progress=progress, **options)

    def _attempt(self, item_id: str) -> None:
        """Run the handler once, waiting at most ``attempt_timeout`` seconds.

        The handler runs in a daemon thread so an overrunning call is
        abandoned rather than holding the worker.
        """
        failure = {}

        def target():
            try:
                self.handler(item_id, self.attempt_timeout)
            except Exception as e:
                failure["error"] = e

        worker = threading.Thread(target=target, name=f"attempt-{item_id}", daemon=True)
        worker.start()
        worker.join(self.attempt_timeout)
        if worker.is_alive():
            raise TimeoutError(f"Attempt timed out after {self.attempt_timeout}s")
        if "error" in failure:
            raise failure["error"]

    def _process_item(self, item_id: str, cancel_event: threading.Event) -> Optional[ItemOutcome]:
        """Run one item with retry. Returns None if cancelled before starting."""
        if cancel_event.is_set():
            return None

        attempt = 0
        while True:
            try:
                self._attempt(item_id)
                return ItemOutcome(item_id=item_id, success=True, attempts=attempt + 1)
            except Exception as e:
                kind = classify_error(e)
                error = str(e) or e.__class__.__name__

                if kind is ErrorKind.CLIENT:
                    LOGGER.warning(f"Item {item_id} failed with client error, not retrying: {error}")
                    return ItemOutcome(item_id, False, attempts=attempt + 1, error=error, error_kind=kind)

                if attempt + 1 >= self.max_attempts:
                    LOGGER.warning(f"Item {item_id} failed after {attempt + 1} attempts: {error}")
                    return ItemOutcome(item_id, False, attempts=attempt + 1, error=error, error_kind=kind)

                if cancel_event.is_set():
                    return ItemOutcome(item_id, False, attempts=attempt + 1, error=error, error_kind=kind)

                delay = self.retry_base_delay * (2**attempt)
                LOGGER.debug(f"Item {item_id} attempt {attempt + 1} failed ({error}); retrying in {delay:.1f}s")
                self._sleep(delay)
                attempt += 1

    def run(self, item_ids: list[str], cancel_event: Optional[threading.Event] = None) -> ProcessingReport:
        """Process ``item_ids`` and return per-item outcomes.

        Args:
            item_ids: Items to process, in the order results are reported
            cancel_event: Set to stop starting new items and retries

        Returns:
            ProcessingReport; items never started are absent from outcomes
        """
        cancel_event = cancel_event or threading.Event()
        item_ids = list(item_ids)
        report = ProcessingReport(item_ids=item_ids)
        throttle = ProgressThrottle(self.progress, self.progress_interval, self._clock)

        lock = threading.Lock()
        counts = {"completed": 0, "failed": 0}
        total = len(item_ids)

        waves = [item_ids[i : i + self.concurrency] for i in range(0, total, self.concurrency)]
        with ThreadPoolExecutor(max_workers=self.concurrency) as executor:
            for wave_index, wave in enumerate(waves):
                if cancel_event.is_set():
                    break

                futures = {executor.submit(self._process_item, item_id, cancel_event): item_id for item_id in wave}
                for future in as_completed(futures):
                    outcome = future.result()
                    if outcome is None:
                        continue
                    with lock:
                        report.outcomes.append(outcome)
                        counts["completed" if outcome.success else "failed"] += 1
                        completed, failed = counts["completed"], counts["failed"]
                    throttle.update(completed, failed, total)

                if wave_index < len(waves) - 1 and not cancel_event.is_set():
                    self._sleep(self.wave_pause)

        report.cancelled = cancel_event.is_set()
        throttle.finish(counts["completed"], counts["failed"], total)

        LOGGER.info(report.banner)
        return report

    def retry_failed(self, report: ProcessingReport, cancel_event: Optional[threading.Event] = None) -> ProcessingReport:
        """Re-run exactly the items that failed in ``report``."""
        return self.run(report.failed_ids, cancel_event)
