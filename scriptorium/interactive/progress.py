"""Rate-limited progress callbacks."""

import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional


@dataclass(frozen=True)
class ProgressUpdate:
    completed: int
    failed: int
    total: int
    final: bool = False

    @property
    def processed(self) -> int:
        return self.completed + self.failed


ProgressCallback = Callable[[ProgressUpdate], None]


class ProgressThrottle:
    """Forward updates at most once per ``interval`` seconds.

    ``finish`` always emits, so observers see the final counts even when
    the last regular update was suppressed.
    """

    def __init__(
        self,
        callback: Optional[ProgressCallback],
        interval: float = 2.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.callback = callback
        self.interval = interval
        self._clock = clock
        self._last_emit: Optional[float] = None
        self._lock = threading.Lock()

    def update(self, completed: int, failed: int, total: int) -> bool:
        """Emit if the interval has elapsed since the last emission."""
        if self.callback is None:
            return False
        with self._lock:
            now = self._clock()
            if self._last_emit is not None and now - self._last_emit < self.interval:
                return False
            self._last_emit = now
        self.callback(ProgressUpdate(completed, failed, total))
        return True

    def finish(self, completed: int, failed: int, total: int) -> None:
        if self.callback is None:
            return
        with self._lock:
            self._last_emit = self._clock()
        self.callback(ProgressUpdate(completed, failed, total, final=True))
