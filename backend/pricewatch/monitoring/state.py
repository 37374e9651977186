"""Process-wide application state reported by the health endpoints."""

import threading
import time
from collections import deque
from datetime import datetime, timezone
from typing import Callable, Deque, List, Optional


MAX_RECENT_ERRORS = 10


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class ApplicationState:
    """Readiness flag, scrape counters and the last few errors."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._lock = threading.Lock()
        self.started_at = clock()
        self.ready = False
        self.last_monitor_run: Optional[str] = None
        self.last_monitor_success = False
        self.scrapes_attempted = 0
        self.scrapes_successful = 0
        self._errors: Deque[dict] = deque(maxlen=MAX_RECENT_ERRORS)

    def mark_ready(self, ready: bool = True) -> None:
        self.ready = ready

    def record_scrape_attempt(self, success: bool) -> None:
        with self._lock:
            self.scrapes_attempted += 1
            if success:
                self.scrapes_successful += 1
            self.last_monitor_run = _now_iso()
            self.last_monitor_success = success

    def record_error(self, error) -> None:
        message = str(error)
        if not message and isinstance(error, BaseException):
            message = type(error).__name__
        with self._lock:
            self._errors.append({"timestamp": _now_iso(), "message": message})

    @property
    def uptime(self) -> int:
        return int(self._clock() - self.started_at)

    @property
    def success_rate(self) -> int:
        """Successful scrapes as a rounded percentage; 0 before any attempt."""
        if self.scrapes_attempted == 0:
            return 0
        return round(self.scrapes_successful / self.scrapes_attempted * 100)

    @property
    def recent_errors(self) -> List[dict]:
        with self._lock:
            return list(self._errors)

    def scrape_stats(self) -> dict:
        return {
            "attempted": self.scrapes_attempted,
            "successful": self.scrapes_successful,
            "successRate": self.success_rate,
        }

    def reset(self) -> None:
        with self._lock:
            self.ready = False
            self.last_monitor_run = None
            self.last_monitor_success = False
            self.scrapes_attempted = 0
            self.scrapes_successful = 0
            self._errors.clear()
