"""Counters for the capture pipeline.

One AgentMetrics instance is created by the Agent and handed to every
component that records something, so tests can build isolated collectors.
"""

import threading
import time

EVENTS_CAPTURED = "events_captured"
EVENTS_PROCESSED = "events_processed"
EVENTS_STORED = "events_stored"
EVENTS_FILTERED = "events_filtered"
EVENTS_DROPPED = "events_dropped"
FLUSH_COUNT = "flush_count"
FLUSH_FAILURES = "flush_failures"
WINDOW_UPDATES = "window_updates"
WINDOW_ERRORS = "window_errors"
CAPTURE_ERRORS = "capture_errors"

COUNTERS = (
    EVENTS_CAPTURED,
    EVENTS_PROCESSED,
    EVENTS_STORED,
    EVENTS_FILTERED,
    EVENTS_DROPPED,
    FLUSH_COUNT,
    FLUSH_FAILURES,
    WINDOW_UPDATES,
    WINDOW_ERRORS,
    CAPTURE_ERRORS,
)


class AgentMetrics:
    """Thread-safe counter collector with an uptime clock."""

    def __init__(self, clock=time.monotonic):
        self._clock = clock
        self._lock = threading.Lock()
        self._counts = dict.fromkeys(COUNTERS, 0)
        self._started_at: float | None = None

    def increment(self, name: str, amount: int = 1) -> None:
        with self._lock:
            self._counts[name] = self._counts.get(name, 0) + amount

    def get(self, name: str) -> int:
        with self._lock:
            return self._counts.get(name, 0)

    def mark_started(self) -> None:
        with self._lock:
            self._started_at = self._clock()

    def mark_stopped(self) -> None:
        with self._lock:
            self._started_at = None

    def uptime_seconds(self) -> int:
        with self._lock:
            if self._started_at is None:
                return 0
            return int(self._clock() - self._started_at)

    def snapshot(self) -> dict[str, int]:
        """Return all counters plus ``uptime_seconds``."""
        uptime = self.uptime_seconds()
        with self._lock:
            data = dict(self._counts)
        data["uptime_seconds"] = uptime
        return data
