"""Simple in-process metrics for roomrelay.

This module provides:
- Per-event dispatch timing
- Per-error-code counters
- Store operation timing
- Request timing for the HTTP surface

Everything lives in memory and is exposed through the /metrics endpoint.
"""

from __future__ import annotations

import logging
import time
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass, field
from threading import Lock

logger = logging.getLogger(__name__)

# Store calls slower than this are logged
SLOW_OPERATION_MS = 100


@dataclass
class TimingStats:
    """Statistics for a timed operation."""

    count: int = 0
    total_ms: float = 0.0
    min_ms: float = float("inf")
    max_ms: float = 0.0

    def record(self, duration_ms: float) -> None:
        """Record a timing measurement."""
        self.count += 1
        self.total_ms += duration_ms
        self.min_ms = min(self.min_ms, duration_ms)
        self.max_ms = max(self.max_ms, duration_ms)

    @property
    def avg_ms(self) -> float:
        """Average duration in milliseconds."""
        return self.total_ms / self.count if self.count > 0 else 0.0

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "count": self.count,
            "total_ms": round(self.total_ms, 2),
            "avg_ms": round(self.avg_ms, 2),
            "min_ms": round(self.min_ms, 2) if self.count > 0 else 0,
            "max_ms": round(self.max_ms, 2),
        }


@dataclass
class Metrics:
    """Global metrics collector.

    Store timings are recorded from the store worker thread, everything else
    from the event loop, so all access goes through the lock.
    """

    _lock: Lock = field(default_factory=Lock)
    events: dict[str, TimingStats] = field(default_factory=lambda: defaultdict(TimingStats))
    errors: dict[str, int] = field(default_factory=lambda: defaultdict(int))
    db_operations: dict[str, TimingStats] = field(default_factory=lambda: defaultdict(TimingStats))
    request_stats: dict[str, TimingStats] = field(default_factory=lambda: defaultdict(TimingStats))
    connections_opened: int = 0
    connections_closed: int = 0
    _start_time: float = field(default_factory=time.time)

    def record_event(self, event: str, duration_ms: float) -> None:
        """Record how long an inbound event took to handle."""
        with self._lock:
            self.events[event].record(duration_ms)

    def record_error(self, code: str) -> None:
        """Count an error frame sent to a client."""
        with self._lock:
            self.errors[code] += 1

    def record_db_operation(self, operation: str, duration_ms: float) -> None:
        """Record a store operation timing."""
        with self._lock:
            self.db_operations[operation].record(duration_ms)

    def record_request(self, endpoint: str, duration_ms: float) -> None:
        """Record an HTTP request timing."""
        with self._lock:
            self.request_stats[endpoint].record(duration_ms)

    def record_connection(self, opened: bool) -> None:
        with self._lock:
            if opened:
                self.connections_opened += 1
            else:
                self.connections_closed += 1

    def to_dict(self) -> dict:
        """Export metrics as a dictionary."""
        with self._lock:
            return {
                "uptime_seconds": round(time.time() - self._start_time, 1),
                "connections": {
                    "opened": self.connections_opened,
                    "closed": self.connections_closed,
                },
                "events": {k: v.to_dict() for k, v in self.events.items()},
                "errors": dict(self.errors),
                "db_operations": {k: v.to_dict() for k, v in self.db_operations.items()},
                "requests": {k: v.to_dict() for k, v in self.request_stats.items()},
            }

    def reset(self) -> None:
        """Reset all metrics (useful for testing)."""
        with self._lock:
            self.events.clear()
            self.errors.clear()
            self.db_operations.clear()
            self.request_stats.clear()
            self.connections_opened = 0
            self.connections_closed = 0
            self._start_time = time.time()


# Global metrics instance
metrics = Metrics()


@contextmanager
def timed_db_operation(operation: str):
    """Context manager to time a store operation.

    Usage:
        with timed_db_operation("get_room"):
            room = db.get_room(room_id)
    """
    start = time.perf_counter()
    try:
        yield
    finally:
        duration_ms = (time.perf_counter() - start) * 1000
        metrics.record_db_operation(operation, duration_ms)
        if duration_ms > SLOW_OPERATION_MS:
            logger.warning(f"Slow DB operation: {operation} took {duration_ms:.1f}ms")
