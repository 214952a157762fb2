"""Runtime counters shared by the dispatcher, commands and the stats server."""

from __future__ import annotations

import threading
import time


class Metrics:
    """Process-wide counters.

    Cost is accumulated as integer microdollars so repeated additions do not
    drift. Thread-safe: the stats endpoint may read while handlers write.
    """

    def __init__(self) -> None:
        self.start_time = time.monotonic()
        self._lock = threading.Lock()
        self._message_count = 0
        self._error_count = 0
        self._cost_micros = 0

    def record_message(self, n: int = 1) -> None:
        with self._lock:
            self._message_count += n

    def record_error(self) -> None:
        with self._lock:
            self._error_count += 1

    def add_cost(self, cost_usd: float) -> None:
        """Add a backend charge. Negative or missing charges count as zero."""
        if not cost_usd or cost_usd < 0:
            return
        with self._lock:
            self._cost_micros += int(round(cost_usd * 1_000_000))

    @property
    def message_count(self) -> int:
        with self._lock:
            return self._message_count

    @property
    def error_count(self) -> int:
        with self._lock:
            return self._error_count

    @property
    def total_cost_usd(self) -> float:
        with self._lock:
            return self._cost_micros / 1_000_000

    @property
    def uptime_seconds(self) -> float:
        return time.monotonic() - self.start_time


def format_uptime(seconds: float) -> str:
    """``3725`` -> ``"1h 2m"``."""
    total = int(seconds)
    return f"{total // 3600}h {(total % 3600) // 60}m"
