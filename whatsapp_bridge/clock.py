"""Time utilities for unique, ordered timestamps."""

from __future__ import annotations

import threading
import time
from datetime import datetime, timezone
from typing import Callable, Optional


class MonotonicClock:
    """Hands out strictly increasing millisecond timestamps across threads.

    Wall-clock milliseconds are used when they move forward; otherwise the
    previous value is bumped by one so bursts within the same millisecond
    (or a clock stepping backwards) still yield distinct values.
    """

    def __init__(self, time_source: Optional[Callable[[], float]] = None) -> None:
        self._time_source = time_source or time.time
        self._lock = threading.Lock()
        self._last_ms = 0

    def now_ms(self) -> int:
        with self._lock:
            current = int(self._time_source() * 1000)
            if current <= self._last_ms:
                current = self._last_ms + 1
            self._last_ms = current
            return current

    @staticmethod
    def to_iso(value_ms: int) -> str:
        moment = datetime.fromtimestamp(value_ms / 1000, tz=timezone.utc)
        return moment.isoformat(timespec="milliseconds")
