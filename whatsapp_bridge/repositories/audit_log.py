"""Bounded in-memory history of processed inbound records."""

from __future__ import annotations

import threading
from collections import deque
from dataclasses import replace
from typing import Deque, List, Optional

from ..clock import MonotonicClock
from ..models import NormalizedRecord


class AuditLog:
    """Keeps the most recent ``capacity`` records, evicting the oldest first."""

    def __init__(self, capacity: int = 100, *, clock: Optional[MonotonicClock] = None) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self._capacity = capacity
        self._clock = clock or MonotonicClock()
        self._records: Deque[NormalizedRecord] = deque(maxlen=capacity)
        self._lock = threading.Lock()

    @property
    def capacity(self) -> int:
        return self._capacity

    def append(self, record: NormalizedRecord) -> NormalizedRecord:
        """Stamp ``record`` with its insertion time and store it.

        Stamping happens under the same lock as insertion so timestamps
        follow insertion order.
        """

        with self._lock:
            stamped = replace(record, timestamp=MonotonicClock.to_iso(self._clock.now_ms()))
            self._records.append(stamped)
            return stamped

    def fetch_recent(self, limit: int = 20) -> List[NormalizedRecord]:
        if limit <= 0:
            raise ValueError("limit must be positive")
        with self._lock:
            snapshot = list(self._records)
        return list(reversed(snapshot[-limit:]))

    def fetch_all(self) -> List[NormalizedRecord]:
        with self._lock:
            return list(self._records)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)
