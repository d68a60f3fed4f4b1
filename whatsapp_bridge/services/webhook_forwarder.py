"""HTTP client that forwards normalized records to the downstream webhook."""

from __future__ import annotations

import logging
import threading
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Deque, List, Optional, Tuple

import requests

from ..errors import ForwardingFailure
from ..models import NormalizedRecord

LOGGER = logging.getLogger(__name__)

FailureListener = Callable[[NormalizedRecord, ForwardingFailure], None]


class WebhookForwarder:
    """Fire-and-forget delivery of one record per ``POST``.

    Failures never propagate to the caller; they are logged, kept in a small
    ring of recent failures and published to registered listeners.
    """

    def __init__(
        self,
        url: Optional[str],
        *,
        session: Optional[requests.Session] = None,
        timeout: float = 10,
        max_workers: int = 4,
        failure_history: int = 50,
    ) -> None:
        self._url = url
        self._session = session or requests.Session()
        self._timeout = timeout
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="webhook")
        self._listeners: List[FailureListener] = []
        self._failures: Deque[Tuple[NormalizedRecord, ForwardingFailure]] = deque(maxlen=failure_history)
        self._lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return bool(self._url)

    def add_failure_listener(self, listener: FailureListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def recent_failures(self) -> List[Tuple[NormalizedRecord, ForwardingFailure]]:
        with self._lock:
            return list(self._failures)

    def forward(self, record: NormalizedRecord) -> Optional[Future]:
        """Schedule delivery in the background and return its future."""

        if not self.enabled:
            LOGGER.debug("Webhook URL not configured; skipping record from %s", record.from_)
            return None
        return self._executor.submit(self.deliver, record)

    def deliver(self, record: NormalizedRecord) -> bool:
        """Deliver synchronously; returns ``True`` on a 2xx response."""

        if not self.enabled:
            return False
        payload = record.to_payload()
        LOGGER.debug("Forwarding webhook payload: %s", payload)
        try:
            response = self._session.post(self._url, json=payload, timeout=self._timeout)
            response.raise_for_status()
        except requests.HTTPError as exc:
            self._record_failure(record, ForwardingFailure(f"Webhook responded with error: {exc}"))
            return False
        except requests.RequestException as exc:
            self._record_failure(record, ForwardingFailure(f"Webhook request failed: {exc}"))
            return False
        LOGGER.info("Forwarded %s record from %s to webhook", record.type, record.from_)
        return True

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    def _record_failure(self, record: NormalizedRecord, failure: ForwardingFailure) -> None:
        LOGGER.error("Webhook delivery failed for %s: %s", record.from_, failure)
        with self._lock:
            self._failures.append((record, failure))
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(record, failure)
            except Exception:
                LOGGER.exception("Forwarding failure listener raised")
