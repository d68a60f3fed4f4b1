"""Queue that serialises the engine's asynchronous callbacks."""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Type

from ..models import InboundEvent

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class QrCaptured:
    generation: int
    artifact: str


@dataclass(frozen=True)
class StateChanged:
    generation: int
    label: str


@dataclass(frozen=True)
class MessageReceived:
    event: InboundEvent


_STOP = object()


class SessionEventQueue:
    """Callbacks publish here; one consumer thread hands events to subscribers.

    Until :meth:`start` is called events simply accumulate and can be
    processed in the caller's thread with :meth:`drain`.
    """

    def __init__(self) -> None:
        self._queue: "queue.Queue[Any]" = queue.Queue()
        self._handlers: Dict[Type[Any], List[Callable[[Any], None]]] = {}
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None

    def subscribe(self, event_type: Type[Any], handler: Callable[[Any], None]) -> None:
        with self._lock:
            self._handlers.setdefault(event_type, []).append(handler)

    def publish(self, event: Any) -> None:
        self._queue.put(event)

    def start(self) -> None:
        with self._lock:
            if self._thread and self._thread.is_alive():
                return
            self._thread = threading.Thread(target=self._run, name="session-events", daemon=True)
            self._thread.start()

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        with self._lock:
            thread = self._thread
            self._thread = None
        if thread is None:
            return
        self._queue.put(_STOP)
        thread.join(timeout)

    def drain(self) -> int:
        """Dispatch every queued event in the current thread; returns the count."""

        handled = 0
        while True:
            try:
                event = self._queue.get_nowait()
            except queue.Empty:
                return handled
            if event is _STOP:
                continue
            self._dispatch(event)
            handled += 1

    def pending(self) -> int:
        return self._queue.qsize()

    def _run(self) -> None:
        while True:
            event = self._queue.get()
            if event is _STOP:
                return
            self._dispatch(event)

    def _dispatch(self, event: Any) -> None:
        with self._lock:
            handlers = list(self._handlers.get(type(event), ()))
        if not handlers:
            LOGGER.debug("No subscriber for %s", type(event).__name__)
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                LOGGER.exception("Handler failed for %s", type(event).__name__)
