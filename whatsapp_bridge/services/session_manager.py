"""Lifecycle of the underlying chat session: connect, retry, probe, restart.

The manager is the only writer of connectivity state. Every mutation happens
under one lock; blocking engine calls (connect, probe, close, sends) run
outside it. A generation counter is bumped for every start attempt and every
teardown so callbacks and timers belonging to an older attempt are ignored.

Phases::

    IDLE -> STARTING -> CONNECTED -> DISCONNECTED -> RESTARTING -> STARTING
                 |  ^
                 +--+ retry with exponential backoff, FAILED past the ceiling
"""

from __future__ import annotations

import logging
import shutil
import threading
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeout
from pathlib import Path
from typing import Any, Callable, List, Optional

from ..config import Settings
from ..engine import ConnectOptions, SessionEngine, SessionHandle
from ..errors import (
    BridgeError,
    ConnectionFailure,
    DeliveryFailure,
    HealthCheckFailure,
    MediaProcessingFailure,
    NotConnected,
)
from ..models import InboundEvent, SessionPhase, SessionState
from .scheduler import Cancellable, Scheduler, ThreadingScheduler
from .session_events import MessageReceived, QrCaptured, SessionEventQueue, StateChanged

LOGGER = logging.getLogger(__name__)

TERMINAL_STATE_MARKERS = ("CONFLICT", "UNPAIRED", "UNLAUNCHED", "DISCONNECTED", "TIMEOUT")
CONFLICT_MARKER = "CONFLICT"
CONNECTED_LABEL = "CONNECTED"

TransitionListener = Callable[[SessionPhase, SessionPhase], None]


def retry_delay(retry_count: int, *, base_delay: float) -> float:
    """Seconds to wait before retry number ``retry_count``."""

    return base_delay * (2 ** max(retry_count, 0))


class SessionManager:
    """Owns the connect/retry/health-check/restart state machine."""

    def __init__(
        self,
        engine: SessionEngine,
        events: SessionEventQueue,
        *,
        session_name: str,
        data_dir: Path,
        scheduler: Optional[Scheduler] = None,
        max_retries: int = 5,
        retry_base_delay: float = 5.0,
        restart_delay: float = 10.0,
        health_check_interval: float = 30.0,
        health_check_timeout: float = 10.0,
        send_timeout: float = 30.0,
        purge_on_conflict: bool = True,
    ) -> None:
        self._engine = engine
        self._events = events
        self._session_name = session_name
        self._data_dir = Path(data_dir)
        self._scheduler = scheduler or ThreadingScheduler()
        self._max_retries = max_retries
        self._retry_base_delay = retry_base_delay
        self._restart_delay = restart_delay
        self._health_check_interval = health_check_interval
        self._health_check_timeout = health_check_timeout
        self._send_timeout = send_timeout
        self._purge_on_conflict = purge_on_conflict

        # Reentrant so transition listeners may read snapshots.
        self._lock = threading.RLock()
        self._phase = SessionPhase.IDLE
        self._retry_count = 0
        self._qr_artifact: Optional[str] = None
        self._connected = False
        self._handle: Optional[SessionHandle] = None
        self._generation = 0
        self._health_check_active = False
        self._health_timer: Optional[Cancellable] = None
        self._start_timer: Optional[Cancellable] = None
        self._listeners: List[TransitionListener] = []

        events.subscribe(QrCaptured, self._on_qr_captured)
        events.subscribe(StateChanged, self._on_state_changed)

    @classmethod
    def from_settings(
        cls,
        engine: SessionEngine,
        events: SessionEventQueue,
        settings: Settings,
        *,
        scheduler: Optional[Scheduler] = None,
    ) -> "SessionManager":
        return cls(
            engine,
            events,
            session_name=settings.session_name,
            data_dir=settings.session_data_dir,
            scheduler=scheduler,
            max_retries=settings.max_retries,
            retry_base_delay=settings.retry_base_delay_seconds,
            restart_delay=settings.restart_delay_seconds,
            health_check_interval=settings.health_check_interval_seconds,
            health_check_timeout=settings.health_check_timeout_seconds,
            send_timeout=settings.send_timeout_seconds,
            purge_on_conflict=settings.purge_on_conflict,
        )

    def add_transition_listener(self, listener: TransitionListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def snapshot(self) -> SessionState:
        with self._lock:
            return SessionState(
                phase=self._phase,
                retry_count=self._retry_count,
                last_qr_artifact=self._qr_artifact,
                health_check_active=self._health_check_active,
                connected=self._connected,
            )

    def currently_connected(self) -> bool:
        with self._lock:
            return self._connected

    def latest_qr_artifact(self) -> Optional[str]:
        with self._lock:
            return self._qr_artifact

    def start(self) -> bool:
        """Begin a connection attempt unless one is already running.

        Returns ``False`` when the call was a no-op.
        """

        with self._lock:
            if self._phase in (SessionPhase.STARTING, SessionPhase.RESTARTING):
                LOGGER.info("Start already in progress (phase=%s)", self._phase.value)
                return False
            if self._phase == SessionPhase.CONNECTED:
                LOGGER.info("Session %s already connected; start ignored", self._session_name)
                return False
            if self._phase == SessionPhase.FAILED:
                LOGGER.warning("Session %s failed; only a manual restart can re-arm it", self._session_name)
                return False
            self._enter_starting_locked()
            return True

    def force_restart(self, purge_credentials: bool = False, *, manual: bool = False) -> bool:
        """Tear the session down and start it again.

        Manual restarts reset the retry counter, re-arm a ``FAILED`` machine
        and start immediately; automatic ones wait for the cool-down.
        """

        return self._restart(purge_credentials=purge_credentials, manual=manual, generation=None)

    def shutdown(self) -> None:
        with self._lock:
            self._generation += 1
            self._disarm_health_check_locked()
            self._cancel_start_timer_locked()
            handle, self._handle = self._handle, None
            self._connected = False
            self._set_phase_locked(SessionPhase.IDLE)
        if handle is not None:
            self._close_quietly(handle)

    def send_text(self, to: str, body: str) -> Any:
        return self._call_session("send_text", to, body)

    def send_image(self, to: str, source: str, filename: str, caption: Optional[str] = None) -> Any:
        return self._call_session("send_image", to, source, filename, caption)

    def send_file(self, to: str, source: str, filename: str, caption: Optional[str] = None) -> Any:
        return self._call_session("send_file", to, source, filename, caption)

    def decrypt_media(self, event: InboundEvent) -> Optional[bytes]:
        handle = self._require_handle()
        try:
            return self._call_with_timeout(self._send_timeout, handle.decrypt_media, event)
        except FutureTimeout:
            raise MediaProcessingFailure(
                f"decrypt_media timed out after {self._send_timeout:g}s"
            ) from None
        except Exception as exc:
            raise MediaProcessingFailure(f"decrypt_media failed: {exc}") from exc

    def _set_phase_locked(self, phase: SessionPhase) -> None:
        previous = self._phase
        if previous == phase:
            return
        self._phase = phase
        LOGGER.info("Session %s: %s -> %s", self._session_name, previous.value, phase.value)
        for listener in list(self._listeners):
            try:
                listener(previous, phase)
            except Exception:
                LOGGER.exception("Transition listener failed")

    def _enter_starting_locked(self) -> None:
        self._generation += 1
        generation = self._generation
        self._qr_artifact = None
        self._set_phase_locked(SessionPhase.STARTING)
        self._start_timer = self._scheduler.call_later(0, lambda: self._attempt_connect(generation))

    def _is_current_locked(self, generation: int, phase: SessionPhase) -> bool:
        return generation == self._generation and self._phase == phase

    def _attempt_connect(self, generation: int) -> None:
        with self._lock:
            if not self._is_current_locked(generation, SessionPhase.STARTING):
                return
            self._start_timer = None
            attempt = self._retry_count + 1
        LOGGER.info("Starting session %s (attempt %d)", self._session_name, attempt)
        options = ConnectOptions(
            on_qr=lambda artifact: self._events.publish(QrCaptured(generation, artifact)),
            on_state_change=lambda label: self._events.publish(StateChanged(generation, label)),
            on_message=lambda event: self._events.publish(MessageReceived(event)),
            data_dir=self._data_dir,
        )
        try:
            handle = self._engine.connect(self._session_name, options)
        except Exception as exc:
            self._handle_connect_failure(generation, ConnectionFailure(str(exc) or type(exc).__name__))
            return

        with self._lock:
            accepted = self._is_current_locked(generation, SessionPhase.STARTING)
            if accepted:
                self._handle = handle
                self._connected = True
                self._retry_count = 0
                self._qr_artifact = None
                self._set_phase_locked(SessionPhase.CONNECTED)
                self._arm_health_check_locked()
        if not accepted:
            LOGGER.warning("Discarding session handle from a superseded attempt")
            self._close_quietly(handle)
            return
        LOGGER.info("Session %s connected", self._session_name)

    def _handle_connect_failure(self, generation: int, failure: ConnectionFailure) -> None:
        with self._lock:
            if not self._is_current_locked(generation, SessionPhase.STARTING):
                return
            if self._retry_count + 1 > self._max_retries:
                LOGGER.error(
                    "Session %s failed to start after %d retries; waiting for manual restart: %s",
                    self._session_name,
                    self._retry_count,
                    failure,
                )
                self._set_phase_locked(SessionPhase.FAILED)
                return
            self._retry_count += 1
            delay = retry_delay(self._retry_count, base_delay=self._retry_base_delay)
            LOGGER.warning(
                "Session start failed (%s); retry %d/%d in %.1fs",
                failure,
                self._retry_count,
                self._max_retries,
                delay,
            )
            self._start_timer = self._scheduler.call_later(delay, lambda: self._attempt_connect(generation))

    def _restart(self, *, purge_credentials: bool, manual: bool, generation: Optional[int]) -> bool:
        with self._lock:
            if self._phase in (SessionPhase.STARTING, SessionPhase.RESTARTING):
                LOGGER.info("Restart ignored; start already in progress (phase=%s)", self._phase.value)
                return False
            if generation is not None and not self._is_current_locked(generation, SessionPhase.CONNECTED):
                return False
            if not manual and self._phase == SessionPhase.FAILED:
                return False
            if self._phase == SessionPhase.CONNECTED:
                self._set_phase_locked(SessionPhase.DISCONNECTED)
            self._disarm_health_check_locked()
            self._cancel_start_timer_locked()
            handle, self._handle = self._handle, None
            self._connected = False
            self._generation += 1
            restart_generation = self._generation
            if manual:
                self._retry_count = 0
            self._set_phase_locked(SessionPhase.RESTARTING)

        if handle is not None:
            self._close_quietly(handle)
        if purge_credentials:
            self._purge_credentials()

        if manual:
            self._begin_start(restart_generation)
            return True
        LOGGER.info("Restarting session %s in %gs", self._session_name, self._restart_delay)
        with self._lock:
            if self._is_current_locked(restart_generation, SessionPhase.RESTARTING):
                self._start_timer = self._scheduler.call_later(
                    self._restart_delay, lambda: self._begin_start(restart_generation)
                )
        return True

    def _begin_start(self, generation: int) -> None:
        with self._lock:
            if not self._is_current_locked(generation, SessionPhase.RESTARTING):
                return
            self._start_timer = None
            self._enter_starting_locked()

    def _cancel_start_timer_locked(self) -> None:
        if self._start_timer is not None:
            self._start_timer.cancel()
            self._start_timer = None

    def _arm_health_check_locked(self) -> None:
        self._disarm_health_check_locked()
        self._health_check_active = True
        self._schedule_probe_locked(self._generation)

    def _disarm_health_check_locked(self) -> None:
        self._health_check_active = False
        if self._health_timer is not None:
            self._health_timer.cancel()
            self._health_timer = None

    def _schedule_probe_locked(self, generation: int) -> None:
        self._health_timer = self._scheduler.call_later(
            self._health_check_interval, lambda: self._run_health_probe(generation)
        )

    def _run_health_probe(self, generation: int) -> None:
        with self._lock:
            if not self._health_check_active or not self._is_current_locked(generation, SessionPhase.CONNECTED):
                return
            self._health_timer = None
            handle = self._handle
        try:
            label = self._call_with_timeout(self._health_check_timeout, handle.get_connection_state)
        except FutureTimeout:
            failure = HealthCheckFailure(f"probe timed out after {self._health_check_timeout:g}s")
        except Exception as exc:
            failure = HealthCheckFailure(f"probe raised {exc!r}")
        else:
            if str(label).upper() == CONNECTED_LABEL:
                with self._lock:
                    if self._health_check_active and self._is_current_locked(generation, SessionPhase.CONNECTED):
                        self._schedule_probe_locked(generation)
                return
            failure = HealthCheckFailure(f"session reports {label}")
        LOGGER.warning("Health check failed: %s; forcing restart", failure)
        self._restart(purge_credentials=False, manual=False, generation=generation)

    def _on_qr_captured(self, event: QrCaptured) -> None:
        with self._lock:
            if not self._is_current_locked(event.generation, SessionPhase.STARTING):
                LOGGER.debug("Ignoring QR from a stale or finished attempt")
                return
            self._qr_artifact = event.artifact
        LOGGER.info("QR captured: %s...", event.artifact[:60])

    def _on_state_changed(self, event: StateChanged) -> None:
        label = (event.label or "").upper()
        LOGGER.info("Session state reported: %s", event.label)
        if not any(marker in label for marker in TERMINAL_STATE_MARKERS):
            return
        purge = self._purge_on_conflict and CONFLICT_MARKER in label
        # Closing the handle can block, so keep it off the event consumer thread.
        self._scheduler.call_later(0, lambda: self._restart_after_state(event, purge))

    def _restart_after_state(self, event: StateChanged, purge: bool) -> None:
        if self._restart(purge_credentials=purge, manual=False, generation=event.generation):
            LOGGER.warning("Session disconnected (%s); restart scheduled", event.label)

    def _require_handle(self) -> SessionHandle:
        with self._lock:
            if not self._connected or self._handle is None:
                raise NotConnected("Session is not connected; waiting for reconnection")
            return self._handle

    def _call_session(self, operation: str, *args: Any) -> Any:
        handle = self._require_handle()
        try:
            return self._call_with_timeout(self._send_timeout, getattr(handle, operation), *args)
        except FutureTimeout:
            raise DeliveryFailure(f"{operation} timed out after {self._send_timeout:g}s") from None
        except BridgeError:
            raise
        except Exception as exc:
            raise DeliveryFailure(f"{operation} failed: {exc}") from exc

    def _call_with_timeout(self, timeout: float, func: Callable[..., Any], *args: Any) -> Any:
        """Run ``func`` on its own daemon thread and wait at most ``timeout`` seconds.

        A call that never returns only pins its own thread, so a hung handle
        cannot starve calls made on the handles that replace it.
        """

        future: Future = Future()

        def run() -> None:
            if not future.set_running_or_notify_cancel():
                return
            try:
                future.set_result(func(*args))
            except Exception as exc:
                future.set_exception(exc)

        name = f"session-call-{getattr(func, '__name__', 'engine')}"
        threading.Thread(target=run, name=name, daemon=True).start()
        return future.result(timeout=timeout)

    def _close_quietly(self, handle: SessionHandle) -> None:
        try:
            self._call_with_timeout(self._send_timeout, handle.close)
        except Exception:
            LOGGER.exception("Error closing session handle")

    def _purge_credentials(self) -> None:
        path = self._data_dir / self._session_name
        if not path.exists():
            return
        try:
            shutil.rmtree(path)
        except OSError:
            LOGGER.exception("Could not purge session credentials at %s", path)
            return
        LOGGER.warning("Purged session credentials at %s", path)
