"""Port to the chat-session engine that drives the WhatsApp Web session.

The bridge does not speak the chat protocol itself. Any object satisfying
:class:`SessionEngine` can be plugged in through the ``SESSION_ENGINE``
setting, written as ``package.module:attribute``. The attribute may be an
engine instance or a zero-argument factory returning one.
"""

from __future__ import annotations

import importlib
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional, Protocol

from .models import InboundEvent

LOGGER = logging.getLogger(__name__)


class SessionHandle(Protocol):
    def send_text(self, to: str, body: str) -> Any: ...

    def send_image(self, to: str, source: str, filename: str, caption: Optional[str]) -> Any: ...

    def send_file(self, to: str, source: str, filename: str, caption: Optional[str]) -> Any: ...

    def decrypt_media(self, event: InboundEvent) -> Optional[bytes]: ...

    def get_connection_state(self) -> str: ...

    def close(self) -> None: ...


@dataclass(frozen=True)
class ConnectOptions:
    on_qr: Callable[[str], None]
    on_state_change: Callable[[str], None]
    on_message: Callable[[InboundEvent], None]
    data_dir: Path
    headless: bool = True
    multidevice: bool = True


class SessionEngine(Protocol):
    def connect(self, session_name: str, options: ConnectOptions) -> SessionHandle: ...


def load_engine(target: Optional[str]) -> SessionEngine:
    """Import the engine named by ``target`` (``module:attribute``)."""

    if not target:
        raise RuntimeError("SESSION_ENGINE is not configured")
    module_name, sep, attribute = target.partition(":")
    if not sep or not module_name or not attribute:
        raise RuntimeError(f"SESSION_ENGINE must look like 'package.module:factory', got {target!r}")
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise RuntimeError(f"Could not import session engine module {module_name!r}: {exc}") from exc
    try:
        candidate = getattr(module, attribute)
    except AttributeError:
        raise RuntimeError(f"Module {module_name!r} has no attribute {attribute!r}") from None
    if isinstance(candidate, type) or not hasattr(candidate, "connect"):
        engine = candidate()
    else:
        engine = candidate
    if not callable(getattr(engine, "connect", None)):
        raise RuntimeError(f"{target!r} does not provide a connect() method")
    LOGGER.info("Loaded session engine %s", target)
    return engine
