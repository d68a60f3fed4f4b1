"""Service layer that turns inbound session messages into webhook records."""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Optional, Protocol

from ..models import (
    MEDIA_KINDS,
    UNSUPPORTED_KINDS,
    ChatKind,
    ContentKind,
    InboundEvent,
    NormalizedRecord,
    sanitize_sender,
)
from ..repositories.audit_log import AuditLog
from .media_store import MediaStore, extension_for_mime
from .session_events import MessageReceived
from .webhook_forwarder import WebhookForwarder

LOGGER = logging.getLogger(__name__)


class MediaSource(Protocol):
    def decrypt_media(self, event: InboundEvent) -> Optional[bytes]: ...


class MessagePipeline:
    """Filters, classifies and records inbound messages.

    Only direct chats are processed. Each accepted message produces exactly
    one record, which is stored in the audit log and then forwarded. Errors
    while handling one message end up in that message's record and never
    reach the caller.
    """

    def __init__(
        self,
        session: MediaSource,
        media_store: MediaStore,
        audit_log: AuditLog,
        forwarder: WebhookForwarder,
        *,
        executor: Optional[ThreadPoolExecutor] = None,
    ) -> None:
        self._session = session
        self._media_store = media_store
        self._audit_log = audit_log
        self._forwarder = forwarder
        self._executor = executor

    def on_message_received(self, message: MessageReceived) -> Optional[Future]:
        """Event-queue subscriber; runs :meth:`process` on the worker pool if one is set."""

        if self._executor is None:
            self.process(message.event)
            return None
        return self._executor.submit(self.process, message.event)

    def process(self, event: InboundEvent) -> Optional[NormalizedRecord]:
        if event.chat_kind != ChatKind.DIRECT:
            LOGGER.debug("Ignoring %s message from %s", event.chat_kind.value, event.sender_id)
            return None
        kind = event.content_kind
        if kind in UNSUPPORTED_KINDS:
            LOGGER.info("Ignoring unsupported %s message from %s", kind.value, event.sender_id)
            return None

        sender = sanitize_sender(event.sender_id)
        try:
            record = self._classify(event, sender)
        except Exception as exc:
            LOGGER.exception("Failed to process %s message from %s", kind.value, sender)
            record = NormalizedRecord(from_=sender, type=kind.value, error=str(exc) or type(exc).__name__)
        if record is None:
            return None
        return self._dispatch(record)

    def _classify(self, event: InboundEvent, sender: str) -> Optional[NormalizedRecord]:
        if event.content_kind in MEDIA_KINDS:
            return self._build_media_record(event, sender)
        if event.content_kind == ContentKind.TEXT:
            return NormalizedRecord(from_=sender, type=ContentKind.TEXT.value, text=event.body or "")
        LOGGER.info("Ignoring %s message from %s", event.content_kind.value, sender)
        return None

    def _build_media_record(self, event: InboundEvent, sender: str) -> Optional[NormalizedRecord]:
        if not event.mime_type:
            LOGGER.warning("Dropping %s from %s: no mimetype", event.content_kind.value, sender)
            return None
        data = self._session.decrypt_media(event)
        if not data:
            LOGGER.warning("Dropping %s from %s: decryption returned no data", event.content_kind.value, sender)
            return None
        stored = self._media_store.persist(sender, data, extension_for_mime(event.mime_type))
        return NormalizedRecord(
            from_=sender,
            type=event.content_kind.value,
            mimetype=event.mime_type,
            filename=stored.filename,
            file_url=stored.url,
        )

    def _dispatch(self, record: NormalizedRecord) -> NormalizedRecord:
        stamped = self._audit_log.append(record)
        try:
            self._forwarder.forward(stamped)
        except Exception:
            LOGGER.exception("Could not hand record from %s to the webhook forwarder", stamped.from_)
        return stamped
