"""Validates caller send requests and routes them into the session."""

from __future__ import annotations

import logging
import os
import re
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Protocol
from urllib.parse import unquote, urlparse

from ..errors import InvalidRequest, NotConnected, UnsupportedMediaType
from ..models import DeliveryResult, OutboundRequest

LOGGER = logging.getLogger(__name__)

_NON_DIGITS = re.compile(r"\D+")
USER_SUFFIX = "@c.us"


class MediaCategory(str, Enum):
    IMAGE = "image"
    DOCUMENT = "document"
    AUDIO = "audio"
    VIDEO = "video"


EXTENSION_CATEGORIES: Dict[str, MediaCategory] = {
    **{ext: MediaCategory.IMAGE for ext in ("jpg", "jpeg", "png", "gif", "webp")},
    **{
        ext: MediaCategory.DOCUMENT
        for ext in ("pdf", "doc", "docx", "xls", "xlsx", "ppt", "pptx", "txt", "csv", "zip")
    },
    **{ext: MediaCategory.AUDIO for ext in ("mp3", "ogg", "opus", "wav", "m4a", "aac", "amr")},
    **{ext: MediaCategory.VIDEO for ext in ("mp4", "3gp", "mov")},
}

# Session capability used for each category, and the result kind reported back.
SEND_CAPABILITIES: Dict[MediaCategory, tuple[str, str]] = {
    MediaCategory.IMAGE: ("send_image", "image"),
    MediaCategory.DOCUMENT: ("send_file", "file"),
    MediaCategory.AUDIO: ("send_file", "file"),
    MediaCategory.VIDEO: ("send_file", "file"),
}


class OutboundSession(Protocol):
    def currently_connected(self) -> bool: ...

    def send_text(self, to: str, body: str) -> Any: ...

    def send_image(self, to: str, source: str, filename: str, caption: Optional[str] = None) -> Any: ...

    def send_file(self, to: str, source: str, filename: str, caption: Optional[str] = None) -> Any: ...


def normalize_recipient(recipient: str) -> str:
    """Turn ``+52 1 55 1234 5678`` into ``5215512345678@c.us``; full ids pass through."""

    value = (recipient or "").strip()
    if not value:
        raise InvalidRequest("recipient is required")
    if "@" in value:
        return value
    digits = _NON_DIGITS.sub("", value)
    if not digits:
        raise InvalidRequest(f"recipient {recipient!r} contains no digits")
    return f"{digits}{USER_SUFFIX}"


def media_category(name: str) -> MediaCategory:
    extension = os.path.splitext(name)[1].lstrip(".").lower()
    category = EXTENSION_CATEGORIES.get(extension)
    if category is None:
        raise UnsupportedMediaType(f"unsupported file extension: {extension or '<none>'}")
    return category


def _filename_from_url(url: str) -> str:
    path = unquote(urlparse(url).path)
    return os.path.basename(path)


class OutboundDispatcher:
    def __init__(self, session: OutboundSession) -> None:
        self._session = session

    def dispatch(self, request: OutboundRequest) -> DeliveryResult:
        try:
            return self._dispatch(request)
        finally:
            if request.upload_path:
                self._discard_upload(request.upload_path)

    def _dispatch(self, request: OutboundRequest) -> DeliveryResult:
        recipient = normalize_recipient(request.recipient)
        payloads = [value for value in (request.text, request.file_url, request.upload_path) if value]
        if len(payloads) != 1:
            raise InvalidRequest("exactly one of message, fileUrl or file is required")

        if request.text:
            if not self._session.currently_connected():
                raise NotConnected("Session is not connected; waiting for reconnection")
            detail = self._session.send_text(recipient, request.text)
            LOGGER.info("Sent text message to %s", recipient)
            return DeliveryResult(recipient=recipient, kind="text", detail=detail)

        source = request.file_url or request.upload_path
        if request.file_url:
            filename = request.filename or _filename_from_url(request.file_url)
        else:
            filename = request.filename or Path(request.upload_path).name
        category = media_category(filename)
        if not self._session.currently_connected():
            raise NotConnected("Session is not connected; waiting for reconnection")

        capability, kind = SEND_CAPABILITIES[category]
        send = getattr(self._session, capability)
        detail = send(recipient, source, filename, request.caption)
        LOGGER.info("Sent %s %s to %s", category.value, filename, recipient)
        return DeliveryResult(recipient=recipient, kind=kind, detail=detail)

    @staticmethod
    def _discard_upload(path: str) -> None:
        try:
            os.unlink(path)
        except FileNotFoundError:
            return
        except OSError:
            LOGGER.exception("Could not remove staged upload %s", path)
