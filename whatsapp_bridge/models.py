"""Data transfer objects for session state, inbound events and outbound requests."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

_NON_DIGITS = re.compile(r"\D+")


class SessionPhase(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    RESTARTING = "restarting"
    FAILED = "failed"


class ChatKind(str, Enum):
    DIRECT = "direct"
    GROUP = "group"
    BROADCAST = "broadcast"


class ContentKind(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    PTT = "ptt"
    DOCUMENT = "document"
    STICKER = "sticker"
    LOCATION = "location"
    VCARD = "vcard"
    OTHER = "other"

    @classmethod
    def parse(cls, value: Optional[str]) -> "ContentKind":
        """Map an engine label onto a known kind, falling back to ``OTHER``."""

        if not value:
            return cls.OTHER
        try:
            return cls(value.lower())
        except ValueError:
            return cls.OTHER


MEDIA_KINDS = frozenset(
    {ContentKind.IMAGE, ContentKind.VIDEO, ContentKind.AUDIO, ContentKind.PTT, ContentKind.DOCUMENT}
)
UNSUPPORTED_KINDS = frozenset({ContentKind.STICKER, ContentKind.LOCATION, ContentKind.VCARD})


def sanitize_sender(sender_id: str) -> str:
    """Return only the digits of a chat id such as ``5215512345678@c.us``."""

    local_part = (sender_id or "").split("@", 1)[0]
    return _NON_DIGITS.sub("", local_part)


@dataclass(frozen=True)
class SessionState:
    phase: SessionPhase
    retry_count: int
    last_qr_artifact: Optional[str]
    health_check_active: bool
    connected: bool


@dataclass(frozen=True)
class InboundEvent:
    sender_id: str
    chat_kind: ChatKind
    content_kind: ContentKind
    body: Optional[str] = None
    media_ref: Any = None
    mime_type: Optional[str] = None
    message_id: Optional[str] = None


@dataclass(frozen=True)
class NormalizedRecord:
    from_: str
    type: str
    text: Optional[str] = None
    mimetype: Optional[str] = None
    filename: Optional[str] = None
    file_url: Optional[str] = None
    timestamp: Optional[str] = None
    error: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"from": self.from_, "type": self.type}
        optional = {
            "text": self.text,
            "mimetype": self.mimetype,
            "filename": self.filename,
            "fileUrl": self.file_url,
            "timestamp": self.timestamp,
            "error": self.error,
        }
        payload.update({key: value for key, value in optional.items() if value is not None})
        return payload


@dataclass(frozen=True)
class OutboundRequest:
    recipient: str
    text: Optional[str] = None
    file_url: Optional[str] = None
    upload_path: Optional[str] = None
    filename: Optional[str] = None
    caption: Optional[str] = None


@dataclass(frozen=True)
class DeliveryResult:
    recipient: str
    kind: str
    detail: Any = None
