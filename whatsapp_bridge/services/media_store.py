"""Filesystem storage for inbound media and staged outbound uploads."""

from __future__ import annotations

import logging
import os
import tempfile
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Optional

from werkzeug.utils import secure_filename

from ..clock import MonotonicClock

LOGGER = logging.getLogger(__name__)

DEFAULT_EXTENSION = "bin"

# MIME subtypes whose natural extension differs from the subtype itself.
_SUBTYPE_EXTENSIONS = {
    "jpeg": "jpg",
    "jpg": "jpg",
    "png": "png",
    "gif": "gif",
    "webp": "webp",
    "mp4": "mp4",
    "3gpp": "3gp",
    "quicktime": "mov",
    "ogg": "ogg",
    "opus": "opus",
    "mpeg": "mp3",
    "mp3": "mp3",
    "aac": "aac",
    "amr": "amr",
    "wav": "wav",
    "x-wav": "wav",
    "mp4a-latm": "m4a",
    "pdf": "pdf",
    "msword": "doc",
    "vnd.openxmlformats-officedocument.wordprocessingml.document": "docx",
    "vnd.ms-excel": "xls",
    "vnd.openxmlformats-officedocument.spreadsheetml.sheet": "xlsx",
    "vnd.ms-powerpoint": "ppt",
    "vnd.openxmlformats-officedocument.presentationml.presentation": "pptx",
    "plain": "txt",
    "csv": "csv",
    "zip": "zip",
}


def extension_for_mime(mime_type: Optional[str]) -> str:
    """Derive a file extension from a MIME type such as ``audio/ogg; codecs=opus``."""

    if not mime_type or "/" not in mime_type:
        return DEFAULT_EXTENSION
    subtype = mime_type.split(";", 1)[0].split("/", 1)[1].strip().lower()
    return _SUBTYPE_EXTENSIONS.get(subtype, DEFAULT_EXTENSION)


@dataclass(frozen=True)
class StoredMedia:
    filename: str
    path: Path
    url: str


class MediaStore:
    """Writes decrypted media under the uploads directory."""

    STAGING_DIRNAME = ".staging"

    def __init__(
        self,
        uploads_dir: Path,
        public_base_url: str,
        *,
        clock: Optional[MonotonicClock] = None,
    ) -> None:
        self._uploads_dir = Path(uploads_dir)
        self._public_base_url = public_base_url.rstrip("/")
        self._clock = clock or MonotonicClock()
        self._uploads_dir.mkdir(parents=True, exist_ok=True)

    @property
    def staging_dir(self) -> Path:
        path = self._uploads_dir / self.STAGING_DIRNAME
        path.mkdir(parents=True, exist_ok=True)
        return path

    def public_url(self, filename: str) -> str:
        return f"{self._public_base_url}/uploads/{filename}"

    def persist(self, sender: str, data: bytes, extension: str) -> StoredMedia:
        """Write ``data`` as ``<sender>-<timestamp>.<extension>``.

        The file is written to a temporary name first and moved into place
        so readers never observe a partial file.
        """

        filename = f"{sender}-{self._clock.now_ms()}.{extension}"
        target = self._uploads_dir / filename
        fd, tmp_name = tempfile.mkstemp(dir=self._uploads_dir, prefix=".incoming-")
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
            os.replace(tmp_name, target)
        except OSError:
            try:
                os.unlink(tmp_name)
            except OSError:
                LOGGER.warning("Could not remove temporary file %s", tmp_name)
            raise
        LOGGER.info("Stored %d bytes of media as %s", len(data), filename)
        return StoredMedia(filename=filename, path=target, url=self.public_url(filename))

    def stage_upload(self, stream: BinaryIO, original_name: str) -> Path:
        """Copy an uploaded stream into the staging area, keeping its extension."""

        safe_name = secure_filename(original_name or "") or "upload"
        target = self.staging_dir / f"{uuid.uuid4().hex}-{safe_name}"
        with target.open("wb") as handle:
            while True:
                chunk = stream.read(64 * 1024)
                if not chunk:
                    break
                handle.write(chunk)
        LOGGER.debug("Staged upload %s as %s", original_name, target.name)
        return target

    def resolve(self, filename: str) -> Optional[Path]:
        """Return the path of a persisted file, or ``None`` for unknown names."""

        safe_name = secure_filename(filename)
        if not safe_name or safe_name != filename:
            return None
        path = self._uploads_dir / safe_name
        return path if path.is_file() else None
