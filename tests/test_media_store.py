from __future__ import annotations

import io
from pathlib import Path

import pytest

from whatsapp_bridge.clock import MonotonicClock
from whatsapp_bridge.services.media_store import MediaStore, extension_for_mime


@pytest.mark.parametrize(
    "mime_type, expected",
    [
        ("image/png", "png"),
        ("image/jpeg", "jpg"),
        ("audio/ogg; codecs=opus", "ogg"),
        ("application/pdf", "pdf"),
        ("application/vnd.openxmlformats-officedocument.wordprocessingml.document", "docx"),
        ("application/x-custom", "bin"),
        ("garbage", "bin"),
        (None, "bin"),
    ],
)
def test_extension_for_mime(mime_type, expected) -> None:
    assert extension_for_mime(mime_type) == expected


def test_persist_writes_file_and_builds_public_url(tmp_path: Path) -> None:
    clock = MonotonicClock(time_source=lambda: 1_700_000_000.0)
    store = MediaStore(tmp_path / "uploads", "http://bridge.local/", clock=clock)

    stored = store.persist("5215512345678", b"payload", "png")

    assert stored.filename == "5215512345678-1700000000000.png"
    assert stored.path.read_bytes() == b"payload"
    assert stored.url == "http://bridge.local/uploads/5215512345678-1700000000000.png"


def test_rapid_persists_never_collide(tmp_path: Path) -> None:
    clock = MonotonicClock(time_source=lambda: 1_700_000_000.0)
    store = MediaStore(tmp_path, "http://bridge.local", clock=clock)

    names = {store.persist("5215512345678", b"x", "jpg").filename for _ in range(5)}

    assert len(names) == 5


def test_persist_leaves_no_temporary_files(tmp_path: Path) -> None:
    store = MediaStore(tmp_path, "http://bridge.local")

    store.persist("1", b"data", "bin")

    assert [path.name for path in tmp_path.iterdir() if path.name.startswith(".incoming-")] == []


def test_stage_upload_keeps_extension_and_sanitises_name(tmp_path: Path) -> None:
    store = MediaStore(tmp_path, "http://bridge.local")

    staged = store.stage_upload(io.BytesIO(b"%PDF-1.7"), "../../etc/Reporte final.pdf")

    assert staged.parent == store.staging_dir
    assert staged.name.endswith("-etc_Reporte_final.pdf")
    assert staged.read_bytes() == b"%PDF-1.7"


def test_resolve_only_returns_persisted_files(tmp_path: Path) -> None:
    store = MediaStore(tmp_path, "http://bridge.local")
    stored = store.persist("1", b"data", "png")
    store.stage_upload(io.BytesIO(b"x"), "secret.pdf")

    assert store.resolve(stored.filename) == stored.path
    assert store.resolve("missing.png") is None
    assert store.resolve(".staging") is None
    assert store.resolve("../config.py") is None
