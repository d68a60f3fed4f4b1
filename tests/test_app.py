from __future__ import annotations

import io
from pathlib import Path

import pytest

from tests.fakes import FakeEngine, FakeHttpSession, ManualScheduler
from whatsapp_bridge.app import build_context, create_app
from whatsapp_bridge.config import Settings
from whatsapp_bridge.models import ChatKind, ContentKind, InboundEvent, SessionPhase

ACCESS_KEY = "s3cret-key"
AUTH = {"Authorization": f"Bearer {ACCESS_KEY}"}


class Bridge:
    def __init__(self, tmp_path: Path, engine: FakeEngine) -> None:
        self.settings = Settings(
            access_key=ACCESS_KEY,
            company_name="Acme",
            client_id="42",
            terms_url="https://acme.example.com/terms",
            public_base_url="http://bridge.local",
            uploads_dir=tmp_path / "uploads",
            session_data_dir=tmp_path / "tokens",
            audit_log_size=3,
        )
        self.engine = engine
        self.scheduler = ManualScheduler()
        self.context = build_context(
            self.settings,
            engine,
            scheduler=self.scheduler,
            http_session=FakeHttpSession(),
            pipeline_workers=0,
        )
        self.app = create_app(self.context)
        self.client = self.app.test_client()

    def connect(self) -> None:
        self.context.session.start()
        self.scheduler.run_pending()
        self.context.events.drain()

    def receive(self, body: str, sender: str = "5215512345678@c.us") -> None:
        self.engine.last_options.on_message(
            InboundEvent(sender_id=sender, chat_kind=ChatKind.DIRECT, content_kind=ContentKind.TEXT, body=body)
        )
        self.context.events.drain()


@pytest.fixture
def bridge(tmp_path: Path):
    instance = Bridge(tmp_path, FakeEngine())
    yield instance
    instance.context.shutdown()


def test_health_is_public(bridge: Bridge) -> None:
    response = bridge.client.get("/health")

    assert response.status_code == 200
    assert response.get_json() == {"status": "ok"}


def test_config_does_not_expose_access_key(bridge: Bridge) -> None:
    body = bridge.client.get("/config").get_json()

    assert body == {"companyName": "Acme", "clientId": "42", "termsUrl": "https://acme.example.com/terms"}
    assert ACCESS_KEY not in str(body)


def test_status_tracks_session_phase(bridge: Bridge) -> None:
    assert bridge.client.get("/status").get_json() == {"connected": False, "phase": "idle"}

    bridge.connect()

    assert bridge.client.get("/status").get_json() == {"connected": True, "phase": "connected"}


def test_missing_token_is_unauthorized(bridge: Bridge) -> None:
    response = bridge.client.post("/send", json={"number": "5215512345678", "message": "hola"})

    assert response.status_code == 401


def test_wrong_token_is_forbidden(bridge: Bridge) -> None:
    response = bridge.client.get("/logs", headers={"Authorization": "Bearer nope"})

    assert response.status_code == 403


def test_send_text(bridge: Bridge) -> None:
    bridge.connect()

    response = bridge.client.post(
        "/send", json={"number": "+52 1 55 1234 5678", "message": "hola"}, headers=AUTH
    )

    assert response.status_code == 200
    assert response.get_json() == {
        "success": True,
        "kind": "text",
        "message": "Message sent to 5215512345678@c.us",
    }
    assert bridge.engine.last_handle.sent == [("text", "5215512345678@c.us", "hola")]


def test_send_while_disconnected_is_unavailable(bridge: Bridge) -> None:
    response = bridge.client.post("/send", json={"number": "5215512345678", "message": "hola"}, headers=AUTH)

    assert response.status_code == 503
    assert response.get_json()["type"] == "NotConnected"


def test_send_without_payload_is_bad_request(bridge: Bridge) -> None:
    bridge.connect()

    response = bridge.client.post("/send", json={"number": "5215512345678"}, headers=AUTH)

    assert response.status_code == 400


def test_send_unsupported_extension(bridge: Bridge) -> None:
    bridge.connect()

    response = bridge.client.post(
        "/send",
        json={"number": "5215512345678", "fileUrl": "https://cdn.example.com/tool.exe"},
        headers=AUTH,
    )

    assert response.status_code == 415
    assert bridge.engine.last_handle.sent == []


def test_send_engine_failure_is_bad_gateway(bridge: Bridge) -> None:
    bridge.connect()
    bridge.engine.last_handle.send_error = RuntimeError("rate limited")

    response = bridge.client.post("/send", json={"number": "5215512345678", "message": "hola"}, headers=AUTH)

    assert response.status_code == 502
    assert response.get_json()["type"] == "DeliveryFailure"


def test_send_multipart_upload_is_staged_and_removed(bridge: Bridge) -> None:
    bridge.connect()

    response = bridge.client.post(
        "/send",
        data={
            "number": "5215512345678",
            "caption": "Manual",
            "file": (io.BytesIO(b"%PDF-1.7"), "manual.pdf"),
        },
        content_type="multipart/form-data",
        headers=AUTH,
    )

    assert response.status_code == 200
    assert response.get_json()["kind"] == "file"
    kind, recipient, source, filename, caption = bridge.engine.last_handle.sent[0]
    assert (kind, recipient, filename, caption) == ("file", "5215512345678@c.us", "manual.pdf", "Manual")
    assert not Path(source).exists()
    assert list(bridge.context.media_store.staging_dir.iterdir()) == []


def test_restart_is_rejected_while_starting(bridge: Bridge) -> None:
    bridge.connect()

    first = bridge.client.post("/restart", headers=AUTH)
    second = bridge.client.post("/restart", headers=AUTH)

    assert first.status_code == 202
    assert first.get_json() == {"restarting": True}
    assert second.status_code == 409
    assert bridge.context.session.snapshot().phase == SessionPhase.STARTING


def test_qr_data_waits_for_artifact(tmp_path: Path) -> None:
    bridge = Bridge(tmp_path, FakeEngine(failures=1, qr="data:image/png;base64,QRQR"))
    try:
        response = bridge.client.get("/qr-data", headers=AUTH)
        assert response.status_code == 404
        assert response.get_json()["status"] is False

        bridge.connect()

        response = bridge.client.get("/qr-data", headers=AUTH)
        assert response.status_code == 200
        assert response.get_json() == {"status": True, "data": "data:image/png;base64,QRQR"}
    finally:
        bridge.context.shutdown()


def test_logs_return_newest_first_and_honour_capacity(bridge: Bridge) -> None:
    bridge.connect()
    for index in range(4):
        bridge.receive(f"mensaje {index}")

    logs = bridge.client.get("/logs", headers=AUTH).get_json()["logs"]
    limited = bridge.client.get("/logs?limit=1", headers=AUTH).get_json()["logs"]

    assert [entry["text"] for entry in logs] == ["mensaje 3", "mensaje 2", "mensaje 1"]
    assert logs[0]["from"] == "5215512345678"
    assert "timestamp" in logs[0]
    assert [entry["text"] for entry in limited] == ["mensaje 3"]


def test_logs_reject_non_numeric_limit(bridge: Bridge) -> None:
    response = bridge.client.get("/logs?limit=all", headers=AUTH)

    assert response.status_code == 400


def test_uploads_serve_persisted_media(bridge: Bridge) -> None:
    stored = bridge.context.media_store.persist("5215512345678", b"\x89PNG data", "png")

    response = bridge.client.get(f"/uploads/{stored.filename}")

    assert response.status_code == 200
    assert response.data == b"\x89PNG data"
    response.close()


def test_uploads_unknown_file_is_not_found(bridge: Bridge) -> None:
    assert bridge.client.get("/uploads/missing.png").status_code == 404
