"""Flask application entry point for the WhatsApp bridge."""

from __future__ import annotations

import atexit
import hmac
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from functools import wraps
from typing import Any, Callable, Dict, List, Optional

import requests
from flask import Flask, abort, request, send_file

from whatsapp_bridge.clock import MonotonicClock
from whatsapp_bridge.config import Settings
from whatsapp_bridge.engine import SessionEngine, load_engine
from whatsapp_bridge.errors import BridgeError, InvalidRequest
from whatsapp_bridge.models import OutboundRequest
from whatsapp_bridge.repositories.audit_log import AuditLog
from whatsapp_bridge.services.media_store import MediaStore
from whatsapp_bridge.services.message_pipeline import MessagePipeline
from whatsapp_bridge.services.outbound_dispatcher import OutboundDispatcher
from whatsapp_bridge.services.scheduler import Scheduler
from whatsapp_bridge.services.session_events import MessageReceived, SessionEventQueue
from whatsapp_bridge.services.session_manager import SessionManager
from whatsapp_bridge.services.webhook_forwarder import WebhookForwarder

LOGGER = logging.getLogger(__name__)

EXTENSION_KEY = "whatsapp_bridge"


class _RedactingFormatter(logging.Formatter):
    def __init__(self, secrets: List[str], fmt: str, datefmt: Optional[str] = None) -> None:
        super().__init__(fmt=fmt, datefmt=datefmt)
        self._secrets = sorted({secret for secret in secrets if secret}, key=len, reverse=True)

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        for secret in self._secrets:
            message = message.replace(secret, "***")
        return message


def configure_logging(settings: Settings) -> None:
    level = getattr(logging, settings.log_level, logging.INFO)
    handler = logging.StreamHandler()
    handler.setFormatter(
        _RedactingFormatter(
            [settings.access_key],
            fmt="%(asctime)s %(levelname)s %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    logging.basicConfig(level=level, handlers=[handler], force=True)


@dataclass
class BridgeContext:
    settings: Settings
    audit_log: AuditLog
    media_store: MediaStore
    forwarder: WebhookForwarder
    events: SessionEventQueue
    session: SessionManager
    pipeline: MessagePipeline
    dispatcher: OutboundDispatcher
    pipeline_executor: Optional[ThreadPoolExecutor] = None

    def start(self) -> None:
        self.events.start()
        self.session.start()

    def shutdown(self) -> None:
        self.events.stop()
        self.session.shutdown()
        self.forwarder.shutdown(wait=False)
        if self.pipeline_executor is not None:
            self.pipeline_executor.shutdown(wait=False)


def build_context(
    settings: Settings,
    engine: SessionEngine,
    *,
    scheduler: Optional[Scheduler] = None,
    http_session: Optional[requests.Session] = None,
    pipeline_workers: int = 4,
) -> BridgeContext:
    clock = MonotonicClock()
    audit_log = AuditLog(settings.audit_log_size, clock=clock)
    media_store = MediaStore(settings.uploads_dir, settings.public_base_url, clock=clock)
    forwarder = WebhookForwarder(
        settings.webhook_url,
        session=http_session,
        timeout=settings.webhook_timeout_seconds,
    )
    events = SessionEventQueue()
    session = SessionManager.from_settings(engine, events, settings, scheduler=scheduler)
    executor = (
        ThreadPoolExecutor(max_workers=pipeline_workers, thread_name_prefix="pipeline")
        if pipeline_workers > 0
        else None
    )
    pipeline = MessagePipeline(session, media_store, audit_log, forwarder, executor=executor)
    events.subscribe(MessageReceived, pipeline.on_message_received)
    return BridgeContext(
        settings=settings,
        audit_log=audit_log,
        media_store=media_store,
        forwarder=forwarder,
        events=events,
        session=session,
        pipeline=pipeline,
        dispatcher=OutboundDispatcher(session),
        pipeline_executor=executor,
    )


def _optional_str(payload: Dict[str, Any], key: str) -> Optional[str]:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, (str, int)):
        raise InvalidRequest(f"{key} must be a string")
    return str(value)


def create_app(context: BridgeContext) -> Flask:
    settings = context.settings
    app = Flask(__name__)
    app.extensions[EXTENSION_KEY] = context

    def require_access_key(view: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(view)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            header = request.headers.get("Authorization", "")
            if not header.startswith("Bearer "):
                return {"error": "Unauthorized: missing token"}, 401
            token = header[len("Bearer "):].strip()
            if not hmac.compare_digest(token.encode("utf-8"), settings.access_key.encode("utf-8")):
                app.logger.warning("Rejected request to %s with an invalid access key", request.path)
                return {"error": "Forbidden: invalid access key"}, 403
            return view(*args, **kwargs)

        return wrapper

    @app.errorhandler(BridgeError)
    def handle_bridge_error(exc: BridgeError) -> Any:
        app.logger.warning("%s on %s: %s", type(exc).__name__, request.path, exc)
        return {"error": str(exc), "type": type(exc).__name__}, exc.status_code

    @app.route("/health", methods=["GET"])
    def health() -> Dict[str, str]:
        return {"status": "ok"}

    @app.route("/status", methods=["GET"])
    def status() -> Dict[str, Any]:
        state = context.session.snapshot()
        return {"connected": state.connected, "phase": state.phase.value}

    @app.route("/config", methods=["GET"])
    def config() -> Dict[str, str]:
        return {
            "companyName": settings.company_name,
            "clientId": settings.client_id,
            "termsUrl": settings.terms_url,
        }

    @app.route("/qr-data", methods=["GET"])
    @require_access_key
    def qr_data() -> Any:
        artifact = context.session.latest_qr_artifact()
        if not artifact:
            return {"status": False, "message": "QR not generated yet. Retry in a few seconds."}, 404
        return {"status": True, "data": artifact}

    @app.route("/send", methods=["POST"])
    @require_access_key
    def send() -> Dict[str, Any]:
        if request.files:
            upload = request.files.get("file")
            if upload is None or not upload.filename:
                raise InvalidRequest("file is required")
            staged = context.media_store.stage_upload(upload.stream, upload.filename)
            outbound = OutboundRequest(
                recipient=request.form.get("number", ""),
                upload_path=str(staged),
                filename=staged.name.split("-", 1)[1],
                caption=request.form.get("caption"),
            )
        else:
            payload = request.get_json(silent=True) or {}
            if not isinstance(payload, dict):
                raise InvalidRequest("request body must be a JSON object")
            outbound = OutboundRequest(
                recipient=_optional_str(payload, "number") or "",
                text=_optional_str(payload, "message"),
                file_url=_optional_str(payload, "fileUrl"),
                filename=_optional_str(payload, "filename"),
                caption=_optional_str(payload, "caption"),
            )
        result = context.dispatcher.dispatch(outbound)
        return {
            "success": True,
            "kind": result.kind,
            "message": f"Message sent to {result.recipient}",
        }

    @app.route("/restart", methods=["POST"])
    @require_access_key
    def restart() -> Any:
        if not context.session.force_restart(manual=True):
            return {"restarting": False, "message": "Start already in progress"}, 409
        app.logger.warning("Manual session restart requested")
        return {"restarting": True}, 202

    @app.route("/logs", methods=["GET"])
    @require_access_key
    def logs() -> Dict[str, Any]:
        limit_param = request.args.get("limit", str(context.audit_log.capacity))
        try:
            limit = max(1, int(limit_param))
        except ValueError:
            abort(400, "limit must be numeric")
        records = context.audit_log.fetch_recent(limit)
        app.logger.info("Logs endpoint returning %d entries", len(records))
        return {"logs": [record.to_payload() for record in records]}

    @app.route("/uploads/<filename>", methods=["GET"])
    def uploads(filename: str) -> Any:
        path = context.media_store.resolve(filename)
        if path is None:
            abort(404)
        return send_file(path)

    return app


def main() -> None:
    settings = Settings.from_env()
    configure_logging(settings)
    engine = load_engine(settings.session_engine)

    context = build_context(settings, engine)
    atexit.register(context.shutdown)
    app = create_app(context)
    context.start()
    LOGGER.info("WhatsApp API running on http://localhost:%d", settings.port)
    app.run(host="0.0.0.0", port=settings.port)


if __name__ == "__main__":
    main()
