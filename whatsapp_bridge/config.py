"""Application configuration handling."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

ENV_PATH = Path(__file__).resolve().parent / ".env"
load_dotenv(ENV_PATH, encoding="utf-8-sig")

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def _env(key: str, default: str | None = None) -> str:
    value = os.getenv(key, default)
    if value is None:
        raise RuntimeError(f"Missing required environment variable: {key}")
    return value


def _env_int(key: str, default: int | None = None) -> int:
    value = _env(key, str(default) if default is not None else None)
    try:
        return int(value)
    except (TypeError, ValueError):
        raise RuntimeError(f"Environment variable {key} must be an integer") from None


def _env_float(key: str, default: float | None = None) -> float:
    value = _env(key, str(default) if default is not None else None)
    try:
        return float(value)
    except (TypeError, ValueError):
        raise RuntimeError(f"Environment variable {key} must be a number") from None


def _env_bool(key: str, default: bool) -> bool:
    value = os.getenv(key)
    if value is None or not value.strip():
        return default
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise RuntimeError(f"Environment variable {key} must be a boolean")


@dataclass(frozen=True)
class Settings:
    access_key: str
    session_engine: Optional[str] = None
    port: int = 3000
    session_name: str = "default_session"
    company_name: str = "Empresa Desconocida"
    client_id: str = "0000"
    terms_url: str = ""
    webhook_url: Optional[str] = None
    public_base_url: str = "http://localhost:3000"
    uploads_dir: Path = Path("uploads")
    session_data_dir: Path = Path("tokens")
    audit_log_size: int = 100
    max_retries: int = 5
    retry_base_delay_seconds: float = 5.0
    restart_delay_seconds: float = 10.0
    health_check_interval_seconds: float = 30.0
    health_check_timeout_seconds: float = 10.0
    webhook_timeout_seconds: float = 10.0
    send_timeout_seconds: float = 30.0
    purge_on_conflict: bool = True
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if not self.access_key:
            raise RuntimeError("ACCESS_KEY must not be empty")
        if self.audit_log_size <= 0:
            raise RuntimeError("AUDIT_LOG_SIZE must be positive")
        if self.max_retries < 0:
            raise RuntimeError("MAX_RETRIES must not be negative")

    @classmethod
    def from_env(cls) -> "Settings":
        port = _env_int("PORT", 3000)
        webhook_url = os.getenv("WEBHOOK_URL", "").strip() or None
        session_engine = os.getenv("SESSION_ENGINE", "").strip() or None
        return cls(
            access_key=_env("ACCESS_KEY"),
            session_engine=session_engine,
            port=port,
            session_name=_env("SESSION_NAME", "default_session"),
            company_name=_env("COMPANY_NAME", "Empresa Desconocida"),
            client_id=_env("CLIENT_ID", "0000"),
            terms_url=_env("TERMS_URL", ""),
            webhook_url=webhook_url,
            public_base_url=_env("PUBLIC_BASE_URL", f"http://localhost:{port}").rstrip("/"),
            uploads_dir=Path(_env("UPLOADS_DIR", "uploads")).expanduser(),
            session_data_dir=Path(_env("SESSION_DATA_DIR", "tokens")).expanduser(),
            audit_log_size=_env_int("AUDIT_LOG_SIZE", 100),
            max_retries=_env_int("MAX_RETRIES", 5),
            retry_base_delay_seconds=_env_float("RETRY_BASE_DELAY_SECONDS", 5.0),
            restart_delay_seconds=_env_float("RESTART_DELAY_SECONDS", 10.0),
            health_check_interval_seconds=_env_float("HEALTH_CHECK_INTERVAL_SECONDS", 30.0),
            health_check_timeout_seconds=_env_float("HEALTH_CHECK_TIMEOUT_SECONDS", 10.0),
            webhook_timeout_seconds=_env_float("WEBHOOK_TIMEOUT_SECONDS", 10.0),
            send_timeout_seconds=_env_float("SEND_TIMEOUT_SECONDS", 30.0),
            purge_on_conflict=_env_bool("PURGE_ON_CONFLICT", True),
            log_level=_env("LOG_LEVEL", "INFO").upper(),
        )
