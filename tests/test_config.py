from __future__ import annotations

from pathlib import Path

import pytest

from whatsapp_bridge.config import Settings

ENV_KEYS = (
    "ACCESS_KEY",
    "SESSION_ENGINE",
    "PORT",
    "SESSION_NAME",
    "WEBHOOK_URL",
    "PUBLIC_BASE_URL",
    "UPLOADS_DIR",
    "AUDIT_LOG_SIZE",
    "MAX_RETRIES",
    "RETRY_BASE_DELAY_SECONDS",
    "PURGE_ON_CONFLICT",
    "LOG_LEVEL",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


def test_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ACCESS_KEY", "secret")

    settings = Settings.from_env()

    assert settings.access_key == "secret"
    assert settings.port == 3000
    assert settings.session_name == "default_session"
    assert settings.webhook_url is None
    assert settings.session_engine is None
    assert settings.public_base_url == "http://localhost:3000"
    assert settings.uploads_dir == Path("uploads")
    assert settings.audit_log_size == 100
    assert settings.max_retries == 5
    assert settings.purge_on_conflict is True


def test_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ACCESS_KEY", "secret")
    monkeypatch.setenv("PORT", "8080")
    monkeypatch.setenv("WEBHOOK_URL", "https://hooks.example.com/in")
    monkeypatch.setenv("SESSION_ENGINE", "my_engine:create")
    monkeypatch.setenv("RETRY_BASE_DELAY_SECONDS", "0.5")
    monkeypatch.setenv("PURGE_ON_CONFLICT", "no")
    monkeypatch.setenv("LOG_LEVEL", "debug")

    settings = Settings.from_env()

    assert settings.port == 8080
    assert settings.public_base_url == "http://localhost:8080"
    assert settings.webhook_url == "https://hooks.example.com/in"
    assert settings.session_engine == "my_engine:create"
    assert settings.retry_base_delay_seconds == 0.5
    assert settings.purge_on_conflict is False
    assert settings.log_level == "DEBUG"


def test_public_base_url_trailing_slash_is_removed(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ACCESS_KEY", "secret")
    monkeypatch.setenv("PUBLIC_BASE_URL", "https://bridge.example.com/")

    assert Settings.from_env().public_base_url == "https://bridge.example.com"


def test_missing_access_key() -> None:
    with pytest.raises(RuntimeError, match="ACCESS_KEY"):
        Settings.from_env()


def test_invalid_integer(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ACCESS_KEY", "secret")
    monkeypatch.setenv("MAX_RETRIES", "many")

    with pytest.raises(RuntimeError, match="MAX_RETRIES"):
        Settings.from_env()


def test_invalid_boolean(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ACCESS_KEY", "secret")
    monkeypatch.setenv("PURGE_ON_CONFLICT", "maybe")

    with pytest.raises(RuntimeError, match="PURGE_ON_CONFLICT"):
        Settings.from_env()


def test_audit_log_size_must_be_positive(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ACCESS_KEY", "secret")
    monkeypatch.setenv("AUDIT_LOG_SIZE", "0")

    with pytest.raises(RuntimeError, match="AUDIT_LOG_SIZE"):
        Settings.from_env()
