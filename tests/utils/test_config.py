"""Tests for process-wide settings."""

import pytest

from invoiceml.utils.config import Settings, get_settings, reload_settings

pytestmark = pytest.mark.unit


def test_settings_defaults(monkeypatch):
    """Defaults favour local development."""
    for name in ("INVOICEML_LOG_LEVEL", "INVOICEML_JSON_LOGS", "INVOICEML_DEV_MODE"):
        monkeypatch.delenv(name, raising=False)

    settings = Settings()

    assert settings.log_level == "INFO"
    assert settings.json_logs is False
    assert settings.dev_mode is True


def test_settings_env_override(monkeypatch):
    """Environment variables with the INVOICEML_ prefix override defaults."""
    monkeypatch.setenv("INVOICEML_LOG_LEVEL", "debug")
    monkeypatch.setenv("INVOICEML_JSON_LOGS", "true")
    monkeypatch.setenv("INVOICEML_DEV_MODE", "false")

    settings = reload_settings()

    assert settings.log_level == "DEBUG"
    assert settings.json_logs is True
    assert settings.dev_mode is False


def test_invalid_log_level_rejected(monkeypatch):
    monkeypatch.setenv("INVOICEML_LOG_LEVEL", "verbose")

    with pytest.raises(ValueError, match="log_level"):
        Settings()


def test_get_settings_is_cached():
    reload_settings()
    assert get_settings() is get_settings()
