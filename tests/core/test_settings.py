"""Tests for twocheck.core.config module."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from twocheck.core.config import CoreSettings, clear_settings_cache, get_settings


class TestCoreSettingsDefaults:
    """Tests for default settings values."""

    def test_sweep_defaults(self):
        """Sweep intervals default to one minute and the decay config."""
        settings = CoreSettings()
        assert settings.timeout_sweep_seconds == 60.0
        assert settings.decay_sweep_seconds is None

    def test_ledger_defaults(self):
        """No ledger URL means the in-memory ledger."""
        settings = CoreSettings()
        assert settings.ledger_url is None
        assert settings.ledger_token is None
        assert settings.ledger_timeout == 10.0

    def test_logging_defaults(self):
        settings = CoreSettings()
        assert settings.log_level == "INFO"
        assert settings.log_format == ""
        assert settings.log_file is None

    def test_sweep_interval_must_be_positive(self):
        """A zero sweep interval is rejected."""
        with pytest.raises(ValidationError):
            CoreSettings(timeout_sweep_seconds=0)


class TestEnvironmentOverrides:
    """Tests for TWOCHECK_ environment variables."""

    def test_ledger_url_from_env(self, monkeypatch):
        monkeypatch.setenv("TWOCHECK_LEDGER_URL", "http://ledger:8080")
        assert CoreSettings().ledger_url == "http://ledger:8080"

    def test_numeric_from_env(self, monkeypatch):
        """Numeric values are parsed from strings."""
        monkeypatch.setenv("TWOCHECK_TIMEOUT_SWEEP_SECONDS", "15")
        assert CoreSettings().timeout_sweep_seconds == 15.0

    def test_unrelated_env_ignored(self, monkeypatch):
        """Variables without the prefix do not leak in."""
        monkeypatch.setenv("LOG_LEVEL", "DEBUG")
        assert CoreSettings().log_level == "INFO"


class TestGetSettings:
    """Tests for the lazy settings accessor."""

    def test_returns_singleton(self):
        assert get_settings() is get_settings()

    def test_clear_cache_reloads(self, monkeypatch):
        """Clearing the cache picks up changed environment."""
        first = get_settings()
        monkeypatch.setenv("TWOCHECK_LOG_LEVEL", "DEBUG")
        assert get_settings().log_level == "INFO"

        clear_settings_cache()
        second = get_settings()
        assert second is not first
        assert second.log_level == "DEBUG"
