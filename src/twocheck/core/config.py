"""Core configuration - runtime settings for the twocheck package.

Process-level settings (logging, sweep intervals, ledger endpoint) flow
through this module. Protocol rules (state graph, timeouts, trust bands,
dispute types) live in YAML documents loaded by
:mod:`twocheck.core.protocol_config`.

Usage:
    from twocheck.core.config import get_settings
    settings = get_settings()

    interval = settings.timeout_sweep_seconds
"""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class CoreSettings(BaseSettings):
    """Core configuration settings for the 2-Check engine.

    Settings can be configured via environment variables with the
    TWOCHECK_ prefix, or a local .env file.
    """

    model_config = SettingsConfigDict(
        env_prefix="TWOCHECK_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ==========================================================================
    # PROTOCOL CONFIG
    # ==========================================================================

    config_dir: str | None = Field(
        default=None,
        description="Directory holding 2check-config.yaml, timeout-rules.yaml and trust-scoring.yaml",
    )

    # ==========================================================================
    # SWEEP SETTINGS
    # ==========================================================================

    timeout_sweep_seconds: float = Field(
        default=60.0,
        description="Interval between timeout/reminder/escalation sweeps",
        gt=0,
    )
    decay_sweep_seconds: float | None = Field(
        default=None,
        description="Interval between trust decay sweeps (defaults to the trust config check_interval)",
    )

    # ==========================================================================
    # LEDGER SETTINGS
    # ==========================================================================

    ledger_url: str | None = Field(
        default=None,
        description="Base URL of the ledger gateway; in-memory ledger when unset",
    )
    ledger_token: str | None = Field(
        default=None,
        description="Bearer token for the ledger gateway",
    )
    ledger_timeout: float = Field(
        default=10.0,
        description="Ledger request timeout in seconds",
    )

    # ==========================================================================
    # LOGGING SETTINGS
    # ==========================================================================

    log_level: str = Field(
        default="INFO",
        description="Log level (DEBUG, INFO, WARNING, ERROR)",
    )
    log_format: str = Field(
        default="",
        description="Log format: 'json', 'text', or '' (auto-detect)",
    )
    log_file: str | None = Field(
        default=None,
        description="Log file path (optional)",
    )


# ==========================================================================
# GLOBAL SETTINGS INSTANCE (lazy loaded)
# ==========================================================================

_settings: CoreSettings | None = None


def get_settings() -> CoreSettings:
    """Get the global settings instance.

    Returns:
        The singleton CoreSettings instance.
    """
    global _settings
    if _settings is None:
        _settings = CoreSettings()
    return _settings


def clear_settings_cache() -> None:
    """Clear the settings cache. Useful for testing."""
    global _settings
    _settings = None
