"""Centralized engine configuration.

Single source of truth for editor, table and preview settings.
Reads from environment variables with sensible defaults.
"""
from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass
class EngineSettings:
    """Engine settings loaded from environment.

    Usage:
        settings = get_engine_settings()
        print(settings.history_limit)  # 100
        print(settings.render_debounce_ms)  # 100
    """
    # Undo/redo
    history_limit: int = 100

    # Block defaults
    max_columns: int = 6
    default_table_rows: int = 3
    default_table_columns: int = 3

    # Preview rendering
    render_debounce_ms: int = 100
    sandbox_timeout_seconds: float = 2.0

    log_level: str = "INFO"

    @property
    def render_debounce_seconds(self) -> float:
        return self.render_debounce_ms / 1000


def _int_from_env(name: str, default: int) -> int:
    value = os.getenv(name)
    if not value:
        return default
    return int(value)


def _load_settings_from_env() -> EngineSettings:
    """Load engine settings from environment variables."""
    settings = EngineSettings()

    settings.history_limit = _int_from_env("HISTORY_LIMIT", settings.history_limit)
    settings.max_columns = _int_from_env("MAX_COLUMNS", settings.max_columns)
    settings.default_table_rows = _int_from_env("DEFAULT_TABLE_ROWS", settings.default_table_rows)
    settings.default_table_columns = _int_from_env("DEFAULT_TABLE_COLUMNS", settings.default_table_columns)
    settings.render_debounce_ms = _int_from_env("RENDER_DEBOUNCE_MS", settings.render_debounce_ms)

    if os.getenv("SANDBOX_TIMEOUT_SECONDS"):
        settings.sandbox_timeout_seconds = float(os.getenv("SANDBOX_TIMEOUT_SECONDS"))

    settings.log_level = os.getenv("LOG_LEVEL", settings.log_level).upper()

    return settings


# Singleton instance
_settings: EngineSettings | None = None


def get_engine_settings() -> EngineSettings:
    """Get the engine settings singleton.

    Settings are loaded once from environment on first access.
    """
    global _settings
    if _settings is None:
        _settings = _load_settings_from_env()
    return _settings


def reload_engine_settings() -> EngineSettings:
    """Force reload settings from environment.

    Useful for testing or after env changes.
    """
    global _settings
    _settings = _load_settings_from_env()
    return _settings
