"""Replay-specific configuration.

Independent of app/config.py: only needs a database URL and the engine
config file.
"""

from __future__ import annotations

import os

from pydantic_settings import BaseSettings, SettingsConfigDict


class BacktestSettings(BaseSettings):
    """Replay configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="BACKTEST_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # PostgreSQL holding the live candles table (read only)
    database_url: str = os.environ.get(
        "DATABASE_URL", "postgresql://localhost/paper_engine"
    )
    engine_config_path: str = os.environ.get("ENGINE_CONFIG_PATH", "engine.yaml")


_settings: BacktestSettings | None = None


def get_backtest_settings() -> BacktestSettings:
    """Get cached backtest settings instance."""
    global _settings
    if _settings is None:
        _settings = BacktestSettings()
    return _settings
