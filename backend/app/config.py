"""Application configuration."""

from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Database
    database_url: str = "postgresql://localhost/paper_engine"
    database_echo: bool = False

    # Engine configuration file (defaults + per-portfolio overrides)
    engine_config_path: str = "engine.yaml"

    # Evaluation loop
    loop_interval_seconds: float = 60.0
    signal_candles: int = 100   # closed candles fetched on the signal timeframe
    regime_candles: int = 260   # closed candles fetched on the regime timeframe

    # Fire-and-forget persistence
    persistence_queue_size: int = 10000

    log_level: str = "INFO"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
