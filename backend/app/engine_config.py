"""Engine configuration loaded from engine.yaml.

Layout:

    defaults:            # merged over the built-in EngineConfig
      risk: {...}
      strategy: {...}
      timeframes: {...}
    portfolios:
      <portfolio id>:
        name: "..."
        starting_capital: 10000
        symbols: [BTC-USD, ETH-USD]
        overrides: {risk: {...}}

Every override is validated field by field; invalid values fall back to the
default and are logged. No YAML file means built-in defaults and no
configured portfolios.
"""

import logging
from decimal import Decimal
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, field_validator

from core.models.config import EngineConfig, merge_portfolio_config
from core.protocols import PortfolioInfo

logger = logging.getLogger(__name__)


class PortfolioEntry(BaseModel):
    """A single portfolio entry in the YAML config."""

    name: str = ""
    status: str = "active"
    starting_capital: Decimal = Decimal("10000")
    symbols: list[str] = []
    overrides: dict[str, Any] = {}

    @field_validator("overrides", mode="before")
    @classmethod
    def _mapping_or_empty(cls, value: Any) -> dict:
        if value is None:
            return {}
        if not isinstance(value, dict):
            logger.warning("Ignoring non-mapping portfolio overrides: %r", value)
            return {}
        return value

    def to_portfolio_info(self, portfolio_id: str) -> PortfolioInfo:
        return PortfolioInfo(
            id=portfolio_id,
            name=self.name or portfolio_id,
            status=self.status,
            current_cash=self.starting_capital,
            starting_capital=self.starting_capital,
            symbols=tuple(self.symbols),
            overrides=dict(self.overrides),
        )


class EngineFileConfig(BaseModel):
    """Top-level engine.yaml configuration."""

    defaults: dict[str, Any] = {}
    portfolios: dict[str, PortfolioEntry] = {}

    def engine_defaults(self) -> EngineConfig:
        """Built-in defaults with the file's ``defaults`` section merged in."""
        return merge_portfolio_config(EngineConfig(), self.defaults or {})

    def get_portfolios(self) -> list[PortfolioInfo]:
        return [entry.to_portfolio_info(pid) for pid, entry in self.portfolios.items()]


_DEFAULT_PATH = Path(__file__).parent.parent / "engine.yaml"


def load_engine_config(path: Path | str | None = None) -> EngineFileConfig:
    """Load engine config from YAML file.

    Falls back to defaults (no portfolios) if the file doesn't exist.
    """
    config_path = Path(path) if path else _DEFAULT_PATH

    env_path = config_path.parent / ".env"
    load_dotenv(env_path, override=False)

    if not config_path.exists():
        logger.info("No engine config found at %s, using built-in defaults", config_path)
        return EngineFileConfig()

    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    config = EngineFileConfig(**raw)
    logger.info(
        "Loaded engine config: %d portfolios, %d symbols",
        len(config.portfolios),
        sum(len(p.symbols) for p in config.portfolios.values()),
    )
    return config
