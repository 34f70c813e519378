"""Engine configuration models and per-portfolio override merging."""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from core.timeframes import TIMEFRAME_MINUTES

logger = logging.getLogger(__name__)

BPS_DIVISOR = Decimal("10000")

_SECTION_CONFIG = ConfigDict(frozen=True, strict=True, extra="ignore", allow_inf_nan=False)


def to_decimal(value: float | int | Decimal) -> Decimal:
    """Convert a config number to Decimal without binary float artefacts."""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


class _Section(BaseModel):
    """Base for config sections: bools are never accepted as numbers."""

    model_config = _SECTION_CONFIG

    @field_validator("*", mode="before")
    @classmethod
    def _reject_bool_numbers(cls, value: Any, info) -> Any:
        field = cls.model_fields[info.field_name]
        if isinstance(value, bool) and field.annotation is not bool:
            raise ValueError("boolean is not a valid number")
        return value


class TimeframeConfig(_Section):
    """Candle timeframes the strategy reads."""

    signal_timeframe: str = "5m"
    regime_timeframe: str = "1h"
    execution_timeframe: str = "1m"

    @field_validator("signal_timeframe", "regime_timeframe", "execution_timeframe")
    @classmethod
    def _known_timeframe(cls, value: str) -> str:
        if value not in TIMEFRAME_MINUTES:
            raise ValueError(f"unknown timeframe '{value}'")
        return value


class RiskConfig(_Section):
    """Portfolio risk constraints and paper-fill costs."""

    risk_per_trade_pct: float = Field(0.005, gt=0, le=1)
    max_open_positions: int = Field(1, ge=1)
    # Net-outflow variant of the daily gate (see DESIGN.md)
    max_daily_net_outflow_pct: float = Field(1.0, gt=0, le=1)
    cooldown_bars_after_stop: int = Field(6, ge=0)
    require_stop_loss: bool = True
    fee_bps: float = Field(5, ge=0)
    slippage_bps: float = Field(5, ge=0)
    trail_activation_pct: float = Field(0.01, gt=0, le=1)
    trail_gap_pct: float = Field(0.005, gt=0, lt=1)

    @property
    def fee_rate(self) -> Decimal:
        return to_decimal(self.fee_bps) / BPS_DIVISOR

    @property
    def slippage_rate(self) -> Decimal:
        return to_decimal(self.slippage_bps) / BPS_DIVISOR


class StrategyConfig(_Section):
    """Trend-pullback entry parameters."""

    ema_fast: int = Field(20, ge=1)
    ema_slow: int = Field(200, ge=1)
    rsi_period: int = Field(14, ge=1)
    slope_lookback: int = Field(3, ge=1)
    pullback_pct: float = Field(0.003, gt=0, le=1)
    rsi_min: float = Field(40, ge=0, le=100)
    rsi_max: float = Field(55, ge=0, le=100)
    stop_loss_pct: float = Field(0.005, gt=0, lt=1)
    take_profit_r_multiple: float = Field(2, gt=0)

    @model_validator(mode="after")
    def _rsi_band(self):
        if self.rsi_min > self.rsi_max:
            raise ValueError(
                f"rsi_min ({self.rsi_min}) must not exceed rsi_max ({self.rsi_max})"
            )
        return self


class EngineConfig(BaseModel):
    """Complete configuration used for one evaluation."""

    model_config = ConfigDict(frozen=True)

    timeframes: TimeframeConfig = Field(default_factory=TimeframeConfig)
    risk: RiskConfig = Field(default_factory=RiskConfig)
    strategy: StrategyConfig = Field(default_factory=StrategyConfig)


_SECTIONS: dict[str, type[_Section]] = {
    "timeframes": TimeframeConfig,
    "risk": RiskConfig,
    "strategy": StrategyConfig,
}


def _merge_section(current: _Section, overrides: Mapping[str, Any], section: str) -> _Section:
    """Apply overrides to one section, dropping any field that fails validation."""
    section_cls = type(current)
    known = {k: v for k, v in overrides.items() if k in section_cls.model_fields}
    for key in overrides:
        if key not in section_cls.model_fields:
            logger.warning("Ignoring unknown config key %s.%s", section, key)

    values = current.model_dump()
    try:
        return section_cls.model_validate({**values, **known})
    except ValidationError:
        pass

    # Fall back field by field. The second pass picks up overrides that only
    # validate together with another override (e.g. raising both rsi bounds).
    pending = dict(known)
    rejected: dict = {}
    for _ in range(2):
        rejected = {}
        for key, value in pending.items():
            candidate = {**values, key: value}
            try:
                section_cls.model_validate(candidate)
            except ValidationError as e:
                rejected[key] = (value, e)
                continue
            values = candidate
        if not rejected or len(rejected) == len(pending):
            break
        pending = {k: v for k, (v, _) in rejected.items()}

    for key, (value, e) in rejected.items():
        logger.warning(
            "Invalid config override %s.%s=%r, using %r (%s)",
            section,
            key,
            value,
            values[key],
            e.errors()[0]["msg"],
        )

    return section_cls.model_validate(values)


def merge_portfolio_config(
    defaults: EngineConfig | None,
    overrides: Mapping[str, Any] | None,
) -> EngineConfig:
    """Merge portfolio overrides onto defaults with per-field safe fallback.

    Args:
        defaults: Base configuration (built-in defaults if None)
        overrides: Nested mapping ``{"risk": {...}, "strategy": {...}, ...}``

    Returns:
        A validated EngineConfig. Invalid override values are replaced by the
        corresponding default and logged.
    """
    base = defaults or EngineConfig()
    if overrides is None:
        return base
    if not isinstance(overrides, Mapping):
        logger.warning("Portfolio overrides must be a mapping, got %s", type(overrides).__name__)
        return base

    sections = {}
    for name in _SECTIONS:
        current = getattr(base, name)
        section_overrides = overrides.get(name)
        if section_overrides is None:
            sections[name] = current
        elif not isinstance(section_overrides, Mapping):
            logger.warning("Config section '%s' must be a mapping, ignoring", name)
            sections[name] = current
        else:
            sections[name] = _merge_section(current, section_overrides, name)

    return EngineConfig(**sections)
