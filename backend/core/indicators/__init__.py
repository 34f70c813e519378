"""Technical indicators (pure math, no I/O)."""

from core.indicators.indicators import (
    IndicatorReason,
    IndicatorResult,
    IndicatorSnapshot,
    compute_indicators,
    ema,
    ema_series,
    ema_slope,
    finite_closes,
    rsi,
)

__all__ = [
    "IndicatorReason",
    "IndicatorResult",
    "IndicatorSnapshot",
    "compute_indicators",
    "ema",
    "ema_series",
    "ema_slope",
    "finite_closes",
    "rsi",
]
