"""Technical indicators for the trend-pullback strategy.

Pure NumPy implementations. Inputs are price sequences (Decimal or float);
outputs are floats. Every function returns None instead of raising when the
input is unusable.
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Sequence

import numpy as np

Number = Decimal | float | int


class IndicatorReason(str, Enum):
    UNSAFE_INPUT = "UNSAFE_INPUT"
    INSUFFICIENT_DATA = "INSUFFICIENT_DATA"


def _is_valid_period(period: Any) -> bool:
    return isinstance(period, int) and not isinstance(period, bool) and period > 0


def _to_array(values: Sequence[Number]) -> np.ndarray | None:
    """Convert to float64, rejecting series with any non-finite value."""
    try:
        arr = np.array([float(v) for v in values], dtype=np.float64)
    except (TypeError, ValueError):
        return None
    if not np.all(np.isfinite(arr)):
        return None
    return arr


def finite_closes(values: Sequence[Number]) -> list[float]:
    """Drop missing or non-finite closes, keeping order."""
    result = []
    for v in values:
        if v is None:
            continue
        try:
            f = float(v)
        except (TypeError, ValueError):
            continue
        if math.isfinite(f):
            result.append(f)
    return result


def ema_series(values: Sequence[Number], period: int) -> list[float]:
    """
    Calculate the full Exponential Moving Average series.

    Seeded with the simple average of the first ``period`` values, then
    smoothed with multiplier ``2 / (period + 1)``.

    Args:
        values: Sequence of price values
        period: EMA period

    Returns:
        List of EMA values (same length as input, NaN before the seed)
    """
    arr = _to_array(values)
    if arr is None or not _is_valid_period(period) or len(arr) < period:
        return [math.nan] * len(values)

    multiplier = 2.0 / (period + 1)
    result = np.empty_like(arr)
    result[: period - 1] = np.nan
    # Mean taken around the first value so a constant seed window is exact
    result[period - 1] = arr[0] + np.mean(arr[:period] - arr[0])

    for i in range(period, len(arr)):
        # (x - prev) * k + prev keeps a constant series exactly constant
        result[i] = (arr[i] - result[i - 1]) * multiplier + result[i - 1]

    return result.tolist()


def ema(values: Sequence[Number], period: int) -> float | None:
    """Latest EMA value, or None if period is invalid or data is too short."""
    if not _is_valid_period(period) or len(values) < period:
        return None
    series = ema_series(values, period)
    latest = series[-1]
    return latest if math.isfinite(latest) else None


def rsi(values: Sequence[Number], period: int) -> float | None:
    """
    Calculate Relative Strength Index with Wilder smoothing.

    Args:
        values: Sequence of close prices
        period: RSI period (typically 14)

    Returns:
        RSI in [0, 100]; exactly 100 when the average loss is zero.
        None with fewer than ``period + 1`` values.
    """
    if not _is_valid_period(period) or len(values) < period + 1:
        return None
    arr = _to_array(values)
    if arr is None:
        return None

    deltas = np.diff(arr)
    gains = np.where(deltas > 0, deltas, 0.0)
    losses = np.where(deltas < 0, -deltas, 0.0)

    avg_gain = float(np.mean(gains[:period]))
    avg_loss = float(np.mean(losses[:period]))

    for i in range(period, len(deltas)):
        avg_gain = (avg_gain * (period - 1) + gains[i]) / period
        avg_loss = (avg_loss * (period - 1) + losses[i]) / period

    if avg_loss == 0:
        return 100.0

    rs = avg_gain / avg_loss
    value = 100.0 - 100.0 / (1.0 + rs)
    return value if math.isfinite(value) else None


def ema_slope(values: Sequence[Number], period: int, lookback: int = 3) -> float | None:
    """EMA of the full series minus EMA of the series without its last ``lookback`` bars."""
    if not _is_valid_period(lookback) or len(values) - lookback < period:
        return None
    current = ema(values, period)
    previous = ema(list(values)[: len(values) - lookback], period)
    if current is None or previous is None:
        return None
    return current - previous


@dataclass(frozen=True)
class IndicatorSnapshot:
    """Indicator values for one evaluation tick."""

    fast_ema: float
    slow_ema: float
    slow_ema_slope: float
    rsi: float

    def is_finite(self) -> bool:
        return all(
            isinstance(v, (int, float)) and not isinstance(v, bool) and math.isfinite(v)
            for v in (self.fast_ema, self.slow_ema, self.slow_ema_slope, self.rsi)
        )

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class IndicatorResult:
    """Outcome of compute_indicators: a snapshot or a failure reason."""

    ok: bool
    snapshot: IndicatorSnapshot | None = None
    reason: IndicatorReason | None = None

    def to_dict(self) -> dict:
        return {
            "ok": self.ok,
            "reason": self.reason.value if self.reason else None,
            "values": self.snapshot.to_dict() if self.snapshot else None,
        }


def _fail(reason: IndicatorReason) -> IndicatorResult:
    return IndicatorResult(ok=False, reason=reason)


def compute_indicators(
    short_series: Sequence[Number] | None,
    long_series: Sequence[Number] | None,
    config: Any,
) -> IndicatorResult:
    """
    Compute every indicator the entry signal needs.

    Fast EMA and RSI come from the short (signal) timeframe closes; the slow
    EMA and its slope come from the long (regime) timeframe closes.

    Args:
        short_series: Signal-timeframe closes, oldest first
        long_series: Regime-timeframe closes, oldest first
        config: Strategy config with ema_fast, ema_slow, rsi_period, slope_lookback

    Returns:
        IndicatorResult; never raises.
    """
    periods = {}
    for name in ("ema_fast", "ema_slow", "rsi_period"):
        value = getattr(config, name, None)
        if not _is_valid_period(value):
            return _fail(IndicatorReason.UNSAFE_INPUT)
        periods[name] = value

    lookback = getattr(config, "slope_lookback", 3)
    if not _is_valid_period(lookback):
        return _fail(IndicatorReason.UNSAFE_INPUT)

    if short_series is None or long_series is None:
        return _fail(IndicatorReason.INSUFFICIENT_DATA)

    short_closes = finite_closes(short_series)
    long_closes = finite_closes(long_series)

    if len(short_closes) < max(periods["ema_fast"], periods["rsi_period"] + 1):
        return _fail(IndicatorReason.INSUFFICIENT_DATA)
    if len(long_closes) < periods["ema_slow"]:
        return _fail(IndicatorReason.INSUFFICIENT_DATA)

    fast = ema(short_closes, periods["ema_fast"])
    rsi_value = rsi(short_closes, periods["rsi_period"])
    slow = ema(long_closes, periods["ema_slow"])
    slope = ema_slope(long_closes, periods["ema_slow"], lookback)

    if fast is None or rsi_value is None or slow is None or slope is None:
        return _fail(IndicatorReason.INSUFFICIENT_DATA)

    return IndicatorResult(
        ok=True,
        snapshot=IndicatorSnapshot(
            fast_ema=fast,
            slow_ema=slow,
            slow_ema_slope=slope,
            rsi=rsi_value,
        ),
    )
