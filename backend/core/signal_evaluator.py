"""Long-only trend-pullback entry signal.

Pure decision function: deterministic and free of side effects. Checks run
in a fixed order and the first failing check decides the reason.
"""

import math
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any

from core.indicators import IndicatorResult
from core.models.candle import Candle


class SignalReason(str, Enum):
    MISSING_INPUT = "MISSING_INPUT"
    INDICATORS_NOT_READY = "INDICATORS_NOT_READY"
    REGIME_FILTER_FAIL = "REGIME_FILTER_FAIL"
    PULLBACK_FAIL = "PULLBACK_FAIL"
    RSI_FAIL = "RSI_FAIL"
    CANDLE_NOT_GREEN = "CANDLE_NOT_GREEN"
    ENTRY_OK = "ENTRY_OK"


@dataclass(frozen=True)
class SignalResult:
    action: str
    reason: SignalReason
    debug: dict[str, Any] = field(default_factory=dict)

    @property
    def is_buy(self) -> bool:
        return self.action == "BUY"

    def to_dict(self) -> dict:
        return {"action": self.action, "reason": self.reason.value, "debug": self.debug}


def _hold(reason: SignalReason, debug: dict | None = None) -> SignalResult:
    return SignalResult(action="HOLD", reason=reason, debug=debug or {})


def _price(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (Decimal, int, float)):
        return None
    f = float(value)
    return f if math.isfinite(f) else None


def evaluate_entry_signal(
    short_candle: Candle | None,
    long_candle: Candle | None,
    indicators: IndicatorResult | None,
    config: Any,
) -> SignalResult:
    """
    Evaluate the entry signal on the latest closed candles.

    Args:
        short_candle: Latest closed signal-timeframe candle
        long_candle: Latest closed regime-timeframe candle
        indicators: Result of compute_indicators for this tick
        config: Strategy config (pullback_pct, rsi_min, rsi_max)

    Returns:
        SignalResult with BUY/ENTRY_OK or HOLD and the failing reason. The
        debug payload carries every intermediate value computed.
    """
    if short_candle is None or long_candle is None or config is None:
        return _hold(SignalReason.MISSING_INPUT)

    short_close = _price(getattr(short_candle, "close", None))
    short_open = _price(getattr(short_candle, "open", None))
    long_close = _price(getattr(long_candle, "close", None))
    pullback_pct = _price(getattr(config, "pullback_pct", None))
    rsi_min = _price(getattr(config, "rsi_min", None))
    rsi_max = _price(getattr(config, "rsi_max", None))
    if None in (short_close, short_open, long_close, pullback_pct, rsi_min, rsi_max):
        return _hold(SignalReason.MISSING_INPUT)

    if indicators is None or not indicators.ok or indicators.snapshot is None:
        return _hold(SignalReason.INDICATORS_NOT_READY)
    snapshot = indicators.snapshot
    if not snapshot.is_finite():
        return _hold(SignalReason.INDICATORS_NOT_READY)

    debug: dict[str, Any] = {
        "short_close": short_close,
        "short_open": short_open,
        "long_close": long_close,
        "fast_ema": snapshot.fast_ema,
        "slow_ema": snapshot.slow_ema,
        "slow_ema_slope": snapshot.slow_ema_slope,
        "rsi": snapshot.rsi,
        "pullback_pct": pullback_pct,
        "rsi_min": rsi_min,
        "rsi_max": rsi_max,
    }

    # 1) Regime filter on the long timeframe
    debug["above_slow_ema"] = long_close > snapshot.slow_ema
    debug["slope_positive"] = snapshot.slow_ema_slope > 0
    if not (debug["above_slow_ema"] and debug["slope_positive"]):
        return _hold(SignalReason.REGIME_FILTER_FAIL, debug)

    # 2) Pullback to the fast EMA on the short timeframe
    if snapshot.fast_ema == 0:
        return _hold(SignalReason.INDICATORS_NOT_READY, debug)
    distance = abs(short_close - snapshot.fast_ema) / snapshot.fast_ema
    debug["pullback_distance_pct"] = distance
    if distance > pullback_pct:
        return _hold(SignalReason.PULLBACK_FAIL, debug)

    # 3) RSI band, inclusive on both ends
    if snapshot.rsi < rsi_min or snapshot.rsi > rsi_max:
        return _hold(SignalReason.RSI_FAIL, debug)

    # 4) Green confirmation candle
    if short_close <= short_open:
        return _hold(SignalReason.CANDLE_NOT_GREEN, debug)

    return SignalResult(action="BUY", reason=SignalReason.ENTRY_OK, debug=debug)
