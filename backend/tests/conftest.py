"""Shared fixtures and candle builders."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from core.models.candle import Candle
from core.models.config import EngineConfig, merge_portfolio_config
from core.timeframes import timeframe_duration

NOW = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


def make_candle(
    symbol: str = "BTC-USD",
    timeframe: str = "5m",
    timestamp: datetime = NOW,
    open_: str | Decimal = "100",
    close: str | Decimal = "101",
    high: str | Decimal | None = None,
    low: str | Decimal | None = None,
) -> Candle:
    o, c = Decimal(str(open_)), Decimal(str(close))
    return Candle(
        symbol=symbol,
        timeframe=timeframe,
        timestamp=timestamp,
        open=o,
        high=Decimal(str(high)) if high is not None else max(o, c) + Decimal("0.1"),
        low=Decimal(str(low)) if low is not None else min(o, c) - Decimal("0.1"),
        close=c,
        volume=Decimal("1"),
    )


def make_series(
    symbol: str,
    timeframe: str,
    last_timestamp: datetime,
    count: int,
    start: str = "100",
    step: str = "0.1",
) -> list[Candle]:
    """Steadily rising green candles ending at ``last_timestamp``."""
    duration = timeframe_duration(timeframe)
    first = last_timestamp - duration * (count - 1)
    candles = []
    for i in range(count):
        close = Decimal(start) + Decimal(step) * i
        candles.append(
            make_candle(
                symbol=symbol,
                timeframe=timeframe,
                timestamp=first + duration * i,
                open_=close - Decimal("0.05"),
                close=close,
            )
        )
    return candles


def last_closed(timeframe: str, now: datetime) -> datetime:
    """Open time of the newest candle that counts as closed at ``now``."""
    duration = timeframe_duration(timeframe)
    return now - duration * 2


# Short periods and a wide band so a steadily rising series yields a BUY
FAST_STRATEGY = {
    "strategy": {
        "ema_fast": 3,
        "ema_slow": 5,
        "rsi_period": 3,
        "slope_lookback": 1,
        "pullback_pct": 0.05,
        "rsi_min": 0,
        "rsi_max": 100,
    }
}


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def config():
    return EngineConfig()


@pytest.fixture
def fast_config():
    return merge_portfolio_config(EngineConfig(), FAST_STRATEGY)


@pytest.fixture
def bullish_candles():
    """Rising signal and regime series that satisfy every entry check."""
    return make_series("BTC-USD", "5m", last_closed("5m", NOW), 20) + make_series(
        "BTC-USD", "1h", last_closed("1h", NOW), 10, step="1"
    )
