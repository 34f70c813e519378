"""Candle (OHLCV) data models."""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field


class Candle(BaseModel):
    """Closed OHLCV candle. Immutable once closed."""

    model_config = ConfigDict(frozen=True)

    symbol: str
    timeframe: str
    timestamp: datetime
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    volume: Decimal = Decimal("0")

    @property
    def is_bullish(self) -> bool:
        """Check if this is a bullish (green) candle."""
        return self.close > self.open


class CandleWindow(BaseModel):
    """Ascending, deduplicated run of closed candles plus gap information."""

    symbol: str
    timeframe: str
    candles: list[Candle] = Field(default_factory=list)
    has_gap: bool = False
    gap_count: int = 0

    @property
    def latest(self) -> Candle | None:
        """Most recent closed candle, if any."""
        return self.candles[-1] if self.candles else None

    def get_closes(self) -> list[Decimal]:
        """Get list of close prices."""
        return [c.close for c in self.candles]

    def __len__(self) -> int:
        return len(self.candles)
