"""In-memory candle source for replay and tests."""

from bisect import bisect_left
from datetime import datetime
from typing import Iterable

from core.candles import build_window
from core.models.candle import Candle, CandleWindow
from core.timeframes import closed_cutoff


class InMemoryCandleSource:
    """Serve closed candles from memory exactly as the database source does.

    Only candles strictly older than ``now - timeframe`` are visible, so a
    replay never sees a candle before it has closed.
    """

    def __init__(self, candles: Iterable[Candle] = ()):
        self._by_key: dict[tuple[str, str], dict[datetime, Candle]] = {}
        self._sorted: dict[tuple[str, str], tuple[list[datetime], list[Candle]]] = {}
        self.extend(candles)

    def add(self, candle: Candle) -> None:
        key = (candle.symbol, candle.timeframe)
        self._by_key.setdefault(key, {})[candle.timestamp] = candle
        self._sorted.pop(key, None)

    def extend(self, candles: Iterable[Candle]) -> None:
        for candle in candles:
            self.add(candle)

    def _series(self, symbol: str, timeframe: str) -> tuple[list[datetime], list[Candle]]:
        key = (symbol, timeframe)
        cached = self._sorted.get(key)
        if cached is None:
            series = sorted(self._by_key.get(key, {}).values(), key=lambda c: c.timestamp)
            cached = ([c.timestamp for c in series], series)
            self._sorted[key] = cached
        return cached

    async def get_last_n_closed_candles(
        self, symbol: str, timeframe: str, n: int, now: datetime
    ) -> CandleWindow:
        cutoff = closed_cutoff(timeframe, now)
        if cutoff is None or n <= 0:
            return CandleWindow(symbol=symbol, timeframe=timeframe)

        timestamps, series = self._series(symbol, timeframe)
        end = bisect_left(timestamps, cutoff)
        return build_window(symbol, timeframe, series[max(0, end - n):end], n)

    async def get_latest_closed_candle(
        self, symbol: str, timeframe: str, now: datetime
    ) -> Candle | None:
        window = await self.get_last_n_closed_candles(symbol, timeframe, 1, now)
        return window.latest

    def __len__(self) -> int:
        return sum(len(v) for v in self._by_key.values())
