"""Candle series hygiene: deduplication, ordering and gap detection."""

from dataclasses import dataclass
from datetime import timedelta
from typing import Iterable

from core.models.candle import Candle, CandleWindow
from core.timeframes import timeframe_duration

# A gap is any interior step larger than this multiple of the nominal duration
GAP_TOLERANCE = 1.5


@dataclass(frozen=True)
class GapReport:
    has_gap: bool
    gap_count: int


def dedupe_by_timestamp(candles: Iterable[Candle]) -> list[Candle]:
    """Deduplicate candles by timestamp, keeping the last occurrence."""
    by_ts: dict = {}
    for candle in candles:
        if candle is None:
            continue
        by_ts[candle.timestamp] = candle
    return list(by_ts.values())


def sort_ascending(candles: Iterable[Candle]) -> list[Candle]:
    """Sort candles oldest first."""
    return sorted(candles, key=lambda c: c.timestamp)


def detect_gaps(candles: list[Candle], duration: timedelta | None) -> GapReport:
    """Count interior timestamp steps that exceed 1.5x the nominal duration.

    Args:
        candles: Candles sorted ascending by timestamp
        duration: Nominal timeframe duration

    Returns:
        GapReport with has_gap flag and number of gaps found
    """
    if len(candles) < 2 or duration is None or duration <= timedelta(0):
        return GapReport(has_gap=False, gap_count=0)

    threshold = duration * GAP_TOLERANCE
    gap_count = 0
    for prev, curr in zip(candles, candles[1:]):
        if curr.timestamp - prev.timestamp > threshold:
            gap_count += 1

    return GapReport(has_gap=gap_count > 0, gap_count=gap_count)


def build_window(
    symbol: str,
    timeframe: str,
    candles: Iterable[Candle],
    n: int,
) -> CandleWindow:
    """Normalize raw candles into a window of the last ``n`` closed candles."""
    ordered = sort_ascending(dedupe_by_timestamp(candles))
    if n > 0:
        ordered = ordered[-n:]
    else:
        ordered = []

    report = detect_gaps(ordered, timeframe_duration(timeframe))
    return CandleWindow(
        symbol=symbol,
        timeframe=timeframe,
        candles=ordered,
        has_gap=report.has_gap,
        gap_count=report.gap_count,
    )
