"""Tests for candle hygiene, timeframes and the in-memory candle source."""

import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from conftest import make_candle, make_series
from core.candles import build_window, dedupe_by_timestamp, detect_gaps, sort_ascending
from core.sources import InMemoryCandleSource
from core.timeframes import (
    closed_cutoff,
    is_closed_candle,
    start_of_utc_day,
    timeframe_duration,
    utc_day_key,
)

T0 = datetime(2025, 1, 1, 0, 0, tzinfo=timezone.utc)
FIVE = timedelta(minutes=5)


class TestTimeframes:
    """Tests for timeframe helpers."""

    @pytest.mark.parametrize(
        "tf,minutes",
        [("1m", 1), ("3m", 3), ("5m", 5), ("15m", 15), ("30m", 30), ("1h", 60), ("4h", 240), ("1d", 1440)],
    )
    def test_known_durations(self, tf, minutes):
        assert timeframe_duration(tf) == timedelta(minutes=minutes)

    def test_unknown_timeframe(self):
        assert timeframe_duration("7m") is None
        assert closed_cutoff("7m", T0) is None
        assert not is_closed_candle(T0 - timedelta(days=1), "7m", T0)

    def test_closed_is_strictly_older_than_now_minus_duration(self):
        now = T0 + timedelta(minutes=10)
        assert is_closed_candle(T0, "5m", now)
        # Opened exactly one duration ago: still counts as in progress
        assert not is_closed_candle(T0 + FIVE, "5m", now)
        assert not is_closed_candle(now, "5m", now)

    def test_utc_day_helpers(self):
        moment = datetime(2025, 3, 9, 23, 59, 59, tzinfo=timezone.utc)
        assert start_of_utc_day(moment) == datetime(2025, 3, 9, tzinfo=timezone.utc)
        assert utc_day_key(moment) == "2025-03-09"
        assert utc_day_key(moment + timedelta(seconds=1)) == "2025-03-10"

    def test_day_key_normalizes_offsets(self):
        plus_two = timezone(timedelta(hours=2))
        moment = datetime(2025, 3, 10, 1, 0, tzinfo=plus_two)  # 23:00 UTC on the 9th
        assert utc_day_key(moment) == "2025-03-09"


class TestCandleHygiene:
    """Tests for dedupe, ordering and gap detection."""

    def test_dedupe_keeps_last_occurrence(self):
        first = make_candle(timestamp=T0, close="100")
        second = make_candle(timestamp=T0, close="105")
        other = make_candle(timestamp=T0 + FIVE, close="101")

        result = dedupe_by_timestamp([first, other, second])

        assert len(result) == 2
        assert {c.close for c in result} == {Decimal("105"), Decimal("101")}

    def test_sort_ascending(self):
        candles = [make_candle(timestamp=T0 + FIVE * i) for i in (3, 1, 2, 0)]
        result = sort_ascending(candles)
        assert [c.timestamp for c in result] == [T0 + FIVE * i for i in range(4)]

    def test_no_gap_on_contiguous_series(self):
        candles = make_series("BTC-USD", "5m", T0, 10)
        report = detect_gaps(candles, FIVE)
        assert not report.has_gap
        assert report.gap_count == 0

    def test_gap_above_one_and_a_half_durations(self):
        candles = [
            make_candle(timestamp=T0),
            make_candle(timestamp=T0 + FIVE),
            make_candle(timestamp=T0 + FIVE * 3),  # one bar missing
            make_candle(timestamp=T0 + FIVE * 4),
            make_candle(timestamp=T0 + FIVE * 7),  # two bars missing
        ]
        report = detect_gaps(candles, FIVE)
        assert report.has_gap
        assert report.gap_count == 2

    def test_step_at_tolerance_is_not_a_gap(self):
        candles = [make_candle(timestamp=T0), make_candle(timestamp=T0 + FIVE * 1.5)]
        assert not detect_gaps(candles, FIVE).has_gap

    def test_build_window_normalizes(self):
        raw = [
            make_candle(timestamp=T0 + FIVE * 2, close="102"),
            make_candle(timestamp=T0, close="100"),
            make_candle(timestamp=T0 + FIVE, close="101"),
            make_candle(timestamp=T0 + FIVE, close="101.5"),
        ]

        window = build_window("BTC-USD", "5m", raw, 2)

        assert len(window) == 2
        assert window.get_closes() == [Decimal("101.5"), Decimal("102")]
        assert window.latest.close == Decimal("102")
        assert not window.has_gap

    def test_build_window_empty(self):
        window = build_window("BTC-USD", "5m", [], 10)
        assert window.latest is None
        assert len(window) == 0


class TestInMemoryCandleSource:
    """Tests for InMemoryCandleSource."""

    @pytest.fixture
    def source(self):
        return InMemoryCandleSource(make_series("BTC-USD", "5m", T0 + FIVE * 9, 10))

    @pytest.mark.asyncio
    async def test_only_closed_candles_are_visible(self, source):
        # At T0 + 50m the 45m candle is still open; the 40m candle has closed
        now = T0 + FIVE * 10
        window = await source.get_last_n_closed_candles("BTC-USD", "5m", 100, now)

        assert len(window) == 9
        assert window.latest.timestamp == T0 + FIVE * 8

    @pytest.mark.asyncio
    async def test_last_n(self, source):
        now = T0 + FIVE * 20
        window = await source.get_last_n_closed_candles("BTC-USD", "5m", 3, now)

        assert [c.timestamp for c in window.candles] == [T0 + FIVE * i for i in (7, 8, 9)]

    @pytest.mark.asyncio
    async def test_latest_closed_candle(self, source):
        candle = await source.get_latest_closed_candle("BTC-USD", "5m", T0 + FIVE * 3)
        assert candle.timestamp == T0 + FIVE

    @pytest.mark.asyncio
    async def test_nothing_closed_yet(self, source):
        candle = await source.get_latest_closed_candle("BTC-USD", "5m", T0 + FIVE)
        assert candle is None

    @pytest.mark.asyncio
    async def test_unknown_symbol_and_timeframe(self, source):
        now = T0 + FIVE * 20
        assert len(await source.get_last_n_closed_candles("ETH-USD", "5m", 5, now)) == 0
        assert len(await source.get_last_n_closed_candles("BTC-USD", "7m", 5, now)) == 0

    @pytest.mark.asyncio
    async def test_added_candle_replaces_same_timestamp(self, source):
        source.add(make_candle(timestamp=T0 + FIVE * 9, close="999"))
        window = await source.get_last_n_closed_candles("BTC-USD", "5m", 1, T0 + FIVE * 20)
        assert window.latest.close == Decimal("999")
        assert len(source) == 10

    @pytest.mark.asyncio
    async def test_reports_gaps(self):
        candles = make_series("BTC-USD", "5m", T0 + FIVE * 9, 10)
        del candles[4]
        source = InMemoryCandleSource(candles)

        window = await source.get_last_n_closed_candles("BTC-USD", "5m", 100, T0 + FIVE * 20)

        assert window.has_gap
        assert window.gap_count == 1
