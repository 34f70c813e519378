"""Tests for the replay harness and its statistics."""

import orjson
import pytest
from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock

from conftest import FAST_STRATEGY, NOW, make_series
from backtest.report import ReportFormatter
from backtest.runner import ReplayConfig, ReplayRunner
from backtest.stats import ClosedTrade, EquityPoint, SummaryCalculator, max_drawdown
from core.models.config import EngineConfig, merge_portfolio_config

END = NOW + timedelta(hours=2)


def replay_candles() -> list:
    return make_series("BTC-USD", "5m", END, 60) + make_series(
        "BTC-USD", "1h", END, 10, step="1"
    )


def make_config(**kwargs) -> ReplayConfig:
    params = dict(
        symbols=["BTC-USD"],
        start_date=NOW,
        end_date=END,
        engine=merge_portfolio_config(EngineConfig(), FAST_STRATEGY),
    )
    params.update(kwargs)
    return ReplayConfig(**params)


async def run_replay(config=None):
    runner = ReplayRunner(config or make_config())
    runner.add_candles(replay_candles())
    return runner, await runner.run()


class TestReplayRunner:
    """Tests for ReplayRunner."""

    @pytest.mark.asyncio
    async def test_ticks_follow_signal_timeframe(self):
        runner, summary = await run_replay()

        # 12:00 through 14:00 inclusive, every 5 minutes
        assert summary.ticks == 25
        assert len(summary.equity_curve) == 25
        assert summary.equity_curve[0].timestamp == NOW
        assert summary.equity_curve[-1].timestamp == END
        assert sum(summary.decisions_by_stage.values()) == len(runner.decisions) == 25

    @pytest.mark.asyncio
    async def test_rising_market_takes_profit(self):
        runner, summary = await run_replay()

        assert summary.total_trades >= 1
        assert summary.exits_by_reason.get("TP", 0) >= 1
        assert summary.wins == summary.total_trades
        assert summary.net_pnl > 0
        assert summary.decisions_by_stage["EXECUTION"] >= 1
        assert summary.decisions_by_stage["POSITION_MANAGEMENT"] >= 1

    @pytest.mark.asyncio
    async def test_cash_reconciles_with_trades(self):
        runner, summary = await run_replay()
        state = runner.execution.get_portfolio_state("replay")

        open_cost = sum((p.cost_basis for p in state.positions), Decimal("0"))
        assert summary.final_cash + open_cost == summary.starting_equity + summary.net_pnl
        assert summary.open_positions == state.open_count

    @pytest.mark.asyncio
    async def test_replay_is_deterministic(self):
        _, first = await run_replay()
        _, second = await run_replay()

        assert [t.position_id for t in first.trades] == [t.position_id for t in second.trades]
        assert first.net_pnl == second.net_pnl
        assert first.decisions_by_stage == second.decisions_by_stage

    @pytest.mark.asyncio
    async def test_no_candles(self):
        runner = ReplayRunner(make_config())
        summary = await runner.run()

        assert summary.total_trades == 0
        assert summary.decisions_by_stage == {"DATA": 25}
        assert summary.final_equity == Decimal("10000")

    @pytest.mark.asyncio
    async def test_load_fetches_both_timeframes_with_warmup(self):
        loader = AsyncMock()
        loader.get_range.return_value = []
        config = make_config()
        runner = ReplayRunner(config)

        assert await runner.load(loader) == 0

        timeframes = sorted(call.args[1] for call in loader.get_range.await_args_list)
        assert timeframes == ["1h", "5m"]
        for call in loader.get_range.await_args_list:
            assert call.args[2] == NOW - config.warmup
            assert call.args[3] == END

    def test_warmup_covers_both_windows(self):
        config = make_config(signal_candles=100, regime_candles=260)
        assert config.warmup == timedelta(hours=261)
        assert config.step_size == timedelta(minutes=5)


class TestStats:
    """Tests for summary statistics."""

    def test_max_drawdown(self):
        curve = [
            EquityPoint(NOW + timedelta(minutes=i), Decimal(v))
            for i, v in enumerate(["100", "120", "90", "110", "80", "130"])
        ]
        drawdown, pct = max_drawdown(curve)

        assert drawdown == Decimal("40")
        assert pct == pytest.approx(33.333, abs=0.001)

    def test_max_drawdown_monotonic(self):
        curve = [EquityPoint(NOW, Decimal("100")), EquityPoint(NOW, Decimal("101"))]
        assert max_drawdown(curve) == (Decimal("0"), 0.0)

    def test_summary(self):
        trades = [
            ClosedTrade("a", "BTC-USD", NOW, NOW, Decimal("1"), Decimal("100"), Decimal("102"), "TP", Decimal("2")),
            ClosedTrade("b", "BTC-USD", NOW, NOW, Decimal("1"), Decimal("100"), Decimal("99"), "STOP", Decimal("-1")),
            ClosedTrade("c", "BTC-USD", NOW, NOW, Decimal("1"), Decimal("100"), Decimal("101"), "TRAIL", Decimal("1")),
        ]
        summary = SummaryCalculator().calculate(
            portfolio_id="replay",
            symbols=["BTC-USD"],
            start_date=NOW,
            end_date=END,
            starting_equity=Decimal("1000"),
            final_cash=Decimal("1002"),
            open_positions=0,
            trades=trades,
            equity_curve=[EquityPoint(END, Decimal("1002"))],
            decisions=[],
        )

        assert summary.total_trades == 3
        assert (summary.wins, summary.losses) == (2, 1)
        assert summary.win_rate == pytest.approx(66.667, abs=0.001)
        assert summary.net_pnl == Decimal("2")
        assert summary.return_pct == pytest.approx(0.2)
        assert summary.exits_by_reason == {"TP": 1, "STOP": 1, "TRAIL": 1}

    @pytest.mark.asyncio
    async def test_json_report(self):
        _, summary = await run_replay()

        data = orjson.loads(ReportFormatter.to_json(summary))

        assert data["portfolio_id"] == "replay"
        assert data["ticks"] == 25
        assert data["total_trades"] == summary.total_trades
        assert "win_rate" in data
