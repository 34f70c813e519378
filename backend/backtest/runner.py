"""ReplayRunner: drives the live orchestrator over historical candles.

Completely independent of app/. Uses:
- core.engine.EvaluationOrchestrator, the same code the live loop runs
- core.sources.InMemoryCandleSource, so only closed candles are visible
- core.protocols.FixedClock, stepped at the signal-timeframe cadence

A replay over the same candles and config produces identical decisions,
fills and position ids.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal

from core.engine import EvaluationOrchestrator
from core.execution import ExecutionService
from core.models.candle import Candle
from core.models.config import EngineConfig
from core.models.decision import Decision
from core.protocols import FixedClock, MemoryAuditSink, PersistRequest, PortfolioInfo
from core.sources import InMemoryCandleSource
from core.timeframes import timeframe_duration

from backtest.stats import ClosedTrade, EquityPoint, ReplaySummary, SummaryCalculator
from backtest.storage.candle_source import CandleLoader

logger = logging.getLogger(__name__)


@dataclass
class ReplayConfig:
    """Configuration for a replay run."""

    symbols: list[str]
    start_date: datetime
    end_date: datetime
    starting_cash: Decimal = Decimal("10000")
    portfolio_id: str = "replay"
    engine: EngineConfig = field(default_factory=EngineConfig)
    signal_candles: int = 100
    regime_candles: int = 260
    step: timedelta | None = None  # defaults to the signal timeframe

    @property
    def step_size(self) -> timedelta:
        if self.step is not None:
            return self.step
        duration = timeframe_duration(self.engine.timeframes.signal_timeframe)
        if duration is None:
            raise ValueError(
                f"Unknown signal timeframe: {self.engine.timeframes.signal_timeframe}"
            )
        return duration

    @property
    def warmup(self) -> timedelta:
        """History needed before start_date so the first tick has full windows."""
        tfs = self.engine.timeframes
        signal = timeframe_duration(tfs.signal_timeframe) or timedelta(0)
        regime = timeframe_duration(tfs.regime_timeframe) or timedelta(0)
        return max(signal * (self.signal_candles + 1), regime * (self.regime_candles + 1))


class _FillRecorder:
    """Persistence callback that keeps closed trades instead of writing them."""

    def __init__(self):
        self.trades: list[ClosedTrade] = []
        self.orders: list[dict] = []

    def __call__(self, request: PersistRequest) -> None:
        if request.kind == "order":
            self.orders.append({**request.payload, "id": request.key})
        elif request.kind == "position" and request.payload.get("status") == "CLOSED":
            p = request.payload
            self.trades.append(
                ClosedTrade(
                    position_id=request.key,
                    symbol=p["symbol"],
                    opened_at=p["opened_at"],
                    closed_at=p["closed_at"],
                    size=p["size"],
                    entry_price=p["entry_price"],
                    exit_price=p["exit_price"],
                    exit_reason=p["exit_reason"],
                    pnl=p["pnl"],
                )
            )


class ReplayRunner:
    """Replay one portfolio over a time range, one tick per step."""

    def __init__(self, config: ReplayConfig, candle_source: InMemoryCandleSource | None = None):
        self.config = config
        self.candle_source = candle_source or InMemoryCandleSource()
        self.audit = MemoryAuditSink()
        self.recorder = _FillRecorder()
        self.execution = ExecutionService(config=config.engine, persist=self.recorder)
        self.orchestrator = EvaluationOrchestrator(
            candle_source=self.candle_source,
            execution=self.execution,
            audit_sink=self.audit,
            default_config=config.engine,
            signal_candles=config.signal_candles,
            regime_candles=config.regime_candles,
        )
        self.clock = FixedClock(config.start_date)

    @property
    def decisions(self) -> list[Decision]:
        return self.audit.decisions

    def add_candles(self, candles: list[Candle]) -> None:
        self.candle_source.extend(candles)

    async def load(self, loader: CandleLoader) -> int:
        """Load signal and regime candles (with warmup) from ``loader``."""
        tfs = self.config.engine.timeframes
        start = self.config.start_date - self.config.warmup
        total = 0
        for symbol in self.config.symbols:
            for timeframe in {tfs.signal_timeframe, tfs.regime_timeframe}:
                candles = await loader.get_range(symbol, timeframe, start, self.config.end_date)
                self.add_candles(candles)
                total += len(candles)
                logger.info(f"[{symbol}] Loaded {len(candles):,} {timeframe} candles")
        return total

    async def run(self) -> ReplaySummary:
        """Step the clock from start_date to end_date, one tick per step."""
        started = time.time()
        cfg = self.config
        portfolio = PortfolioInfo(
            id=cfg.portfolio_id,
            name=cfg.portfolio_id,
            current_cash=cfg.starting_cash,
            starting_capital=cfg.starting_cash,
            symbols=tuple(cfg.symbols),
        )
        step = cfg.step_size

        logger.info(
            f"Starting replay {cfg.portfolio_id}: {cfg.symbols} "
            f"{cfg.start_date:%Y-%m-%d %H:%M} → {cfg.end_date:%Y-%m-%d %H:%M} step={step}"
        )

        equity_curve: list[EquityPoint] = []
        ticks = 0
        self.clock.set(cfg.start_date)
        while self.clock.now() <= cfg.end_date:
            now = self.clock.now()
            await self.orchestrator.run_tick([portfolio], now)
            state = self.execution.get_portfolio_state(cfg.portfolio_id)
            equity_curve.append(EquityPoint(timestamp=now, equity=state.equity))
            ticks += 1
            self.clock.advance(step)

        state = self.execution.ensure_portfolio(cfg.portfolio_id, cfg.starting_cash, cfg.portfolio_id)
        summary = SummaryCalculator().calculate(
            portfolio_id=cfg.portfolio_id,
            symbols=cfg.symbols,
            start_date=cfg.start_date,
            end_date=cfg.end_date,
            starting_equity=cfg.starting_cash,
            final_cash=state.cash,
            open_positions=state.open_count,
            trades=self.recorder.trades,
            equity_curve=equity_curve,
            decisions=self.decisions,
            ticks=ticks,
        )

        elapsed = time.time() - started
        logger.info(f"Replay {cfg.portfolio_id} completed in {elapsed:.1f}s: {ticks} ticks")
        return summary
