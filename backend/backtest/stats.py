"""Statistics for replay results.

Computes trade count, win rate, net P&L, final equity, max drawdown and
breakdowns by exit reason and decision stage.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal

from core.models.decision import Decision

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


@dataclass
class ClosedTrade:
    position_id: str
    symbol: str
    opened_at: datetime
    closed_at: datetime
    size: Decimal
    entry_price: Decimal
    exit_price: Decimal
    exit_reason: str  # STOP | TP | TRAIL
    pnl: Decimal

    @property
    def is_win(self) -> bool:
        return self.pnl > 0


@dataclass
class EquityPoint:
    timestamp: datetime
    equity: Decimal


@dataclass
class ReplaySummary:
    """Complete replay results."""

    # Metadata
    portfolio_id: str
    symbols: list[str]
    start_date: datetime
    end_date: datetime
    ticks: int = 0

    # Overall
    starting_equity: Decimal = ZERO
    final_equity: Decimal = ZERO
    final_cash: Decimal = ZERO
    open_positions: int = 0
    total_trades: int = 0
    wins: int = 0
    losses: int = 0
    net_pnl: Decimal = ZERO
    max_drawdown: Decimal = ZERO
    max_drawdown_pct: float = 0.0

    # Breakdowns
    exits_by_reason: dict[str, int] = field(default_factory=dict)
    decisions_by_stage: dict[str, int] = field(default_factory=dict)
    trades: list[ClosedTrade] = field(default_factory=list)
    equity_curve: list[EquityPoint] = field(default_factory=list)

    @property
    def win_rate(self) -> float:
        return (self.wins / self.total_trades * 100) if self.total_trades > 0 else 0.0

    @property
    def return_pct(self) -> float:
        if self.starting_equity <= 0:
            return 0.0
        return float((self.final_equity - self.starting_equity) / self.starting_equity * 100)


def max_drawdown(curve: list[EquityPoint]) -> tuple[Decimal, float]:
    """Largest peak-to-trough equity decline, absolute and as % of the peak."""
    peak: Decimal | None = None
    worst = ZERO
    worst_pct = 0.0
    for point in curve:
        if peak is None or point.equity > peak:
            peak = point.equity
            continue
        drop = peak - point.equity
        if drop > worst:
            worst = drop
            worst_pct = float(drop / peak * 100) if peak > 0 else 0.0
    return worst, worst_pct


class SummaryCalculator:
    """Build a ReplaySummary from collected trades, equity and decisions."""

    def calculate(
        self,
        portfolio_id: str,
        symbols: list[str],
        start_date: datetime,
        end_date: datetime,
        starting_equity: Decimal,
        final_cash: Decimal,
        open_positions: int,
        trades: list[ClosedTrade],
        equity_curve: list[EquityPoint],
        decisions: list[Decision],
        ticks: int = 0,
    ) -> ReplaySummary:
        wins = sum(1 for t in trades if t.is_win)
        drawdown, drawdown_pct = max_drawdown(equity_curve)
        final_equity = equity_curve[-1].equity if equity_curve else starting_equity

        summary = ReplaySummary(
            portfolio_id=portfolio_id,
            symbols=list(symbols),
            start_date=start_date,
            end_date=end_date,
            ticks=ticks,
            starting_equity=starting_equity,
            final_equity=final_equity,
            final_cash=final_cash,
            open_positions=open_positions,
            total_trades=len(trades),
            wins=wins,
            losses=len(trades) - wins,
            net_pnl=sum((t.pnl for t in trades), ZERO),
            max_drawdown=drawdown,
            max_drawdown_pct=drawdown_pct,
            exits_by_reason=dict(Counter(t.exit_reason for t in trades)),
            decisions_by_stage=dict(Counter(d.stage.value for d in decisions)),
            trades=list(trades),
            equity_curve=list(equity_curve),
        )
        logger.info(
            "Replay summary %s: %d trades, win rate %.1f%%, net P&L %s, final equity %s",
            portfolio_id,
            summary.total_trades,
            summary.win_rate,
            summary.net_pnl,
            summary.final_equity,
        )
        return summary
