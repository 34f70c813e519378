"""Per-tick evaluation of every (portfolio, symbol) pair.

For each symbol of each active portfolio, in order:
1. Fetch closed candles for the signal and regime timeframes
2. Open position: trailing update and exit check, nothing else
3. Otherwise: risk gate, data checks, indicators, entry signal
4. On BUY: stop from stop_loss_pct, risk sizing, paper fill

A portfolio seen for the first time is restored from the ledger store (open
positions, last stop-out, today's cash flow) before any symbol is evaluated.

Every path ends in exactly one Decision handed to the audit sink. An
exception inside one pair is turned into an ERROR decision and never stops
the remaining pairs.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Iterable

from core.execution import ExecutionService
from core.indicators import compute_indicators
from core.models.candle import CandleWindow
from core.models.config import EngineConfig, merge_portfolio_config, to_decimal
from core.models.decision import Decision, DecisionAction, DecisionStage
from core.models.portfolio import PortfolioState
from core.position_manager import PositionManager
from core.protocols import AuditSink, CandleSource, LedgerStore, PortfolioInfo
from core.risk_manager import RiskManager
from core.signal_evaluator import evaluate_entry_signal

logger = logging.getLogger(__name__)

ONE = Decimal("1")


def _window_info(window: CandleWindow) -> dict[str, Any]:
    latest = window.latest
    return {
        "timeframe": window.timeframe,
        "count": len(window),
        "latest_timestamp": latest.timestamp if latest else None,
        "latest_close": latest.close if latest else None,
        "has_gap": window.has_gap,
        "gap_count": window.gap_count,
    }


class EvaluationOrchestrator:
    """Run one evaluation tick over a set of portfolios."""

    def __init__(
        self,
        candle_source: CandleSource,
        execution: ExecutionService,
        audit_sink: AuditSink | None = None,
        ledger_store: LedgerStore | None = None,
        default_config: EngineConfig | None = None,
        signal_candles: int = 100,
        regime_candles: int = 260,
    ):
        """
        Args:
            candle_source: Closed-candle reader
            execution: Paper ledger shared with the position manager
            audit_sink: Receives every Decision; failures are logged only
            ledger_store: Persisted ledger read when a portfolio is first seen
            default_config: Defaults merged with each portfolio's overrides
            signal_candles: Window size on the signal timeframe
            regime_candles: Window size on the regime timeframe
        """
        self.candle_source = candle_source
        self.execution = execution
        self.audit_sink = audit_sink
        self.ledger_store = ledger_store
        self.default_config = default_config or EngineConfig()
        self.signal_candles = signal_candles
        self.regime_candles = regime_candles
        self.position_manager = PositionManager(execution)
        # Latest signal close per (portfolio, symbol), used for equity marks
        self._marks: dict[str, dict[str, Decimal]] = {}

    def effective_config(self, portfolio: PortfolioInfo) -> EngineConfig:
        return merge_portfolio_config(self.default_config, portfolio.overrides)

    async def run_tick(self, portfolios: Iterable[PortfolioInfo], now: datetime) -> list[Decision]:
        """Evaluate every portfolio at ``now`` and return all decisions."""
        decisions: list[Decision] = []
        for portfolio in portfolios:
            decisions.extend(await self.evaluate_portfolio(portfolio, now))
        return decisions

    async def evaluate_portfolio(self, portfolio: PortfolioInfo, now: datetime) -> list[Decision]:
        decisions: list[Decision] = []

        if not portfolio.is_active:
            for symbol in portfolio.symbols:
                decision = Decision(
                    portfolio_id=portfolio.id,
                    symbol=symbol,
                    evaluated_at=now,
                    stage=DecisionStage.PORTFOLIO,
                    reason="PORTFOLIO_NOT_ACTIVE",
                    payload={"status": portfolio.status},
                )
                await self._record(decision)
                decisions.append(decision)
            return decisions

        config = self.effective_config(portfolio)
        risk_manager = RiskManager(config)
        state = self.execution.get_portfolio_state(portfolio.id)
        if state is None:
            try:
                state = await self._restore_portfolio(portfolio, now)
            except Exception as e:
                # Not seeded, so the next tick retries the restore
                logger.error("Failed to restore ledger for %s: %s", portfolio.id, e, exc_info=True)
                for symbol in portfolio.symbols:
                    decision = Decision(
                        portfolio_id=portfolio.id,
                        symbol=symbol,
                        evaluated_at=now,
                        stage=DecisionStage.ERROR,
                        reason="LEDGER_RESTORE_FAILED",
                        payload={"error": str(e), "error_type": type(e).__name__},
                    )
                    await self._record(decision)
                    decisions.append(decision)
                return decisions

        for symbol in portfolio.symbols:
            decisions.append(
                await self.evaluate_symbol(portfolio.id, symbol, state, config, risk_manager, now)
            )
        return decisions

    async def _restore_portfolio(self, portfolio: PortfolioInfo, now: datetime) -> PortfolioState:
        """Seed the ledger from stored cash plus the persisted positions and cash flow."""
        snapshot = None
        if self.ledger_store is not None:
            snapshot = await self.ledger_store.load_snapshot(portfolio.id, now)

        # Stored cash is net of open positions; fall back only for a fresh portfolio
        has_positions = snapshot is not None and bool(snapshot.positions)
        if portfolio.current_cash > 0 or has_positions:
            starting_cash = portfolio.current_cash
        else:
            starting_cash = portfolio.starting_capital
        return self.execution.ensure_portfolio(portfolio.id, starting_cash, portfolio.name, snapshot)

    async def evaluate_symbol(
        self,
        portfolio_id: str,
        symbol: str,
        state: PortfolioState,
        config: EngineConfig,
        risk_manager: RiskManager,
        now: datetime,
    ) -> Decision:
        try:
            decision = await self._evaluate(portfolio_id, symbol, state, config, risk_manager, now)
        except Exception as e:
            logger.error("Evaluation failed for %s %s: %s", portfolio_id, symbol, e, exc_info=True)
            decision = Decision(
                portfolio_id=portfolio_id,
                symbol=symbol,
                evaluated_at=now,
                stage=DecisionStage.ERROR,
                reason="EVALUATION_ERROR",
                payload={"error": str(e), "error_type": type(e).__name__},
            )
        await self._record(decision)
        return decision

    async def _evaluate(
        self,
        portfolio_id: str,
        symbol: str,
        state: PortfolioState,
        config: EngineConfig,
        risk_manager: RiskManager,
        now: datetime,
    ) -> Decision:
        timeframes = config.timeframes
        short_window = await self.candle_source.get_last_n_closed_candles(
            symbol, timeframes.signal_timeframe, self.signal_candles, now
        )
        long_window = await self.candle_source.get_last_n_closed_candles(
            symbol, timeframes.regime_timeframe, self.regime_candles, now
        )
        short_candle = short_window.latest
        long_candle = long_window.latest

        def decide(stage: DecisionStage, reason: str, action=DecisionAction.HOLD, **payload) -> Decision:
            return Decision(
                portfolio_id=portfolio_id,
                symbol=symbol,
                evaluated_at=now,
                stage=stage,
                action=action,
                reason=reason,
                payload={
                    "signal_window": _window_info(short_window),
                    "regime_window": _window_info(long_window),
                    "cash": state.cash,
                    "equity": state.equity,
                    **payload,
                },
            )

        if short_candle is None:
            return decide(DecisionStage.DATA, "INSUFFICIENT_DATA", missing=timeframes.signal_timeframe)

        marks = self._marks.setdefault(portfolio_id, {})
        marks[symbol] = short_candle.close
        state.mark_to_market(marks)

        if state.get_position(symbol) is not None:
            lifecycle = self.position_manager.evaluate(
                portfolio_id, symbol, short_candle, now, config, risk_manager
            )
            state.mark_to_market(marks)
            action = DecisionAction.EXIT if lifecycle.action == "EXIT" else DecisionAction.HOLD
            return decide(
                DecisionStage.POSITION_MANAGEMENT,
                lifecycle.reason,
                action=action,
                lifecycle=lifecycle.to_dict(),
            )

        gate = risk_manager.can_open_position(state, now)
        if not gate.allowed:
            return decide(DecisionStage.RISK_BLOCK, gate.reason.value, risk=gate.to_dict())

        if long_candle is None:
            return decide(DecisionStage.DATA, "INSUFFICIENT_DATA", missing=timeframes.regime_timeframe)
        if short_window.has_gap or long_window.has_gap:
            return decide(DecisionStage.DATA, "GAP_DETECTED")

        indicators = compute_indicators(
            short_window.get_closes(), long_window.get_closes(), config.strategy
        )
        if not indicators.ok:
            return decide(DecisionStage.INDICATORS, indicators.reason.value, indicators=indicators.to_dict())

        signal = evaluate_entry_signal(short_candle, long_candle, indicators, config.strategy)
        if not signal.is_buy:
            return decide(
                DecisionStage.SIGNAL,
                signal.reason.value,
                indicators=indicators.to_dict(),
                signal=signal.to_dict(),
            )

        entry_price = short_candle.close
        stop_price = entry_price * (ONE - to_decimal(config.strategy.stop_loss_pct))
        risk = config.risk
        # Cash that still covers slippage and the fee once the fill is priced
        spendable = state.cash / ((ONE + risk.slippage_rate) * (ONE + risk.fee_rate))
        sizing = risk_manager.compute_position_size(state.equity, entry_price, stop_price, spendable)
        if not sizing.ok:
            return decide(
                DecisionStage.EXECUTION,
                sizing.reason.value,
                indicators=indicators.to_dict(),
                signal=signal.to_dict(),
                sizing=sizing.to_dict(),
            )

        opened = self.execution.open_position(
            portfolio_id=portfolio_id,
            symbol=symbol,
            size=sizing.quantity,
            entry_price=entry_price,
            stop_price=stop_price,
            now=now,
            config=config,
            candle_at=short_candle.timestamp,
        )
        if not opened.ok:
            return decide(
                DecisionStage.EXECUTION,
                opened.reason.value,
                indicators=indicators.to_dict(),
                signal=signal.to_dict(),
                sizing=sizing.to_dict(),
                execution=opened.to_dict(),
            )

        state.mark_to_market(marks)
        return decide(
            DecisionStage.EXECUTION,
            "ENTRY_OK",
            action=DecisionAction.BUY,
            indicators=indicators.to_dict(),
            signal=signal.to_dict(),
            sizing=sizing.to_dict(),
            execution=opened.to_dict(),
        )

    async def _record(self, decision: Decision) -> None:
        if self.audit_sink is None:
            return
        try:
            await self.audit_sink.record(decision)
        except Exception as e:
            logger.warning(
                "Audit sink failed for %s %s: %s", decision.portfolio_id, decision.symbol, e
            )
