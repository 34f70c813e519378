"""Open-position lifecycle: trailing-stop maintenance and exit detection.

Per tick, in fixed order:
1. Skip candles the position was already managed against, starting with
   the candle it was opened on
2. Trailing update (highest close, activation, upward-only ratchet)
3. Exit check with strict priority: stop-loss, take-profit, trailing stop
4. On exit, close through the execution service; a stop-loss exit also
   arms the cooldown.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from core.execution import CloseResult, ExecutionService
from core.models.candle import Candle
from core.models.config import EngineConfig, RiskConfig, to_decimal
from core.models.portfolio import ExitReason, Position
from core.risk_manager import RiskManager

logger = logging.getLogger(__name__)

ONE = Decimal("1")


@dataclass(frozen=True)
class LifecycleDecision:
    action: str  # "HOLD" | "EXIT"
    reason: str
    trail_active: bool = False
    trail_stop: Decimal | None = None
    close: CloseResult | None = None

    def to_dict(self) -> dict:
        return {
            "action": self.action,
            "reason": self.reason,
            "trail_active": self.trail_active,
            "trail_stop": self.trail_stop,
            "close": self.close.to_dict() if self.close else None,
        }


def update_trailing(position: Position, candle: Candle, risk: RiskConfig) -> None:
    """Advance the trailing state of ``position`` with one closed candle."""
    close = candle.close
    if close > position.highest_close:
        position.highest_close = close

    gap = ONE - to_decimal(risk.trail_gap_pct)
    if not position.trail_active:
        activation = position.entry_price * (ONE + to_decimal(risk.trail_activation_pct))
        if close >= activation:
            position.trail_active = True
            position.trail_stop = close * gap
        return

    candidate = position.highest_close * gap
    if position.trail_stop is None or candidate > position.trail_stop:
        position.trail_stop = candidate


def detect_exit(position: Position, candle: Candle) -> tuple[ExitReason, Decimal] | None:
    """First matching exit in priority order, with the price it fills at.

    Stop-loss wins when several levels are touched inside one candle.
    """
    if position.stop_price is not None and candle.low <= position.stop_price:
        return ExitReason.STOP, position.stop_price
    if position.take_profit_price is not None and candle.high >= position.take_profit_price:
        return ExitReason.TP, position.take_profit_price
    if position.trail_active and position.trail_stop is not None and candle.low <= position.trail_stop:
        return ExitReason.TRAIL, position.trail_stop
    return None


class PositionManager:
    """Drive open positions of a portfolio through their exit conditions."""

    def __init__(self, execution: ExecutionService):
        self.execution = execution

    def evaluate(
        self,
        portfolio_id: str,
        symbol: str,
        candle: Candle | None,
        now: datetime,
        config: EngineConfig,
        risk_manager: RiskManager | None = None,
    ) -> LifecycleDecision:
        """
        Manage the open position for ``symbol`` against the latest candle.

        Args:
            portfolio_id: Owning portfolio
            symbol: Instrument
            candle: Latest closed signal-timeframe candle
            now: Evaluation time (used for fills and cooldown)
            config: Effective portfolio config
            risk_manager: Receives the stop-out bookkeeping

        Returns:
            LifecycleDecision with HOLD/NO_EXIT, HOLD/NO_NEW_CANDLE or EXIT
            and the exit reason; HOLD with the execution reason if the fill fails
        """
        if candle is None or not symbol:
            return LifecycleDecision(action="HOLD", reason="MISSING_CANDLE")

        position = self.execution.get_open_position(portfolio_id, symbol)
        if position is None:
            return LifecycleDecision(action="HOLD", reason="NO_POSITION")

        if position.last_candle_at is not None and candle.timestamp <= position.last_candle_at:
            return LifecycleDecision(
                action="HOLD",
                reason="NO_NEW_CANDLE",
                trail_active=position.trail_active,
                trail_stop=position.trail_stop,
            )
        position.last_candle_at = candle.timestamp

        trailing_before = (position.trail_active, position.trail_stop)
        update_trailing(position, candle, config.risk)

        hit = detect_exit(position, candle)
        if hit is None:
            if (position.trail_active, position.trail_stop) != trailing_before:
                self.execution.sync_position(position)
            return LifecycleDecision(
                action="HOLD",
                reason="NO_EXIT",
                trail_active=position.trail_active,
                trail_stop=position.trail_stop,
            )

        exit_reason, exit_price = hit
        result = self.execution.close_position(
            portfolio_id=portfolio_id,
            position_id=position.id,
            exit_price=exit_price,
            reason=exit_reason,
            now=now,
            config=config,
        )

        if not result.ok:
            logger.warning(
                "Exit %s for %s %s not filled: %s",
                exit_reason.value,
                portfolio_id,
                symbol,
                result.reason.value if result.reason else None,
            )
            return LifecycleDecision(
                action="HOLD",
                reason=result.reason.value if result.reason else "CLOSE_FAILED",
                trail_active=position.trail_active,
                trail_stop=position.trail_stop,
                close=result,
            )

        if exit_reason == ExitReason.STOP:
            state = self.execution.get_portfolio_state(portfolio_id)
            (risk_manager or RiskManager(config)).record_stop_out(state, now)

        return LifecycleDecision(
            action="EXIT",
            reason=exit_reason.value,
            trail_active=position.trail_active,
            trail_stop=position.trail_stop,
            close=result,
        )
