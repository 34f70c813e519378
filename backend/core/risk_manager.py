"""Risk gatekeeper: entry permission and risk-based position sizing.

The manager holds only configuration. Portfolio state is passed in on every
call and the only mutations are the explicit bookkeeping methods
(record_stop_out, track_realized_pnl).
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import ROUND_DOWN, Decimal, InvalidOperation
from enum import Enum
from typing import Any

from core.models.config import EngineConfig, RiskConfig, to_decimal
from core.models.portfolio import PortfolioState
from core.timeframes import timeframe_duration, utc_day_key

logger = logging.getLogger(__name__)

ZERO = Decimal("0")

# Quantities are truncated to this lot step
QUANTITY_STEP = Decimal("0.00000001")


class RiskReason(str, Enum):
    INSUFFICIENT_EQUITY = "INSUFFICIENT_EQUITY"
    MAX_POSITIONS = "MAX_POSITIONS"
    DAILY_OUTFLOW_LIMIT = "DAILY_OUTFLOW_LIMIT"
    COOLDOWN = "COOLDOWN"
    INVALID_EQUITY = "INVALID_EQUITY"
    INVALID_ENTRY_PRICE = "INVALID_ENTRY_PRICE"
    INVALID_STOP_PRICE = "INVALID_STOP_PRICE"
    INVALID_STOP = "INVALID_STOP"
    INVALID_QUANTITY = "INVALID_QUANTITY"


@dataclass(frozen=True)
class RiskDecision:
    """Result of the entry gate. ``risk`` is the effective config when allowed."""

    allowed: bool
    reason: RiskReason | None = None
    details: dict[str, Any] = field(default_factory=dict)
    risk: RiskConfig | None = None

    def to_dict(self) -> dict:
        return {
            "allowed": self.allowed,
            "reason": self.reason.value if self.reason else None,
            "details": self.details,
            "risk": self.risk.model_dump() if self.risk else None,
        }


@dataclass(frozen=True)
class PositionSize:
    ok: bool
    quantity: Decimal = ZERO
    risk_dollars: Decimal = ZERO
    per_unit_risk: Decimal = ZERO
    max_affordable_qty: Decimal = ZERO
    reason: RiskReason | None = None
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "ok": self.ok,
            "quantity": self.quantity,
            "risk_dollars": self.risk_dollars,
            "per_unit_risk": self.per_unit_risk,
            "max_affordable_qty": self.max_affordable_qty,
            "reason": self.reason.value if self.reason else None,
            "details": self.details,
        }


def _as_decimal(value: Any) -> Decimal | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        result = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        return None
    return result if result.is_finite() else None


class RiskManager:
    """Enforce portfolio risk constraints for one effective configuration."""

    def __init__(self, config: EngineConfig):
        if config is None or not isinstance(getattr(config, "risk", None), RiskConfig):
            raise ValueError("RiskManager requires a config object with risk settings")
        self.config = config

    @property
    def risk(self) -> RiskConfig:
        return self.config.risk

    @property
    def cooldown_window(self) -> timedelta | None:
        """Cooldown length: whole signal-timeframe bars after a stop-out."""
        duration = timeframe_duration(self.config.timeframes.signal_timeframe)
        if duration is None:
            return None
        return duration * self.risk.cooldown_bars_after_stop

    # ------------------------------------------------------------------
    # Gates
    # ------------------------------------------------------------------

    def today_outflow(self, state: PortfolioState, now: datetime) -> Decimal:
        """Today's net-outflow proxy; yesterday's numbers count as zero."""
        if state.day_key != utc_day_key(now):
            return ZERO
        return state.net_outflow_proxy

    def is_daily_outflow_limit_hit(self, state: PortfolioState, now: datetime) -> bool:
        if state.equity <= 0:
            return True
        limit = state.equity * to_decimal(self.risk.max_daily_net_outflow_pct)
        return self.today_outflow(state, now) <= -limit

    def is_cooldown_active(self, last_stop_out_at: datetime | None, now: datetime) -> bool:
        if last_stop_out_at is None:
            return False
        window = self.cooldown_window
        if window is None:
            return False
        return now - last_stop_out_at < window

    def can_open_position(self, state: PortfolioState, now: datetime) -> RiskDecision:
        """
        Run the entry gates in order; the first failing gate wins.

        a. INSUFFICIENT_EQUITY: equity <= 0
        b. MAX_POSITIONS: open count >= max_open_positions
        c. DAILY_OUTFLOW_LIMIT: today's outflow proxy <= -(equity * max pct)
        d. COOLDOWN: still inside the post-stop window

        Args:
            state: Portfolio state (read only)
            now: Evaluation time

        Returns:
            RiskDecision; when allowed, ``risk`` holds the effective config.
        """
        equity = state.equity
        if equity is None or not equity.is_finite() or equity <= 0:
            return RiskDecision(
                allowed=False,
                reason=RiskReason.INSUFFICIENT_EQUITY,
                details={"equity": equity},
            )

        max_open = self.risk.max_open_positions
        if state.open_count >= max_open:
            return RiskDecision(
                allowed=False,
                reason=RiskReason.MAX_POSITIONS,
                details={
                    "open_positions": state.open_count,
                    "max_open_positions": max_open,
                },
            )

        outflow = self.today_outflow(state, now)
        max_outflow = equity * to_decimal(self.risk.max_daily_net_outflow_pct)
        if outflow <= -max_outflow:
            return RiskDecision(
                allowed=False,
                reason=RiskReason.DAILY_OUTFLOW_LIMIT,
                details={
                    "today_net_outflow_proxy": outflow,
                    "max_outflow": max_outflow,
                    "max_daily_net_outflow_pct": self.risk.max_daily_net_outflow_pct,
                },
            )

        last_stop = state.last_stop_out_at
        if self.is_cooldown_active(last_stop, now):
            window = self.cooldown_window
            elapsed = now - last_stop
            return RiskDecision(
                allowed=False,
                reason=RiskReason.COOLDOWN,
                details={
                    "last_stop_out_at": last_stop,
                    "cooldown_bars_after_stop": self.risk.cooldown_bars_after_stop,
                    "signal_timeframe": self.config.timeframes.signal_timeframe,
                    "cooldown_seconds": window.total_seconds(),
                    "remaining_seconds": (window - elapsed).total_seconds(),
                },
            )

        return RiskDecision(allowed=True, risk=self.risk)

    # ------------------------------------------------------------------
    # Sizing
    # ------------------------------------------------------------------

    def compute_position_size(
        self,
        equity: Decimal,
        entry_price: Decimal,
        stop_price: Decimal,
        available_cash: Decimal | None = None,
    ) -> PositionSize:
        """
        Size a position so the loss at the stop equals the per-trade risk.

        quantity = min(equity * risk_per_trade_pct / |entry - stop|,
                       available_cash / entry)

        The cash cap and the risk cap are independent; the smaller governs.
        The result is truncated to QUANTITY_STEP.

        Args:
            equity: Portfolio equity
            entry_price: Expected entry price
            stop_price: Stop-loss price
            available_cash: Spendable cash (defaults to equity)

        Returns:
            PositionSize with the final quantity or a failure reason
        """
        equity_d = _as_decimal(equity)
        if equity_d is None or equity_d <= 0:
            return PositionSize(ok=False, reason=RiskReason.INVALID_EQUITY)

        entry_d = _as_decimal(entry_price)
        if entry_d is None or entry_d <= 0:
            return PositionSize(ok=False, reason=RiskReason.INVALID_ENTRY_PRICE)

        stop_d = _as_decimal(stop_price)
        if stop_d is None or stop_d <= 0:
            return PositionSize(ok=False, reason=RiskReason.INVALID_STOP_PRICE)

        if available_cash is None:
            cash_d = equity_d
        else:
            cash_d = _as_decimal(available_cash)
            if cash_d is None or cash_d < 0:
                cash_d = ZERO

        per_unit_risk = abs(entry_d - stop_d)
        if per_unit_risk == 0:
            return PositionSize(
                ok=False,
                reason=RiskReason.INVALID_STOP,
                details={"entry_price": entry_d, "stop_price": stop_d},
            )

        risk_dollars = equity_d * to_decimal(self.risk.risk_per_trade_pct)
        raw_qty = risk_dollars / per_unit_risk
        max_affordable = cash_d / entry_d
        quantity = min(raw_qty, max_affordable)
        if quantity.is_finite():
            try:
                quantity = quantity.quantize(QUANTITY_STEP, rounding=ROUND_DOWN)
            except InvalidOperation:
                pass  # beyond lot precision, leave as is

        if not quantity.is_finite() or quantity <= 0:
            return PositionSize(
                ok=False,
                reason=RiskReason.INVALID_QUANTITY,
                risk_dollars=risk_dollars,
                per_unit_risk=per_unit_risk,
                max_affordable_qty=max_affordable,
                details={"raw_quantity": raw_qty, "available_cash": cash_d},
            )

        return PositionSize(
            ok=True,
            quantity=quantity,
            risk_dollars=risk_dollars,
            per_unit_risk=per_unit_risk,
            max_affordable_qty=max_affordable,
        )

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    def record_stop_out(self, state: PortfolioState, now: datetime) -> None:
        """Arm the cooldown from this stop-out."""
        state.last_stop_out_at = now
        logger.info(
            "Cooldown armed for %s: %d bars of %s",
            state.portfolio_id,
            self.risk.cooldown_bars_after_stop,
            self.config.timeframes.signal_timeframe,
        )

    def track_realized_pnl(self, state: PortfolioState, net_pnl: Decimal, now: datetime) -> None:
        """Add a realized result to today's accumulator, rolling at UTC midnight."""
        state.roll_day(now)
        state.realized_pnl_today += net_pnl
