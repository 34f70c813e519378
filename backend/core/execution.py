"""Paper execution ledger.

Owns the table of PortfolioState keyed by portfolio id. Applies simulated
fills (slippage and fees), mutates cash and positions, and emits
fire-and-forget persistence requests. In-memory state stays authoritative
whether or not persistence succeeds.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from core.models.config import EngineConfig, to_decimal
from core.models.portfolio import (
    ExitReason,
    LedgerSnapshot,
    PortfolioState,
    Position,
    generate_fill_id,
)
from core.protocols import PersistCallback, PersistRequest
from core.risk_manager import RiskManager

logger = logging.getLogger(__name__)

ONE = Decimal("1")


class ExecutionReason(str, Enum):
    MISSING_STOP = "MISSING_STOP"
    INVALID_STOP = "INVALID_STOP"
    INVALID_SIZE = "INVALID_SIZE"
    INVALID_PRICE = "INVALID_PRICE"
    INSUFFICIENT_CASH = "INSUFFICIENT_CASH"
    UNKNOWN_PORTFOLIO = "UNKNOWN_PORTFOLIO"
    POSITION_NOT_FOUND = "POSITION_NOT_FOUND"


@dataclass(frozen=True)
class OpenResult:
    ok: bool
    reason: ExecutionReason | None = None
    position: Position | None = None
    fill_price: Decimal | None = None
    fee: Decimal | None = None
    cost: Decimal | None = None
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "ok": self.ok,
            "reason": self.reason.value if self.reason else None,
            "position": self.position.model_dump(mode="json") if self.position else None,
            "fill_price": self.fill_price,
            "fee": self.fee,
            "cost": self.cost,
            "details": self.details,
        }


@dataclass(frozen=True)
class CloseResult:
    ok: bool
    reason: ExecutionReason | None = None
    exit_reason: ExitReason | None = None
    fill_price: Decimal | None = None
    fee: Decimal | None = None
    net_pnl: Decimal | None = None

    def to_dict(self) -> dict:
        return {
            "ok": self.ok,
            "reason": self.reason.value if self.reason else None,
            "exit_reason": self.exit_reason.value if self.exit_reason else None,
            "fill_price": self.fill_price,
            "fee": self.fee,
            "net_pnl": self.net_pnl,
        }


class ExecutionService:
    """In-memory paper ledger for every tracked portfolio."""

    def __init__(
        self,
        config: EngineConfig | None = None,
        persist: PersistCallback | None = None,
    ):
        """
        Args:
            config: Default config for fills (per-call config wins)
            persist: Receives persistence requests; failures are logged only
        """
        self.config = config or EngineConfig()
        self._persist = persist
        self._portfolios: dict[str, PortfolioState] = {}

    # ------------------------------------------------------------------
    # Portfolio table
    # ------------------------------------------------------------------

    def ensure_portfolio(
        self,
        portfolio_id: str,
        starting_cash: Decimal,
        name: str = "",
        snapshot: LedgerSnapshot | None = None,
    ) -> PortfolioState:
        """Get the state for a portfolio, seeding it on first sight.

        ``snapshot`` restores open positions, the last stop-out and today's
        cash flow from persistence. It is ignored once the portfolio is
        tracked, since the in-memory ledger is then authoritative.
        """
        state = self._portfolios.get(portfolio_id)
        if state is None:
            cash = starting_cash if starting_cash is not None else Decimal("0")
            state = PortfolioState(
                portfolio_id=portfolio_id,
                name=name,
                cash=cash,
                equity=cash,
            )
            if snapshot is not None:
                state.positions = [p.model_copy() for p in snapshot.positions]
                state.last_stop_out_at = snapshot.last_stop_out_at
                state.day_key = snapshot.day_key
                state.realized_pnl_today = snapshot.realized_pnl_today
                state.buy_value_today = snapshot.buy_value_today
                state.sell_value_today = snapshot.sell_value_today
                state.mark_to_market()
            self._portfolios[portfolio_id] = state
            logger.info(
                "Tracking portfolio %s with cash %s and %d open positions",
                portfolio_id,
                cash,
                state.open_count,
            )
        return state

    def get_portfolio_state(self, portfolio_id: str) -> PortfolioState | None:
        return self._portfolios.get(portfolio_id)

    def get_open_position(self, portfolio_id: str, symbol: str) -> Position | None:
        state = self._portfolios.get(portfolio_id)
        if state is None:
            return None
        return state.get_position(symbol)

    def portfolio_equity(
        self, portfolio_id: str, marks: dict[str, Decimal] | None = None
    ) -> Decimal:
        """Mark the portfolio to market and return its equity."""
        state = self._portfolios.get(portfolio_id)
        if state is None:
            return Decimal("0")
        return state.mark_to_market(marks)

    @property
    def portfolio_ids(self) -> list[str]:
        return list(self._portfolios)

    # ------------------------------------------------------------------
    # Fills
    # ------------------------------------------------------------------

    def open_position(
        self,
        portfolio_id: str,
        symbol: str,
        size: Decimal,
        entry_price: Decimal,
        stop_price: Decimal | None,
        now: datetime,
        config: EngineConfig | None = None,
        candle_at: datetime | None = None,
    ) -> OpenResult:
        """
        Open a long paper position with a slipped buy fill.

        fill = entry * (1 + slippage); fee = fill * size * fee_rate;
        take profit = entry + R * (entry - stop).

        Args:
            portfolio_id: Owning portfolio
            symbol: Instrument
            size: Quantity to buy
            entry_price: Reference price (latest close)
            stop_price: Stop-loss price
            now: Fill time
            config: Effective config for this portfolio
            candle_at: Open time of the candle the entry was priced from

        Returns:
            OpenResult with the new Position or a failure reason
        """
        cfg = config or self.config
        risk = cfg.risk

        if stop_price is None or stop_price <= 0:
            if risk.require_stop_loss:
                return OpenResult(ok=False, reason=ExecutionReason.MISSING_STOP)
            stop_price = None

        state = self._portfolios.get(portfolio_id)
        if state is None:
            return OpenResult(ok=False, reason=ExecutionReason.UNKNOWN_PORTFOLIO)

        if size is None or not size.is_finite() or size <= 0:
            return OpenResult(ok=False, reason=ExecutionReason.INVALID_SIZE)
        if entry_price is None or not entry_price.is_finite() or entry_price <= 0:
            return OpenResult(ok=False, reason=ExecutionReason.INVALID_PRICE)
        if stop_price is not None and stop_price >= entry_price:
            return OpenResult(
                ok=False,
                reason=ExecutionReason.INVALID_STOP,
                details={"entry_price": entry_price, "stop_price": stop_price},
            )

        fill_price = entry_price * (ONE + risk.slippage_rate)
        cost = fill_price * size
        fee = cost * risk.fee_rate

        take_profit = None
        if stop_price is not None:
            r_multiple = to_decimal(cfg.strategy.take_profit_r_multiple)
            take_profit = entry_price + r_multiple * (entry_price - stop_price)

        if cost + fee > state.cash:
            return OpenResult(
                ok=False,
                reason=ExecutionReason.INSUFFICIENT_CASH,
                fill_price=fill_price,
                fee=fee,
                cost=cost,
                details={"cash": state.cash, "required": cost + fee},
            )

        position = Position(
            portfolio_id=portfolio_id,
            symbol=symbol,
            size=size,
            entry_price=fill_price,
            signal_price=entry_price,
            entry_fee=fee,
            stop_price=stop_price,
            take_profit_price=take_profit,
            highest_close=fill_price,
            opened_at=now,
            last_candle_at=candle_at,
        )

        state.roll_day(now)
        state.cash -= cost + fee
        state.buy_value_today += cost + fee
        state.positions.append(position)

        self._emit("position", position.id, {**position.model_dump(), "status": "OPEN"})
        self._emit(
            "order",
            generate_fill_id(portfolio_id, symbol, now, "BUY"),
            {
                "portfolio_id": portfolio_id,
                "position_id": position.id,
                "symbol": symbol,
                "side": "BUY",
                "price": fill_price,
                "size": size,
                "fee": fee,
                "executed_at": now,
            },
        )

        self._emit("portfolio", portfolio_id, {"current_cash": state.cash})

        logger.info(
            "Opened paper position %s %s size=%s fill=%s stop=%s tp=%s",
            portfolio_id,
            symbol,
            size,
            fill_price,
            stop_price,
            take_profit,
        )
        return OpenResult(ok=True, position=position, fill_price=fill_price, fee=fee, cost=cost)

    def close_position(
        self,
        portfolio_id: str,
        position_id: str,
        exit_price: Decimal,
        reason: ExitReason,
        now: datetime,
        config: EngineConfig | None = None,
    ) -> CloseResult:
        """
        Close a position with a slipped sell fill and book the result.

        fill = exit * (1 - slippage);
        net = (fill - entry) * size - entry_fee - exit_fee.
        """
        cfg = config or self.config
        risk = cfg.risk

        state = self._portfolios.get(portfolio_id)
        if state is None:
            return CloseResult(ok=False, reason=ExecutionReason.UNKNOWN_PORTFOLIO)

        position = next((p for p in state.positions if p.id == position_id), None)
        if position is None:
            return CloseResult(ok=False, reason=ExecutionReason.POSITION_NOT_FOUND)

        fill_price = exit_price * (ONE - risk.slippage_rate)
        proceeds = fill_price * position.size
        fee = proceeds * risk.fee_rate
        gross_pnl = (fill_price - position.entry_price) * position.size
        net_pnl = gross_pnl - position.entry_fee - fee

        state.positions.remove(position)
        state.cash += proceeds - fee
        RiskManager(cfg).track_realized_pnl(state, net_pnl, now)
        state.sell_value_today += proceeds - fee

        self._emit(
            "position",
            position.id,
            {
                **position.model_dump(),
                "status": "CLOSED",
                "closed_at": now,
                "exit_price": fill_price,
                "exit_reason": reason.value,
                "pnl": net_pnl,
            },
        )
        self._emit(
            "order",
            generate_fill_id(portfolio_id, position.symbol, now, "SELL"),
            {
                "portfolio_id": portfolio_id,
                "position_id": position.id,
                "symbol": position.symbol,
                "side": "SELL",
                "price": fill_price,
                "size": position.size,
                "fee": fee,
                "executed_at": now,
                "reason": reason.value,
            },
        )

        self._emit("portfolio", portfolio_id, {"current_cash": state.cash})

        logger.info(
            "Closed paper position %s %s reason=%s fill=%s pnl=%s",
            portfolio_id,
            position.symbol,
            reason.value,
            fill_price,
            net_pnl,
        )
        return CloseResult(
            ok=True,
            exit_reason=reason,
            fill_price=fill_price,
            fee=fee,
            net_pnl=net_pnl,
        )

    def sync_position(self, position: Position) -> None:
        """Request persistence of an open position's mutated trailing state."""
        self._emit("position", position.id, {**position.model_dump(), "status": "OPEN"})

    def _emit(self, kind: str, key: str, payload: dict) -> None:
        if self._persist is None:
            return
        try:
            self._persist(PersistRequest(kind=kind, key=key, payload=payload))
        except Exception as e:
            logger.warning("Failed to request %s persistence for %s: %s", kind, key, e)
