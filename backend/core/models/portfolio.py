"""Paper position and portfolio state models."""

import hashlib
from datetime import datetime
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, Field

from core.timeframes import utc_day_key


class ExitReason(str, Enum):
    """Why a position was closed."""

    STOP = "STOP"
    TP = "TP"
    TRAIL = "TRAIL"


def generate_fill_id(portfolio_id: str, symbol: str, moment: datetime, side: str) -> str:
    """Deterministic id so a replay of the same ticks yields the same ids."""
    ts_str = moment.strftime("%Y%m%d%H%M%S%f")
    key = f"{portfolio_id}:{symbol}:{ts_str}:{side}"
    return hashlib.sha256(key.encode()).hexdigest()[:32]


class Position(BaseModel):
    """Open long paper position. Mutated every tick by the lifecycle manager."""

    id: str = ""
    portfolio_id: str
    symbol: str
    size: Decimal
    entry_price: Decimal  # fill price, slippage included
    signal_price: Decimal  # close the entry was derived from
    entry_fee: Decimal = Decimal("0")
    stop_price: Decimal | None = None
    take_profit_price: Decimal | None = None
    highest_close: Decimal
    trail_active: bool = False
    trail_stop: Decimal | None = None
    opened_at: datetime
    last_candle_at: datetime | None = None  # newest candle already managed against

    def model_post_init(self, __context) -> None:
        if not self.id:
            object.__setattr__(
                self,
                "id",
                generate_fill_id(self.portfolio_id, self.symbol, self.opened_at, "OPEN"),
            )

    @property
    def cost_basis(self) -> Decimal:
        """Cash debited at open (notional plus fee)."""
        return self.entry_price * self.size + self.entry_fee


class PortfolioState(BaseModel):
    """In-memory ledger for one portfolio; the source of truth for decisions."""

    portfolio_id: str
    name: str = ""
    cash: Decimal
    equity: Decimal
    positions: list[Position] = Field(default_factory=list)
    day_key: str = ""
    realized_pnl_today: Decimal = Decimal("0")
    buy_value_today: Decimal = Decimal("0")
    sell_value_today: Decimal = Decimal("0")
    last_stop_out_at: datetime | None = None

    def get_position(self, symbol: str) -> Position | None:
        for position in self.positions:
            if position.symbol == symbol:
                return position
        return None

    @property
    def open_count(self) -> int:
        return len(self.positions)

    @property
    def net_outflow_proxy(self) -> Decimal:
        """Cash spent today net of sells, as a non-positive number.

        Derived from buy/sell cash flow rather than realized P&L.
        """
        net_cashflow = self.sell_value_today - self.buy_value_today
        return -max(Decimal("0"), -net_cashflow)

    def roll_day(self, now: datetime) -> bool:
        """Reset daily accumulators when ``now`` falls on a new UTC day.

        Returns:
            True if the accumulators were reset
        """
        key = utc_day_key(now)
        if self.day_key == key:
            return False
        self.day_key = key
        self.realized_pnl_today = Decimal("0")
        self.buy_value_today = Decimal("0")
        self.sell_value_today = Decimal("0")
        return True

    def mark_to_market(self, marks: dict[str, Decimal] | None = None) -> Decimal:
        """Recompute equity as cash plus positions at the latest known marks."""
        marks = marks or {}
        equity = self.cash
        for position in self.positions:
            mark = marks.get(position.symbol)
            price = mark if mark is not None and mark.is_finite() else position.entry_price
            equity += price * position.size
        self.equity = equity
        return equity


class LedgerSnapshot(BaseModel):
    """Persisted ledger state used to rebuild a PortfolioState after a restart."""

    positions: list[Position] = Field(default_factory=list)
    last_stop_out_at: datetime | None = None
    day_key: str = ""
    realized_pnl_today: Decimal = Decimal("0")
    buy_value_today: Decimal = Decimal("0")
    sell_value_today: Decimal = Decimal("0")
