"""Portfolio metadata and paper ledger repository."""

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert

from app.storage.database import (
    EngineDecisionTable,
    PaperOrderTable,
    PaperPositionTable,
    PortfolioTable,
    get_database,
)
from core.models.decision import Decision
from core.models.portfolio import ExitReason, LedgerSnapshot, Position
from core.protocols import PortfolioInfo
from core.timeframes import start_of_utc_day, utc_day_key

logger = logging.getLogger(__name__)

_POSITION_COLUMNS = {c.name for c in PaperPositionTable.__table__.columns}
_ORDER_COLUMNS = {c.name for c in PaperOrderTable.__table__.columns}


def _to_decimal(value: Any) -> Decimal:
    if value is None:
        return Decimal("0")
    try:
        result = Decimal(str(value))
    except ArithmeticError:
        return Decimal("0")
    return result if result.is_finite() else Decimal("0")


def _optional_decimal(value: Any) -> Decimal | None:
    return None if value is None else _to_decimal(value)


def _row_to_info(row: PortfolioTable) -> PortfolioInfo:
    return PortfolioInfo(
        id=row.id,
        name=row.name or "",
        status=row.status or "active",
        current_cash=_to_decimal(row.current_cash),
        starting_capital=_to_decimal(row.starting_capital),
        symbols=tuple(row.symbols or ()),
        overrides=dict(row.overrides or {}),
    )


def _row_to_position(row: PaperPositionTable) -> Position:
    return Position(
        id=row.id,
        portfolio_id=row.portfolio_id,
        symbol=row.symbol,
        size=_to_decimal(row.size),
        entry_price=_to_decimal(row.entry_price),
        signal_price=_to_decimal(row.signal_price),
        entry_fee=_to_decimal(row.entry_fee),
        stop_price=_optional_decimal(row.stop_price),
        take_profit_price=_optional_decimal(row.take_profit_price),
        highest_close=_to_decimal(row.highest_close),
        trail_active=bool(row.trail_active),
        trail_stop=_optional_decimal(row.trail_stop),
        opened_at=row.opened_at,
        last_candle_at=row.last_candle_at,
    )


def _day_cashflow(rows) -> tuple[Decimal, Decimal]:
    """Buy and sell cash flow from (side, notional, fee) aggregates.

    Buys cost notional plus fee, sells return notional minus fee, matching
    the in-memory ledger.
    """
    buy_value = sell_value = Decimal("0")
    for side, notional, fee in rows:
        if side == "BUY":
            buy_value += _to_decimal(notional) + _to_decimal(fee)
        elif side == "SELL":
            sell_value += _to_decimal(notional) - _to_decimal(fee)
    return buy_value, sell_value


class PortfolioRepository:
    """Reads portfolio metadata and the paper ledger; idempotently upserts positions, orders and decisions."""

    async def get_portfolios(self) -> list[PortfolioInfo]:
        """Get every portfolio (active and paused)."""
        async with get_database().session() as session:
            result = await session.execute(select(PortfolioTable).order_by(PortfolioTable.id))
            rows = result.scalars().all()
        return [_row_to_info(row) for row in rows]

    async def get_portfolio(self, portfolio_id: str) -> PortfolioInfo | None:
        async with get_database().session() as session:
            row = await session.get(PortfolioTable, portfolio_id)
        return _row_to_info(row) if row else None

    async def upsert_portfolio(self, info: PortfolioInfo) -> None:
        async with get_database().session() as session:
            stmt = insert(PortfolioTable).values(
                id=info.id,
                name=info.name,
                status=info.status,
                current_cash=info.current_cash,
                starting_capital=info.starting_capital,
                symbols=list(info.symbols),
                overrides=info.overrides,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["id"],
                set_={
                    "name": stmt.excluded.name,
                    "status": stmt.excluded.status,
                    "symbols": stmt.excluded.symbols,
                    "overrides": stmt.excluded.overrides,
                },
            )
            await session.execute(stmt)

    async def update_cash(self, portfolio_id: str, cash: Decimal) -> None:
        async with get_database().session() as session:
            stmt = (
                update(PortfolioTable)
                .where(PortfolioTable.id == portfolio_id)
                .values(current_cash=cash)
            )
            await session.execute(stmt)

    async def save_position(self, payload: dict[str, Any]) -> None:
        """Upsert a position keyed by its deterministic id."""
        values = {k: v for k, v in payload.items() if k in _POSITION_COLUMNS}
        async with get_database().session() as session:
            stmt = insert(PaperPositionTable).values(**values)
            stmt = stmt.on_conflict_do_update(
                index_elements=["id"],
                set_={k: stmt.excluded[k] for k in values if k != "id"},
            )
            await session.execute(stmt)

    async def save_order(self, payload: dict[str, Any]) -> None:
        """Insert a fill; replaying the same fill is a no-op."""
        values = {k: v for k, v in payload.items() if k in _ORDER_COLUMNS}
        async with get_database().session() as session:
            stmt = insert(PaperOrderTable).values(**values)
            stmt = stmt.on_conflict_do_nothing(index_elements=["id"])
            await session.execute(stmt)

    async def save_decision(self, decision: Decision) -> None:
        record = decision.model_dump(mode="json")
        async with get_database().session() as session:
            stmt = insert(EngineDecisionTable).values(
                id=decision.id,
                portfolio_id=decision.portfolio_id,
                symbol=decision.symbol,
                evaluated_at=decision.evaluated_at,
                stage=decision.stage.value,
                action=decision.action.value,
                reason=decision.reason,
                payload=record["payload"],
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["id"],
                set_={
                    "stage": stmt.excluded.stage,
                    "action": stmt.excluded.action,
                    "reason": stmt.excluded.reason,
                    "payload": stmt.excluded.payload,
                },
            )
            await session.execute(stmt)

    # ------------------------------------------------------------------
    # Ledger restore
    # ------------------------------------------------------------------

    async def get_open_positions(self, portfolio_id: str) -> list[Position]:
        async with get_database().session() as session:
            result = await session.execute(
                select(PaperPositionTable)
                .where(
                    PaperPositionTable.portfolio_id == portfolio_id,
                    PaperPositionTable.status == "OPEN",
                )
                .order_by(PaperPositionTable.opened_at)
            )
            rows = result.scalars().all()
        return [_row_to_position(row) for row in rows]

    async def get_last_stop_out_at(self, portfolio_id: str) -> datetime | None:
        async with get_database().session() as session:
            result = await session.execute(
                select(func.max(PaperOrderTable.executed_at)).where(
                    PaperOrderTable.portfolio_id == portfolio_id,
                    PaperOrderTable.side == "SELL",
                    PaperOrderTable.reason == ExitReason.STOP.value,
                )
            )
            return result.scalar_one_or_none()

    async def get_daily_cashflow(self, portfolio_id: str, now: datetime) -> tuple[Decimal, Decimal]:
        """Buy and sell cash flow of the UTC day containing ``now``."""
        day_start = start_of_utc_day(now)
        async with get_database().session() as session:
            result = await session.execute(
                select(
                    PaperOrderTable.side,
                    func.sum(PaperOrderTable.price * PaperOrderTable.size),
                    func.sum(PaperOrderTable.fee),
                )
                .where(
                    PaperOrderTable.portfolio_id == portfolio_id,
                    PaperOrderTable.executed_at >= day_start,
                    PaperOrderTable.executed_at < day_start + timedelta(days=1),
                )
                .group_by(PaperOrderTable.side)
            )
            rows = result.all()
        return _day_cashflow(rows)

    async def get_realized_pnl_today(self, portfolio_id: str, now: datetime) -> Decimal:
        day_start = start_of_utc_day(now)
        async with get_database().session() as session:
            result = await session.execute(
                select(func.sum(PaperPositionTable.pnl)).where(
                    PaperPositionTable.portfolio_id == portfolio_id,
                    PaperPositionTable.status == "CLOSED",
                    PaperPositionTable.closed_at >= day_start,
                    PaperPositionTable.closed_at < day_start + timedelta(days=1),
                )
            )
            return _to_decimal(result.scalar_one_or_none())

    async def load_snapshot(self, portfolio_id: str, now: datetime) -> LedgerSnapshot:
        """Rebuild the ledger of a portfolio that this process has not seen yet."""
        positions = await self.get_open_positions(portfolio_id)
        last_stop_out_at = await self.get_last_stop_out_at(portfolio_id)
        buy_value, sell_value = await self.get_daily_cashflow(portfolio_id, now)
        realized = await self.get_realized_pnl_today(portfolio_id, now)

        logger.info(
            "Restored %s: %d open positions, last stop-out %s",
            portfolio_id,
            len(positions),
            last_stop_out_at,
        )
        return LedgerSnapshot(
            positions=positions,
            last_stop_out_at=last_stop_out_at,
            day_key=utc_day_key(now),
            realized_pnl_today=realized,
            buy_value_today=buy_value,
            sell_value_today=sell_value,
        )
