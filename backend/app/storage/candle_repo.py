"""Closed-candle repository (database-backed CandleSource)."""

from datetime import datetime
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert

from app.storage.database import CandleTable, get_database
from core.candles import build_window
from core.models.candle import Candle, CandleWindow
from core.timeframes import closed_cutoff


def _row_to_candle(row: CandleTable) -> Candle:
    return Candle(
        symbol=row.symbol,
        timeframe=row.timeframe,
        timestamp=row.timestamp,
        open=Decimal(str(row.open)),
        high=Decimal(str(row.high)),
        low=Decimal(str(row.low)),
        close=Decimal(str(row.close)),
        volume=Decimal(str(row.volume)),
    )


class CandleRepository:
    """Read closed candles for the engine; write candles for seeding and tests."""

    async def get_last_n_closed_candles(
        self, symbol: str, timeframe: str, n: int, now: datetime
    ) -> CandleWindow:
        """Get the last ``n`` candles strictly older than ``now - timeframe``."""
        cutoff = closed_cutoff(timeframe, now)
        if cutoff is None or n <= 0:
            return CandleWindow(symbol=symbol, timeframe=timeframe)

        async with get_database().session() as session:
            stmt = (
                select(CandleTable)
                .where(
                    CandleTable.symbol == symbol,
                    CandleTable.timeframe == timeframe,
                    CandleTable.timestamp < cutoff,
                )
                .order_by(CandleTable.timestamp.desc())
                .limit(n)
            )
            result = await session.execute(stmt)
            rows = result.scalars().all()

        return build_window(symbol, timeframe, [_row_to_candle(r) for r in rows], n)

    async def get_latest_closed_candle(
        self, symbol: str, timeframe: str, now: datetime
    ) -> Candle | None:
        window = await self.get_last_n_closed_candles(symbol, timeframe, 1, now)
        return window.latest

    async def save_batch(self, candles: list[Candle], chunk_size: int = 1000) -> None:
        """Save candles in batch (upsert).

        Args:
            candles: Candles to save
            chunk_size: Rows per insert (PostgreSQL caps bind parameters at 32767)
        """
        if not candles:
            return

        async with get_database().session() as session:
            for i in range(0, len(candles), chunk_size):
                chunk = candles[i:i + chunk_size]
                values = [
                    {
                        "symbol": c.symbol,
                        "timeframe": c.timeframe,
                        "timestamp": c.timestamp,
                        "open": c.open,
                        "high": c.high,
                        "low": c.low,
                        "close": c.close,
                        "volume": c.volume,
                    }
                    for c in chunk
                ]
                stmt = insert(CandleTable).values(values)
                stmt = stmt.on_conflict_do_update(
                    index_elements=["symbol", "timeframe", "timestamp"],
                    set_={
                        "open": stmt.excluded.open,
                        "high": stmt.excluded.high,
                        "low": stmt.excluded.low,
                        "close": stmt.excluded.close,
                        "volume": stmt.excluded.volume,
                    },
                )
                await session.execute(stmt)
