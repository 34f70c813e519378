"""Database connection and table definitions."""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Index,
    Numeric,
    String,
    text,
)
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base

from app.config import get_settings

Base = declarative_base()


class CandleTable(Base):
    """Closed OHLCV candles, written by the external market-data feed."""

    __tablename__ = "candles"

    symbol = Column(String(20), primary_key=True)
    timeframe = Column(String(10), primary_key=True)
    timestamp = Column(DateTime(timezone=True), primary_key=True)
    open = Column(Numeric(20, 8), nullable=False)
    high = Column(Numeric(20, 8), nullable=False)
    low = Column(Numeric(20, 8), nullable=False)
    close = Column(Numeric(20, 8), nullable=False)
    volume = Column(Numeric(30, 8), nullable=False, default=0)

    __table_args__ = (
        Index("idx_candles_symbol_timeframe", "symbol", "timeframe"),
    )


class PortfolioTable(Base):
    """Paper portfolio metadata."""

    __tablename__ = "portfolios"

    id = Column(String(64), primary_key=True)
    name = Column(String(100), nullable=False, default="")
    status = Column(String(20), nullable=False, default="active")  # 'active' | 'paused'
    current_cash = Column(Numeric(24, 8), nullable=False, default=0)
    starting_capital = Column(Numeric(24, 8), nullable=False, default=0)
    symbols = Column(JSON, nullable=False, default=list)
    overrides = Column(JSON, nullable=False, default=dict)
    updated_at = Column(DateTime(timezone=True), server_default=text("NOW()"), onupdate=text("NOW()"))


class PaperPositionTable(Base):
    """Paper positions, open and closed."""

    __tablename__ = "paper_positions"

    id = Column(String(32), primary_key=True)
    portfolio_id = Column(String(64), nullable=False)
    symbol = Column(String(20), nullable=False)
    status = Column(String(10), nullable=False, default="OPEN")  # 'OPEN' | 'CLOSED'
    size = Column(Numeric(30, 12), nullable=False)
    entry_price = Column(Numeric(20, 8), nullable=False)
    signal_price = Column(Numeric(20, 8), nullable=False)
    entry_fee = Column(Numeric(20, 8), default=0)
    stop_price = Column(Numeric(20, 8), nullable=True)
    take_profit_price = Column(Numeric(20, 8), nullable=True)
    highest_close = Column(Numeric(20, 8), nullable=False)
    trail_active = Column(Boolean, default=False)
    trail_stop = Column(Numeric(20, 8), nullable=True)
    opened_at = Column(DateTime(timezone=True), nullable=False)
    last_candle_at = Column(DateTime(timezone=True), nullable=True)
    closed_at = Column(DateTime(timezone=True), nullable=True)
    exit_price = Column(Numeric(20, 8), nullable=True)
    exit_reason = Column(String(10), nullable=True)
    pnl = Column(Numeric(24, 8), nullable=True)

    __table_args__ = (
        Index("idx_paper_positions_portfolio_symbol", "portfolio_id", "symbol"),
        Index("idx_paper_positions_status", "status"),
    )


class PaperOrderTable(Base):
    """Simulated fills."""

    __tablename__ = "paper_orders"

    id = Column(String(32), primary_key=True)
    portfolio_id = Column(String(64), nullable=False)
    position_id = Column(String(32), nullable=False)
    symbol = Column(String(20), nullable=False)
    side = Column(String(4), nullable=False)  # 'BUY' | 'SELL'
    price = Column(Numeric(20, 8), nullable=False)
    size = Column(Numeric(30, 12), nullable=False)
    fee = Column(Numeric(20, 8), default=0)
    reason = Column(String(10), nullable=True)
    executed_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("idx_paper_orders_portfolio_time", "portfolio_id", "executed_at"),
    )


class EngineDecisionTable(Base):
    """Per-tick audit decisions."""

    __tablename__ = "engine_decisions"

    id = Column(String(32), primary_key=True)
    portfolio_id = Column(String(64), nullable=False)
    symbol = Column(String(20), nullable=False)
    evaluated_at = Column(DateTime(timezone=True), nullable=False)
    stage = Column(String(30), nullable=False)
    action = Column(String(10), nullable=False)
    reason = Column(String(50), nullable=False)
    payload = Column(JSON, nullable=False, default=dict)

    __table_args__ = (
        Index("idx_engine_decisions_portfolio_time", "portfolio_id", "evaluated_at"),
        Index("idx_engine_decisions_stage", "stage"),
    )


class Database:
    """Database connection manager."""

    def __init__(self, database_url: str | None = None):
        settings = get_settings()
        url = database_url or settings.database_url

        # Convert postgresql:// to postgresql+asyncpg://
        if url.startswith("postgresql://"):
            url = url.replace("postgresql://", "postgresql+asyncpg://", 1)

        # One evaluation loop plus the persistence writer; a small pool suffices
        self.engine = create_async_engine(
            url,
            echo=settings.database_echo,
            pool_size=5,
            max_overflow=5,
            pool_pre_ping=True,
            pool_recycle=3600,
            pool_timeout=30,
            connect_args={
                "timeout": 10,
                "command_timeout": 60,
            },
        )
        self.session_factory = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )

    async def create_tables(self) -> None:
        """Create all tables that do not exist yet."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """Get a database session."""
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def close(self) -> None:
        """Close database connection."""
        await self.engine.dispose()


# Global database instance
_db: Database | None = None


def get_database() -> Database:
    """Get the global database instance."""
    global _db
    if _db is None:
        _db = Database()
    return _db


async def init_database() -> Database:
    """Initialize the database and create tables."""
    db = get_database()
    await db.create_tables()
    return db
