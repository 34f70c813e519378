"""Data storage layer."""

from app.storage.database import Database, get_database, init_database
from app.storage.candle_repo import CandleRepository
from app.storage.portfolio_repo import PortfolioRepository

__all__ = [
    "Database",
    "get_database",
    "init_database",
    "CandleRepository",
    "PortfolioRepository",
]
