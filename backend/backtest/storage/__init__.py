"""Replay storage layer, independent of app/storage."""

from backtest.storage.candle_source import CandleLoader, PostgresCandleLoader
from backtest.storage.database import BacktestDatabase

__all__ = [
    "BacktestDatabase",
    "CandleLoader",
    "PostgresCandleLoader",
]
