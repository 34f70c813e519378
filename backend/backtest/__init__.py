"""Deterministic replay of the paper-trading engine.

Fully independent of app/: drives core.engine.EvaluationOrchestrator with
an in-memory candle source and a stepping clock.

Usage:
    python -m backtest --symbols BTC-USD --start 2025-01-01 --end 2025-03-31
"""

from backtest.runner import ReplayConfig, ReplayRunner
from backtest.stats import ReplaySummary

__all__ = ["ReplayConfig", "ReplayRunner", "ReplaySummary"]
