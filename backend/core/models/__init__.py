"""Data models."""

from core.models.candle import Candle, CandleWindow
from core.models.config import (
    EngineConfig,
    RiskConfig,
    StrategyConfig,
    TimeframeConfig,
    merge_portfolio_config,
)
from core.models.decision import Decision, DecisionAction, DecisionStage
from core.models.portfolio import (
    ExitReason,
    LedgerSnapshot,
    PortfolioState,
    Position,
    generate_fill_id,
)

__all__ = [
    "Candle",
    "CandleWindow",
    "EngineConfig",
    "RiskConfig",
    "StrategyConfig",
    "TimeframeConfig",
    "merge_portfolio_config",
    "Decision",
    "DecisionAction",
    "DecisionStage",
    "ExitReason",
    "LedgerSnapshot",
    "PortfolioState",
    "Position",
    "generate_fill_id",
]
