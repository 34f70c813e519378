"""Per-tick audit decision records."""

import hashlib
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class DecisionStage(str, Enum):
    """Where in the evaluation pipeline a decision was reached."""

    PORTFOLIO = "PORTFOLIO"
    DATA = "DATA"
    POSITION_MANAGEMENT = "POSITION_MANAGEMENT"
    RISK_BLOCK = "RISK_BLOCK"
    INDICATORS = "INDICATORS"
    SIGNAL = "SIGNAL"
    EXECUTION = "EXECUTION"
    ERROR = "ERROR"


class DecisionAction(str, Enum):
    BUY = "BUY"
    HOLD = "HOLD"
    EXIT = "EXIT"


class Decision(BaseModel):
    """Structured record emitted for every (portfolio, symbol) evaluation."""

    portfolio_id: str
    symbol: str
    evaluated_at: datetime
    stage: DecisionStage
    action: DecisionAction = DecisionAction.HOLD
    reason: str
    payload: dict[str, Any] = Field(default_factory=dict)

    @property
    def id(self) -> str:
        """One record per (portfolio, symbol, tick); re-recording a tick overwrites it."""
        key = f"{self.portfolio_id}:{self.symbol}:{self.evaluated_at.isoformat()}"
        return hashlib.sha256(key.encode()).hexdigest()[:32]

    def to_log_dict(self) -> dict[str, Any]:
        """Flatten into JSON-friendly key/value pairs for audit sinks."""
        return {
            "portfolio_id": self.portfolio_id,
            "symbol": self.symbol,
            "evaluated_at": self.evaluated_at.isoformat(),
            "stage": self.stage.value,
            "action": self.action.value,
            "reason": self.reason,
            **self.model_dump(mode="json", include={"payload"}),
        }
