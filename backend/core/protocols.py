"""Interfaces to external collaborators and injected capabilities.

The evaluation core depends only on these protocols, so the live loop and
the replay harness can plug in their own candle source, persistence, audit
sink, ledger store and clock.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Protocol, runtime_checkable

from core.models.candle import Candle, CandleWindow
from core.models.decision import Decision, DecisionStage
from core.models.portfolio import LedgerSnapshot


@runtime_checkable
class CandleSource(Protocol):
    """Read access to closed candles."""

    async def get_last_n_closed_candles(
        self, symbol: str, timeframe: str, n: int, now: datetime
    ) -> CandleWindow:
        """Return up to ``n`` closed candles, ascending, deduplicated, with gap info."""
        ...

    async def get_latest_closed_candle(
        self, symbol: str, timeframe: str, now: datetime
    ) -> Candle | None:
        ...


@runtime_checkable
class AuditSink(Protocol):
    """Receives every per-tick Decision."""

    async def record(self, decision: Decision) -> None:
        ...


@runtime_checkable
class LedgerStore(Protocol):
    """Read access to the persisted paper ledger of a portfolio."""

    async def load_snapshot(self, portfolio_id: str, now: datetime) -> LedgerSnapshot:
        """Open positions, last stop-out and the cash flow of the UTC day of ``now``."""
        ...


@dataclass(frozen=True)
class PortfolioInfo:
    """Portfolio metadata as read from persistence."""

    id: str
    name: str = ""
    status: str = "active"
    current_cash: Decimal = Decimal("0")
    starting_capital: Decimal = Decimal("0")
    symbols: tuple[str, ...] = ()
    overrides: dict[str, Any] = field(default_factory=dict)

    @property
    def is_active(self) -> bool:
        return self.status == "active"


@dataclass(frozen=True)
class PersistRequest:
    """Idempotent upsert request emitted by the execution service."""

    kind: str  # "position" | "order" | "portfolio" | "decision"
    key: str
    payload: dict[str, Any]


PersistCallback = Callable[[PersistRequest], None]


class MemoryAuditSink:
    """Keeps every decision in memory (replay and tests)."""

    def __init__(self):
        self.decisions: list[Decision] = []

    async def record(self, decision: Decision) -> None:
        self.decisions.append(decision)

    def by_stage(self, stage: DecisionStage) -> list[Decision]:
        return [d for d in self.decisions if d.stage == stage]

    def clear(self) -> None:
        self.decisions.clear()


class Clock(Protocol):
    def now(self) -> datetime:
        ...


class SystemClock:
    """Wall clock in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock:
    """Manually advanced clock for tests and replay."""

    def __init__(self, start: datetime):
        self._now = start

    def now(self) -> datetime:
        return self._now

    def set(self, moment: datetime) -> None:
        self._now = moment

    def advance(self, delta) -> datetime:
        self._now = self._now + delta
        return self._now
