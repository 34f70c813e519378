"""Scheduled evaluation loop.

Ticks never overlap: a scheduled tick that comes due while the previous
one is still running is skipped. Stopping halts scheduling but lets the
in-flight tick finish, so a fill is never left half applied.
"""

import asyncio
import logging
from typing import Awaitable, Callable

from core.engine import EvaluationOrchestrator
from core.models.decision import Decision
from core.protocols import Clock, PortfolioInfo, SystemClock

logger = logging.getLogger(__name__)

PortfolioLoader = Callable[[], Awaitable[list[PortfolioInfo]]]


class EngineRunner:
    """Runs the orchestrator on a fixed interval."""

    def __init__(
        self,
        orchestrator: EvaluationOrchestrator,
        portfolio_loader: PortfolioLoader | None = None,
        fallback_portfolios: list[PortfolioInfo] | None = None,
        clock: Clock | None = None,
        interval_seconds: float = 60.0,
    ):
        """
        Args:
            orchestrator: Evaluates one tick
            portfolio_loader: Reads portfolio metadata each tick
            fallback_portfolios: Configured portfolios, used when loading fails
            clock: Source of "now" for every tick
            interval_seconds: Delay between scheduled ticks
        """
        self.orchestrator = orchestrator
        self.portfolio_loader = portfolio_loader
        self.fallback_portfolios = list(fallback_portfolios or [])
        self.clock = clock or SystemClock()
        self.interval_seconds = interval_seconds

        self._tick_lock = asyncio.Lock()
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None
        self._current_tick: asyncio.Task | None = None

        self.tick_count = 0
        self.skipped_ticks = 0
        self.failed_ticks = 0

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def tick_in_progress(self) -> bool:
        return self._tick_lock.locked()

    async def load_portfolios(self) -> list[PortfolioInfo]:
        """Load portfolio metadata, falling back to the configured portfolios."""
        if self.portfolio_loader is None:
            return self.fallback_portfolios

        try:
            loaded = await self.portfolio_loader()
        except Exception as e:
            logger.warning("Failed to load portfolios, using configured ones: %s", e)
            return self.fallback_portfolios

        if not loaded:
            return self.fallback_portfolios

        # Rows without symbols take them from the configured portfolio
        configured = {p.id: p for p in self.fallback_portfolios}
        merged = []
        for info in loaded:
            fallback = configured.get(info.id)
            if fallback is not None and not info.symbols:
                info = PortfolioInfo(
                    id=info.id,
                    name=info.name or fallback.name,
                    status=info.status,
                    current_cash=info.current_cash,
                    starting_capital=info.starting_capital,
                    symbols=fallback.symbols,
                    overrides=info.overrides or fallback.overrides,
                )
            merged.append(info)
        return merged

    async def run_tick(self) -> list[Decision] | None:
        """Run one tick now, or skip it if another tick is in progress.

        Returns:
            The tick's decisions, or None when skipped
        """
        if self._tick_lock.locked():
            self.skipped_ticks += 1
            logger.warning("Previous tick still running, skipping this one")
            return None

        async with self._tick_lock:
            now = self.clock.now()
            portfolios = await self.load_portfolios()
            decisions = await self.orchestrator.run_tick(portfolios, now)
            self.tick_count += 1
            logger.debug(
                "Tick %d at %s: %d portfolios, %d decisions",
                self.tick_count,
                now.isoformat(),
                len(portfolios),
                len(decisions),
            )
            return decisions

    async def _safe_tick(self) -> None:
        try:
            await self.run_tick()
        except Exception as e:
            self.failed_ticks += 1
            logger.error("Engine tick failed: %s", e, exc_info=True)

    async def start(self) -> None:
        """Start the scheduled loop in the background."""
        if self.is_running:
            return

        self._stop_event.clear()
        self._task = asyncio.create_task(self._run())
        logger.info("Engine loop started (interval %.1fs)", self.interval_seconds)

    async def stop(self) -> None:
        """Stop scheduling and wait for the in-flight tick to finish."""
        self._stop_event.set()
        if self._task:
            await self._task
            self._task = None
        logger.info("Engine loop stopped after %d ticks", self.tick_count)

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            if self._current_tick is None or self._current_tick.done():
                self._current_tick = asyncio.create_task(self._safe_tick())
            else:
                self.skipped_ticks += 1
                logger.warning("Previous tick still running, skipping this one")

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass

        if self._current_tick is not None and not self._current_tick.done():
            logger.info("Waiting for in-flight tick to finish")
            await self._current_tick
