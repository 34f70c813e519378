"""Main application entry point."""

import asyncio
import logging
import signal

from app.config import Settings, get_settings

settings = get_settings()

# Configure logging FIRST, before any other imports
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

# Reduce noise from third-party libraries
logging.getLogger("sqlalchemy").setLevel(logging.WARNING)
logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
logging.getLogger("sqlalchemy.engine.Engine").setLevel(logging.WARNING)
logging.getLogger("asyncio").setLevel(logging.WARNING)

from app.engine_config import load_engine_config
from app.services import (
    CompositeAuditSink,
    DatabaseAuditSink,
    EngineRunner,
    LoggingAuditSink,
    PersistenceWriter,
)
from app.storage import CandleRepository, PortfolioRepository, get_database, init_database
from core.engine import EvaluationOrchestrator
from core.execution import ExecutionService

logger = logging.getLogger(__name__)


async def run_engine(settings: Settings) -> None:
    """Run the engine loop until SIGINT/SIGTERM."""
    engine_file = load_engine_config(settings.engine_config_path)
    defaults = engine_file.engine_defaults()
    configured = engine_file.get_portfolios()

    await init_database()
    logger.info("Database initialized")

    portfolio_repo = PortfolioRepository()
    for info in configured:
        try:
            await portfolio_repo.upsert_portfolio(info)
        except Exception as e:
            logger.warning("Could not register portfolio %s: %s", info.id, e)

    writer = PersistenceWriter(portfolio_repo, max_queue_size=settings.persistence_queue_size)
    await writer.start()

    execution = ExecutionService(config=defaults, persist=writer.submit)
    orchestrator = EvaluationOrchestrator(
        candle_source=CandleRepository(),
        execution=execution,
        audit_sink=CompositeAuditSink(LoggingAuditSink(), DatabaseAuditSink(writer)),
        ledger_store=portfolio_repo,
        default_config=defaults,
        signal_candles=settings.signal_candles,
        regime_candles=settings.regime_candles,
    )
    runner = EngineRunner(
        orchestrator,
        portfolio_loader=portfolio_repo.get_portfolios,
        fallback_portfolios=configured,
        interval_seconds=settings.loop_interval_seconds,
    )

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            pass  # Windows

    await runner.start()
    try:
        await stop_event.wait()
    finally:
        logger.info("Shutting down...")
        await runner.stop()
        await writer.stop()
        logger.info(
            "Persistence: %d written, %d failed, %d dropped",
            writer.written,
            writer.failed,
            writer.dropped,
        )
        try:
            await get_database().close()
            logger.info("Database connections closed")
        except Exception as e:
            logger.warning(f"Error closing database: {e}")
        logger.info("Shutdown complete")


def main() -> None:
    asyncio.run(run_engine(settings))


if __name__ == "__main__":
    main()
