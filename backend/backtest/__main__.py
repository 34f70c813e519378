"""CLI entry point for replay.

Independent of app/: reads candles through its own asyncpg pool and runs
the same orchestrator as the live loop.

Usage:
    python -m backtest --symbols BTC-USD --start 2025-01-01 --end 2025-03-31
    python -m backtest --symbols BTC-USD,ETH-USD --start 2025-06-01 --end 2025-06-30 --cash 25000
    python -m backtest --portfolio trend-a --config engine.yaml --start 2025-06-01 --end 2025-06-30
"""

import argparse
import asyncio
import logging
import os
import sys
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from pathlib import Path

import yaml

# Add backend to Python path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.models.config import EngineConfig, merge_portfolio_config

from backtest.config import get_backtest_settings
from backtest.report import ReportFormatter
from backtest.runner import ReplayConfig, ReplayRunner
from backtest.storage.candle_source import PostgresCandleLoader
from backtest.storage.database import BacktestDatabase

DEFAULT_SYMBOLS = "BTC-USD"


def parse_date(date_str: str) -> datetime:
    """Parse YYYY-MM-DD to timezone-aware datetime."""
    try:
        dt = datetime.strptime(date_str, "%Y-%m-%d")
        return dt.replace(tzinfo=timezone.utc)
    except ValueError:
        raise argparse.ArgumentTypeError(
            f"Invalid date format: {date_str} (expected YYYY-MM-DD)"
        )


def parse_cash(value: str) -> Decimal:
    try:
        cash = Decimal(value)
    except InvalidOperation:
        raise argparse.ArgumentTypeError(f"Invalid cash amount: {value}")
    if not cash.is_finite() or cash <= 0:
        raise argparse.ArgumentTypeError(f"Cash must be positive: {value}")
    return cash


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Replay the paper-trading engine over stored candles",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m backtest --symbols BTC-USD --start 2025-06-01 --end 2025-06-30
  python -m backtest --portfolio trend-a --config engine.yaml --start 2025-06-01 --end 2025-06-30
        """,
    )
    parser.add_argument(
        "--symbols",
        type=str,
        default=None,
        help=f"Comma-separated symbols (default: portfolio symbols or {DEFAULT_SYMBOLS})",
    )
    parser.add_argument("--start", type=parse_date, required=True, help="Start date (YYYY-MM-DD)")
    parser.add_argument("--end", type=parse_date, required=True, help="End date (YYYY-MM-DD)")
    parser.add_argument(
        "--cash",
        type=parse_cash,
        default=Decimal("10000"),
        help="Starting cash (default: 10000)",
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Engine YAML with defaults and portfolio overrides",
    )
    parser.add_argument(
        "--portfolio",
        type=str,
        default=None,
        help="Portfolio id in the engine YAML whose overrides and symbols to use",
    )
    parser.add_argument(
        "--output", "-o",
        type=str,
        default=None,
        help="Output file path for JSON results",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Verbose logging",
    )
    return parser.parse_args()


def resolve_engine_config(path: str | None, portfolio_id: str | None) -> tuple[EngineConfig, list[str]]:
    """Effective config and configured symbols from the engine YAML, if any."""
    if not path or not Path(path).exists():
        return EngineConfig(), []

    with open(path) as f:
        raw = yaml.safe_load(f) or {}

    config = merge_portfolio_config(EngineConfig(), raw.get("defaults") or {})
    symbols: list[str] = []
    if portfolio_id:
        entry = (raw.get("portfolios") or {}).get(portfolio_id)
        if entry is None:
            print(f"Error: portfolio {portfolio_id} not found in {path}")
            sys.exit(1)
        config = merge_portfolio_config(config, entry.get("overrides") or {})
        symbols = list(entry.get("symbols") or [])
    return config, symbols


async def main() -> None:
    args = parse_args()

    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    logging.getLogger("asyncio").setLevel(logging.WARNING)
    # Per-tick decisions are too chatty for a replay console
    logging.getLogger("core").setLevel(logging.DEBUG if args.verbose else logging.WARNING)

    settings = get_backtest_settings()
    engine, configured_symbols = resolve_engine_config(
        args.config or settings.engine_config_path, args.portfolio
    )
    if args.symbols:
        symbols = [s.strip() for s in args.symbols.split(",") if s.strip()]
    else:
        symbols = configured_symbols or [DEFAULT_SYMBOLS]

    end_date = args.end.replace(hour=23, minute=59, second=59)
    config = ReplayConfig(
        symbols=symbols,
        start_date=args.start,
        end_date=end_date,
        starting_cash=args.cash,
        portfolio_id=args.portfolio or "replay",
        engine=engine,
    )

    print(f"\nReplay: {', '.join(symbols)}")
    print(f"Period: {args.start:%Y-%m-%d} → {end_date:%Y-%m-%d}")

    db = BacktestDatabase(settings.database_url)
    await db.init()
    try:
        runner = ReplayRunner(config)
        loaded = await runner.load(PostgresCandleLoader(db.pool))
        if loaded == 0:
            print("No candles found for the requested range.")
            return
        result = await runner.run()
    finally:
        await db.close()

    ReportFormatter.print_console(result)
    if args.output:
        ReportFormatter.save_json(result, args.output)


if __name__ == "__main__":
    asyncio.run(main())
