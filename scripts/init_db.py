#!/usr/bin/env python3
"""Initialize the database, create tables and register configured portfolios."""

import asyncio
import sys
from pathlib import Path

# Add backend to path
sys.path.insert(0, str(Path(__file__).parent.parent / "backend"))

from app.config import get_settings
from app.engine_config import load_engine_config
from app.storage import PortfolioRepository, init_database


async def main():
    print("Initializing database...")
    db = await init_database()
    print("Tables created: candles, portfolios, paper_positions, paper_orders, engine_decisions")

    file_config = load_engine_config(get_settings().engine_config_path)
    repo = PortfolioRepository()
    for portfolio in file_config.get_portfolios():
        await repo.upsert_portfolio(portfolio)
        print(f"Registered portfolio {portfolio.id} ({len(portfolio.symbols)} symbols)")

    await db.close()


if __name__ == "__main__":
    asyncio.run(main())
