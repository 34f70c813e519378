"""PostgreSQL access for replay.

A single read-only asyncpg pool over the live candles table.
"""

from __future__ import annotations

import logging

import asyncpg

logger = logging.getLogger(__name__)


class BacktestDatabase:
    """Asyncpg connection pool for replay candle loading."""

    def __init__(self, database_url: str):
        self._database_url = database_url
        self._pool: asyncpg.Pool | None = None

    @property
    def pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise RuntimeError("Database not initialized. Call init() first.")
        return self._pool

    async def init(self) -> None:
        """Create the connection pool."""
        self._pool = await asyncpg.create_pool(
            self._database_url,
            min_size=1,
            max_size=4,
            command_timeout=120,
        )
        logger.info("Replay database pool ready")

    async def close(self) -> None:
        """Close connection pool."""
        if self._pool:
            await self._pool.close()
            self._pool = None
