"""Fire-and-forget persistence of engine state.

The execution service and the audit sink hand PersistRequests to
``submit`` synchronously. A background task drains the queue into the
repository. Failures are logged and dropped: the in-memory ledger stays
authoritative and the next mutation of the same row upserts it again.
"""

import asyncio
import logging

from app.storage.portfolio_repo import PortfolioRepository
from core.models.decision import Decision
from core.protocols import PersistRequest

logger = logging.getLogger(__name__)


class PersistenceWriter:
    """Background writer for positions, orders, cash and decisions."""

    def __init__(self, repo: PortfolioRepository | None = None, max_queue_size: int = 10000):
        self.repo = repo or PortfolioRepository()
        self._queue: asyncio.Queue[PersistRequest] = asyncio.Queue(maxsize=max_queue_size)
        self._running = False
        self._task: asyncio.Task | None = None
        self.written = 0
        self.failed = 0
        self.dropped = 0

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def submit(self, request: PersistRequest) -> None:
        """Enqueue a request without waiting. A full queue drops the request."""
        try:
            self._queue.put_nowait(request)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning("Persistence queue full, dropping %s %s", request.kind, request.key)

    async def start(self) -> None:
        """Start draining the queue in the background."""
        if self._running:
            return

        self._running = True
        self._task = asyncio.create_task(self._run())

    async def stop(self, timeout: float = 10.0) -> None:
        """Wait for queued writes to finish, then stop the background task."""
        self._running = False
        if self._task:
            try:
                await asyncio.wait_for(self._queue.join(), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning("Persistence drain timed out with %d pending", self.pending)
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        else:
            await self.flush()

    async def flush(self) -> None:
        """Write every queued request now."""
        while not self._queue.empty():
            request = self._queue.get_nowait()
            try:
                await self._write(request)
            finally:
                self._queue.task_done()

    async def _run(self) -> None:
        while True:
            request = await self._queue.get()
            try:
                await self._write(request)
            finally:
                self._queue.task_done()

    async def _write(self, request: PersistRequest) -> None:
        try:
            if request.kind == "position":
                await self.repo.save_position({**request.payload, "id": request.key})
            elif request.kind == "order":
                await self.repo.save_order({**request.payload, "id": request.key})
            elif request.kind == "portfolio":
                await self.repo.update_cash(request.key, request.payload["current_cash"])
            elif request.kind == "decision":
                await self.repo.save_decision(request.payload["decision"])
            else:
                logger.warning("Unknown persistence request kind: %s", request.kind)
                return
            self.written += 1
        except Exception as e:
            self.failed += 1
            logger.warning("Failed to persist %s %s: %s", request.kind, request.key, e)

    def submit_decision(self, decision: Decision) -> None:
        self.submit(PersistRequest(kind="decision", key=decision.id, payload={"decision": decision}))
