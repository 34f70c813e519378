"""Audit sinks for per-tick decisions."""

import logging
from typing import Any

import orjson

from app.services.persistence_writer import PersistenceWriter
from core.models.decision import Decision, DecisionStage
from core.protocols import MemoryAuditSink

logger = logging.getLogger(__name__)

audit_logger = logging.getLogger("engine.audit")

__all__ = ["LoggingAuditSink", "MemoryAuditSink", "DatabaseAuditSink", "CompositeAuditSink"]


def _orjson_dumps(obj: Any) -> str:
    """Serialize object to JSON string using orjson."""
    return orjson.dumps(obj, default=str).decode("utf-8")


class LoggingAuditSink:
    """One JSON line per decision on the ``engine.audit`` logger."""

    def __init__(self, log: logging.Logger | None = None):
        self._log = log or audit_logger

    async def record(self, decision: Decision) -> None:
        level = logging.ERROR if decision.stage == DecisionStage.ERROR else logging.INFO
        self._log.log(level, _orjson_dumps(decision.to_log_dict()))


class DatabaseAuditSink:
    """Queues decisions on the persistence writer."""

    def __init__(self, writer: PersistenceWriter):
        self.writer = writer

    async def record(self, decision: Decision) -> None:
        self.writer.submit_decision(decision)


class CompositeAuditSink:
    """Fans a decision out to several sinks; one failing sink never blocks the rest."""

    def __init__(self, *sinks):
        self.sinks = list(sinks)

    async def record(self, decision: Decision) -> None:
        for sink in self.sinks:
            try:
                await sink.record(decision)
            except Exception as e:
                logger.warning("Audit sink %s failed: %s", type(sink).__name__, e)
