"""Business services."""

from app.services.persistence_writer import PersistenceWriter
from app.services.audit import (
    CompositeAuditSink,
    DatabaseAuditSink,
    LoggingAuditSink,
    MemoryAuditSink,
)
from app.services.engine_runner import EngineRunner

__all__ = [
    "PersistenceWriter",
    "CompositeAuditSink",
    "DatabaseAuditSink",
    "LoggingAuditSink",
    "MemoryAuditSink",
    "EngineRunner",
]
