"""
Replication Observability
=========================

Logging setup for the replication engine.

Components:
- JsonFormatter: one JSON document per log record
- PostgresLogHandler: batched persistence of log records to PostgreSQL
- StructuredLogger / log_context: run and table events with correlated context
- configure_logging: wires the handlers from the engine's logging settings

Usage:
    from observability import configure_logging, log_context

    configure_logging({"level": "INFO", "json_format": True})
    with log_context(run_id="abc123"):
        logging.getLogger("replication").info("Sync started")
"""

from .logging.structured_logger import (
    JsonFormatter,
    PostgresLogHandler,
    StructuredLogger,
    configure_logging,
    current_context,
    log_context,
)

__version__ = "1.0.0"
__all__ = ["JsonFormatter", "PostgresLogHandler", "StructuredLogger", "configure_logging", "current_context", "log_context"]
