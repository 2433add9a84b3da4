"""
Structured Logger
=================

Structured logging for the replication engine.

Features:
- JSON-formatted logs
- PostgreSQL persistence
- Extra fields (run_id, table, rows) carried into every output
- Context enrichment (run_id for every record logged inside a run)
"""

import json
import logging
import os
import sys
import threading
import traceback
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import psycopg2
from psycopg2.extras import Json

# Thread-local storage for context
_context = threading.local()

_RESERVED_ATTRS = {
    'name', 'msg', 'args', 'created', 'filename', 'funcName',
    'levelname', 'levelno', 'lineno', 'module', 'msecs',
    'pathname', 'process', 'processName', 'relativeCreated',
    'stack_info', 'exc_info', 'exc_text', 'thread', 'threadName',
    'message', 'taskName'
}

DEFAULT_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def _extra_fields(record: logging.LogRecord) -> Dict:
    return {key: value for key, value in record.__dict__.items() if key not in _RESERVED_ATTRS}


def current_context() -> Dict[str, Any]:
    """Context fields set by log_context() in the current thread."""
    return dict(getattr(_context, "data", {}))


@contextmanager
def log_context(**kwargs):
    """
    Add fields to every record formatted or persisted within scope.

    Usage:
        with log_context(run_id="20240101_000000"):
            logger.info("Processing")  # JSON output includes run_id
    """
    old_data = current_context()
    _context.data = {**old_data, **kwargs}
    try:
        yield
    finally:
        _context.data = old_data


class JsonFormatter(logging.Formatter):
    """JSON log formatter for structured logging."""

    def __init__(self, include_extra: bool = True):
        super().__init__()
        self.include_extra = include_extra

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno
        }

        if record.exc_info:
            log_entry["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": traceback.format_exception(*record.exc_info)
            }

        context = current_context()
        if context:
            log_entry["context"] = context

        if self.include_extra:
            log_entry.update(_extra_fields(record))

        return json.dumps(log_entry, default=str)


class PostgresLogHandler(logging.Handler):
    """Handler that persists logs to PostgreSQL in batches."""

    def __init__(
        self,
        postgres_config: Dict,
        table: str = "replication_logs",
        batch_size: int = 100
    ):
        super().__init__()
        self.postgres_config = postgres_config
        self.table = table
        self.batch_size = batch_size

        self._buffer: List[Dict] = []
        self._lock = threading.Lock()
        self._db_conn = None

    @property
    def db_conn(self):
        if self._db_conn is None or self._db_conn.closed:
            self._db_conn = psycopg2.connect(**self.postgres_config)
        return self._db_conn

    def emit(self, record: logging.LogRecord):
        """Buffer a log record, flushing when the batch is full."""
        try:
            log_entry = {
                "log_level": record.levelname,
                "logger_name": record.name,
                "source": record.module,
                "message": record.getMessage(),
                "exception": None,
                "log_metadata": {**current_context(), **_extra_fields(record)}
            }

            if record.exc_info:
                log_entry["exception"] = "".join(
                    traceback.format_exception(*record.exc_info)
                )

            with self._lock:
                self._buffer.append(log_entry)

                if len(self._buffer) >= self.batch_size:
                    self._flush()

        except Exception:
            self.handleError(record)

    def _flush(self):
        """Flush buffered logs to database."""
        if not self._buffer:
            return

        try:
            with self.db_conn.cursor() as cur:
                for entry in self._buffer:
                    cur.execute(f"""
                        INSERT INTO {self.table}
                        (log_level, logger_name, source, message, exception, log_metadata)
                        VALUES (%s, %s, %s, %s, %s, %s)
                    """, (
                        entry["log_level"],
                        entry["logger_name"],
                        entry["source"],
                        entry["message"],
                        entry["exception"],
                        Json(entry["log_metadata"], dumps=lambda obj: json.dumps(obj, default=str))
                        if entry["log_metadata"] else None
                    ))
                self.db_conn.commit()
            self._buffer.clear()
        except psycopg2.Error as e:
            # Logging must not take the pipeline down; report on stderr instead
            sys.stderr.write(f"Failed to flush logs to PostgreSQL: {e}\n")
            self.db_conn.rollback()

    def flush(self):
        with self._lock:
            self._flush()

    def close(self):
        """Close handler and flush remaining logs."""
        self.flush()
        if self._db_conn and not self._db_conn.closed:
            self._db_conn.close()
        super().close()


class StructuredLogger:
    """
    Logger wrapper for run and table events.

    Handlers come from configure_logging(); this class only shapes records.

    Usage:
        log = StructuredLogger("replication.engine")
        with log.context(run_id="20240101_000000"):
            log.info("Syncing", extra={"table": "leads"})
            log.error("Failed", exception=e)
    """

    def __init__(self, name: str):
        self.name = name
        self._logger = logging.getLogger(name)

    def context(self, **kwargs):
        """Context manager adding fields to all logs within scope."""
        return log_context(**kwargs)

    def _log(
        self,
        level: int,
        message: str,
        extra: Optional[Dict] = None,
        exception: Optional[Exception] = None
    ):
        if exception is not None:
            self._logger.log(level, message, extra=extra, exc_info=exception)
        else:
            self._logger.log(level, message, extra=extra)

    def debug(self, message: str, extra: Optional[Dict] = None):
        self._log(logging.DEBUG, message, extra)

    def info(self, message: str, extra: Optional[Dict] = None):
        self._log(logging.INFO, message, extra)

    def warning(self, message: str, extra: Optional[Dict] = None):
        self._log(logging.WARNING, message, extra)

    def error(self, message: str, extra: Optional[Dict] = None, exception: Optional[Exception] = None):
        self._log(logging.ERROR, message, extra, exception)

    def log_run_start(self, run_name: str, run_id: str, tables: int):
        """Log run start event."""
        self.info(
            f"Run started: {run_name}",
            extra={"event": "run_start", "run_name": run_name, "run_id": run_id, "tables": tables}
        )

    def log_run_end(self, run_name: str, run_id: str, status: str, duration_seconds: float, rows_processed: int = 0):
        """Log run end event."""
        level = logging.INFO if status == "success" else logging.ERROR
        self._log(
            level,
            f"Run completed: {run_name} ({status})",
            extra={
                "event": "run_end",
                "run_name": run_name,
                "run_id": run_id,
                "status": status,
                "duration_seconds": duration_seconds,
                "rows_processed": rows_processed
            }
        )


def configure_logging(settings: Optional[Dict] = None) -> logging.Logger:
    """
    Configure the root logger from a logging settings dict.

    Args:
        settings: level, json_format, log_to_file, log_path and an optional
            postgres dict (connection kwargs plus optional "table")

    Returns:
        The root logger
    """
    settings = settings or {}
    level = getattr(logging, settings.get("level", "INFO"))
    formatter = JsonFormatter() if settings.get("json_format") else logging.Formatter(DEFAULT_FORMAT)

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers = []

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    root.addHandler(console_handler)

    if settings.get("log_to_file"):
        log_path = settings.get("log_path", "logs/replication.log")
        os.makedirs(os.path.dirname(log_path) or ".", exist_ok=True)
        file_handler = logging.FileHandler(log_path)
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    postgres = settings.get("postgres")
    if postgres:
        postgres = dict(postgres)
        table = postgres.pop("table", "replication_logs")
        pg_handler = PostgresLogHandler(postgres, table=table)
        pg_handler.setLevel(level)
        root.addHandler(pg_handler)

    return root
