"""
SQL Source Connector
====================

Connector for reading rows from a relational source through SQLAlchemy.
MySQL (pymysql) by default; PostgreSQL (psycopg2) and SQLite work through
the same interface.
"""

import logging
import threading
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

from sqlalchemy import MetaData, Table, create_engine, func, inspect, select, text
from sqlalchemy.engine import URL, Engine

logger = logging.getLogger(__name__)


class SourceConnector:
    """
    Relational source connector for paged extraction.
    """

    def __init__(self, config: Dict):
        """
        Initialize source connector.

        Args:
            config: Either {"url": ...} or a dict with dialect, driver, host,
                port, database, username, password
        """
        self.config = config
        self.engine: Optional[Engine] = None
        self._tables: Dict[str, Table] = {}
        self._metadata = MetaData()
        self._lock = threading.Lock()

    @classmethod
    def from_engine(cls, engine: Engine) -> "SourceConnector":
        """Wrap an already configured SQLAlchemy engine."""
        connector = cls({"url": str(engine.url)})
        connector.engine = engine
        return connector

    def _connection_url(self):
        if self.config.get("url"):
            return self.config["url"]
        dialect = self.config.get("dialect", "mysql")
        driver = self.config.get("driver", "pymysql" if dialect == "mysql" else "psycopg2")
        return URL.create(
            drivername=f"{dialect}+{driver}",
            username=self.config.get("username"),
            password=self.config.get("password"),
            host=self.config.get("host"),
            port=self.config.get("port"),
            database=self.config.get("database"),
        )

    def connect(self):
        """Create the engine (if needed) and check connectivity."""
        if self.engine is None:
            self.engine = create_engine(self._connection_url(), pool_pre_ping=True)

        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))

        logger.info(f"Connected to source: {self.engine.url.render_as_string(hide_password=True)}")

    def disconnect(self):
        """Dispose of pooled connections."""
        if self.engine:
            self.engine.dispose()
            logger.info("Source connection closed")

    def get_tables(self, schema: str = None) -> List[str]:
        """List base tables of a schema (connection default if omitted)."""
        return inspect(self.engine).get_table_names(schema=schema)

    def get_row_count(self, table: str, schema: str = None) -> int:
        """Row count of a table."""
        source = self.reflect_table(table, schema)
        with self.engine.connect() as conn:
            return conn.execute(select(func.count()).select_from(source)).scalar()

    def reflect_table(self, table: str, schema: str = None) -> Table:
        """
        Reflect a table definition, cached per connector.

        Args:
            table: Table name
            schema: Optional schema/database name

        Returns:
            SQLAlchemy Table
        """
        key = f"{schema}.{table}" if schema else table
        with self._lock:
            if key not in self._tables:
                self._tables[key] = Table(table, self._metadata, schema=schema, autoload_with=self.engine)
            return self._tables[key]

    @staticmethod
    def primary_key(table: Table) -> str:
        """Name of the single primary key column of a reflected table."""
        columns = list(table.primary_key.columns)
        if len(columns) != 1:
            raise ValueError(
                f"Table {table.name} needs exactly one primary key column, found {len(columns)}; pass pk explicitly"
            )
        return columns[0].name

    def current_timestamp(self) -> datetime:
        """Current time on the source database clock."""
        with self.engine.connect() as conn:
            return conn.execute(select(func.current_timestamp())).scalar()

    def stream(self, statement) -> Iterator[Dict[str, Any]]:
        """
        Execute a SELECT with server-side cursors where the driver supports them.

        Yields:
            Plain dict rows
        """
        with self.engine.connect() as conn:
            result = conn.execution_options(stream_results=True).execute(statement)
            for row in result.mappings():
                yield dict(row)
