"""
Trino Target Connector
======================

Connector for loading rows into the analytical store through Trino.
Used as the bulk-insert target of the sync pipeline and as the command
channel for migrations and table maintenance.
"""

import logging
import re
from typing import Any, Dict, Iterable, List, Optional

from trino.auth import BasicAuthentication
from trino.dbapi import connect

logger = logging.getLogger(__name__)

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*){0,2}$")


def _check_identifier(name: str) -> str:
    if not _IDENTIFIER.match(name):
        raise ValueError(f"Invalid identifier: {name!r}")
    return name


class TrinoStore:
    """
    Trino connector for bulk inserts and DDL.
    """

    def __init__(self, config: Dict, connection=None):
        """
        Initialize Trino store.

        Args:
            config: host, port, user, catalog, schema, optional http_scheme,
                password (basic auth) and insert_batch_size
            connection: Pre-built DB-API connection (skips connect())
        """
        self.config = config
        self.connection = connection
        self.catalog = config.get("catalog", "iceberg")
        self.schema = config.get("schema", "default")
        self.insert_batch_size = config.get("insert_batch_size", 1000)
        self._column_types: Dict[str, Dict[str, str]] = {}

    def connect(self):
        """Establish Trino connection."""
        logger.info(f"Connecting to Trino at {self.config['host']}:{self.config.get('port', 8080)}")
        auth = None
        if self.config.get("password"):
            auth = BasicAuthentication(self.config["user"], self.config["password"])
        self.connection = connect(
            host=self.config["host"],
            port=self.config.get("port", 8080),
            user=self.config.get("user", "replication"),
            catalog=self.catalog,
            schema=self.schema,
            http_scheme=self.config.get("http_scheme", "http"),
            auth=auth,
        )
        logger.info("Trino connection established")

    def close(self):
        """Close Trino connection."""
        if self.connection:
            self.connection.close()
            logger.info("Trino connection closed")

    def _execute(self, statement: str, params: Optional[List[Any]] = None):
        cursor = self.connection.cursor()
        try:
            if params:
                cursor.execute(statement, params)
            else:
                cursor.execute(statement)
            # Trino runs statements lazily until results are fetched
            rows = cursor.fetchall()
            description = cursor.description
        finally:
            cursor.close()
        return rows, description

    def query(self, statement: str, params: Optional[List[Any]] = None) -> List[Dict[str, Any]]:
        """Run a query and return dict rows."""
        rows, description = self._execute(statement, params)
        columns = [col[0] for col in (description or [])]
        return [dict(zip(columns, row)) for row in rows]

    def command(self, statement: str, settings: Optional[Dict[str, Any]] = None):
        """
        Execute a DDL or maintenance statement.

        Args:
            statement: SQL text of a single statement
            settings: Session properties applied before the statement
        """
        for name, value in (settings or {}).items():
            self._execute(f"SET SESSION {_check_identifier(name)} = {_render_literal(value)}")
        self._execute(statement)

    def create_schema(self, schema: str):
        """Create a schema in the configured catalog if missing."""
        self.command(f"CREATE SCHEMA IF NOT EXISTS {_check_identifier(self.catalog)}.{_check_identifier(schema)}")

    def column_types(self, table: str) -> Dict[str, str]:
        """Column name -> Trino type of a target table (cached)."""
        if table not in self._column_types:
            rows = self.query(
                "SELECT column_name, data_type FROM information_schema.columns "
                "WHERE table_schema = ? AND table_name = ?",
                [self.schema, table],
            )
            self._column_types[table] = {row["column_name"]: row["data_type"] for row in rows}
        return self._column_types[table]

    def insert(self, table: str, rows: Iterable[Dict[str, Any]], key: Optional[str] = None) -> Dict[str, Any]:
        """
        Bulk load rows, consuming the iterable in chunks.

        Without a key every row is appended. With a key each chunk is merged:
        rows whose key already exists overwrite the stored row, so a row
        delivered twice is stored once.

        Args:
            table: Target table in the configured catalog/schema
            rows: Any iterable of dict rows, e.g. a RowStream
            key: Primary key column of the target table

        Returns:
            Dict with table, rows_written and batches
        """
        _check_identifier(table)
        if key is not None:
            _check_identifier(key)
        types = self.column_types(table)
        written = 0
        batches = 0
        chunk: List[Dict[str, Any]] = []

        for row in rows:
            chunk.append(row)
            if len(chunk) >= self.insert_batch_size:
                written += self._load_chunk(table, chunk, types, key)
                batches += 1
                chunk = []

        if chunk:
            written += self._load_chunk(table, chunk, types, key)
            batches += 1

        logger.info(f"Written {written} rows to {self.catalog}.{self.schema}.{table} in {batches} batches")
        return {"table": table, "rows_written": written, "batches": batches}

    def _load_chunk(self, table: str, chunk: List[Dict[str, Any]], types: Dict[str, str], key: Optional[str]) -> int:
        if key is None:
            self._insert_chunk(table, chunk, types)
            return len(chunk)

        # MERGE rejects two source rows matching one target row; the last delivery wins
        latest = {row[key]: row for row in chunk}
        rows = list(latest.values())
        self._merge_chunk(table, rows, types, key)
        return len(rows)

    def _values(self, chunk: List[Dict[str, Any]], types: Dict[str, str]):
        columns = list(chunk[0].keys())
        for column in columns:
            _check_identifier(column)

        placeholders = ", ".join(
            f"CAST(? AS {types[column]})" if column in types else "?" for column in columns
        )
        values_sql = ", ".join(f"({placeholders})" for _ in chunk)
        params = [row.get(column) for row in chunk for column in columns]
        return columns, values_sql, params

    def _insert_chunk(self, table: str, chunk: List[Dict[str, Any]], types: Dict[str, str]):
        columns, values_sql, params = self._values(chunk, types)
        statement = f"INSERT INTO {table} ({', '.join(columns)}) VALUES {values_sql}"
        self._execute(statement, params)

    def _merge_chunk(self, table: str, chunk: List[Dict[str, Any]], types: Dict[str, str], key: str):
        columns, values_sql, params = self._values(chunk, types)
        if key not in columns:
            raise ValueError(f"Rows loaded into {table} have no key column {key}")

        updates = ", ".join(f"{column} = s.{column}" for column in columns if column != key)
        matched = f"WHEN MATCHED THEN UPDATE SET {updates} " if updates else ""
        statement = (
            f"MERGE INTO {table} t "
            f"USING (VALUES {values_sql}) AS s ({', '.join(columns)}) "
            f"ON t.{key} = s.{key} "
            f"{matched}"
            f"WHEN NOT MATCHED THEN INSERT ({', '.join(columns)}) "
            f"VALUES ({', '.join(f's.{column}' for column in columns)})"
        )
        self._execute(statement, params)

    def optimize(self, table: str):
        """Compact small files of an Iceberg table."""
        logger.info(f"Optimizing {table}")
        self.command(f"ALTER TABLE {_check_identifier(table)} EXECUTE optimize")


def _render_literal(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    text = str(value)
    if text.startswith("'") and text.endswith("'"):
        return text
    return "'" + text.replace("'", "''") + "'"
