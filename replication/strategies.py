"""
Table Sync Strategies
=====================

Query policies for the two common replication patterns, built on
SQLAlchemy Core against a reflected source table:

- Forward-only: rows never change after insert; page by primary key
- Updated-at: rows are updated in place; page by (tracking timestamp, primary key)

SyncSession runs many tables against one source/target pair and keeps the
combined bookmark map for the next run.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import and_, or_, select

from observability import current_context, log_context

from .bookmark import Bookmark
from .connectors.source_connector import SourceConnector
from .stream_copy import Sink, StoreSink, SyncResult, TableSyncSpec, synchronize_table
from .type_mapping import RowMapper, standard_value_mapper

logger = logging.getLogger(__name__)

DEFAULT_DELAY_SECONDS = 60


def _target_column(row_mapper: Optional[RowMapper], column: str) -> str:
    """Name a source column takes in the target after row mapping."""
    mapper = row_mapper or standard_value_mapper
    return next(iter(mapper({column: None})))


def _optimize(store, table: str):
    # Maintenance only; never affects the sync result
    try:
        store.optimize(table)
    except Exception as e:
        logger.warning(f"Optimize of {table} failed: {e}")


def copy_table(
    source: SourceConnector,
    store,
    bookmark: Optional[Bookmark] = None,
    *,
    source_table: str,
    target_table: Optional[str] = None,
    pk: Optional[str] = None,
    schema: Optional[str] = None,
    page_size: Optional[int] = None,
    row_mapper: Optional[RowMapper] = None,
    optimize: bool = False,
    sink: Optional[Sink] = None,
) -> SyncResult:
    """
    Copy a forward-only table: every row with a primary key above bookmark.row_id,
    in primary key order. Without a bookmark the whole table is copied.

    Args:
        source: Source connector
        store: Target store with insert(table, rows) and optimize(table)
        bookmark: Bookmark from the previous run
        source_table: Table to read
        target_table: Table to write (defaults to source_table)
        pk: Primary key column (reflected when omitted)
        schema: Source schema/database
        page_size: Rows per source page
        row_mapper: Row transform (standard mapper when omitted)
        optimize: Compact the target table after a successful sync
        sink: Load into this sink instead of store.insert(target_table, ...)

    Returns:
        SyncResult
    """
    table = source.reflect_table(source_table, schema)
    pk = pk or source.primary_key(table)
    pk_column = table.c[pk]
    target_table = target_table or source_table

    def get_rows(bookmark: Bookmark, limit: int):
        query = select(table)
        if bookmark.row_id is not None:
            query = query.where(pk_column > bookmark.row_id)
        return source.stream(query.order_by(pk_column.asc()).limit(limit))

    def get_bookmark(row) -> Bookmark:
        return Bookmark(row_id=row[pk])

    result = synchronize_table(
        TableSyncSpec(
            get_rows=get_rows,
            get_bookmark=get_bookmark,
            sink=sink or StoreSink(store, target_table),
            page_size=page_size,
            row_mapper=row_mapper,
        ),
        bookmark,
    )
    if optimize and sink is None:
        _optimize(store, target_table)
    return result


def sync_table(
    source: SourceConnector,
    store,
    bookmark: Optional[Bookmark] = None,
    *,
    source_table: str,
    target_table: Optional[str] = None,
    pk: Optional[str] = None,
    schema: Optional[str] = None,
    delay_seconds: int = DEFAULT_DELAY_SECONDS,
    tracking_column: str = "updated_at",
    page_size: Optional[int] = None,
    row_mapper: Optional[RowMapper] = None,
    optimize: bool = False,
    sink: Optional[Sink] = None,
) -> SyncResult:
    """
    Sync a table whose rows are updated in place, ordered by (tracking_column, pk).

    Rows touched within the last `delay_seconds` (source clock) are left for
    the next run: a transaction still open at extraction time can commit with
    a timestamp older than rows already synced, so the delay must exceed any
    reasonable transaction duration. One minute is plenty for most workloads.

    `page_size` must be larger than the biggest group of rows sharing one
    tracking timestamp (a bulk UPDATE stamps every row it touches with the
    same value). Paging cannot move past such a group, so the sync fails
    with ExtractionError naming the table and tracking column until the page
    size is raised.

    The bookmark comparison is inclusive on the timestamp, so rows sharing the
    bookmark's timestamp are delivered again on every run, and an updated row
    is delivered again after every change. Without a custom sink the rows are
    merged into the target by primary key, so each key is stored once.

    Args:
        delay_seconds: Settle time before a change is eligible
        tracking_column: Last-modified timestamp column

    See copy_table for the remaining arguments.

    Returns:
        SyncResult
    """
    table = source.reflect_table(source_table, schema)
    pk = pk or source.primary_key(table)
    pk_column = table.c[pk]
    ts_column = table.c[tracking_column]
    target_table = target_table or source_table

    def get_rows(bookmark: Bookmark, limit: int):
        cutoff = source.current_timestamp() - timedelta(seconds=delay_seconds)
        query = select(table).where(ts_column < cutoff)
        if bookmark.row_timestamp is not None and bookmark.row_id is not None:
            query = query.where(or_(
                ts_column >= bookmark.row_timestamp,
                and_(ts_column == bookmark.row_timestamp, pk_column > bookmark.row_id),
            ))
        elif bookmark.row_timestamp is not None:
            query = query.where(ts_column >= bookmark.row_timestamp)
        query = query.order_by(ts_column.asc(), pk_column.asc()).limit(limit)
        return source.stream(query)

    def get_bookmark(row) -> Bookmark:
        return Bookmark(row_id=row[pk], row_timestamp=row[tracking_column])

    result = synchronize_table(
        TableSyncSpec(
            get_rows=get_rows,
            get_bookmark=get_bookmark,
            sink=sink or StoreSink(store, target_table, key=_target_column(row_mapper, pk)),
            page_size=page_size,
            row_mapper=row_mapper,
            ordering=tracking_column,
        ),
        bookmark,
    )
    if optimize and sink is None:
        _optimize(store, target_table)
    return result


def _log_to_logger(table: str, bookmark: Optional[Bookmark] = None, error: Optional[Exception] = None):
    if error is not None:
        logger.error(f"  ✗ {table}: {error}")
    else:
        logger.info(f"  ✓ {table}: {bookmark.last_count} rows, bookmark {bookmark.to_dict()}")


class SyncSession:
    """
    Runs table syncs against one source and target, accumulating bookmarks.

    Usage:
        session = SyncSession(source, store, previous_results)
        session.run([
            {"table": "address_types", "mode": "forward_only"},
            {"table": "individuals", "mode": "updated_at", "delay_seconds": 60},
        ])
        save(session.results)  # feed back as `bookmarks` next time
    """

    def __init__(
        self,
        source: SourceConnector,
        store,
        bookmarks: Optional[Dict[str, Any]] = None,
        log: Optional[Callable[..., None]] = None,
        max_workers: int = 4,
    ):
        """
        Args:
            source: Source connector
            store: Target store
            bookmarks: Previous results, table -> Bookmark or its dict form
            log: Callback invoked as log(table, bookmark=..., error=...) per table
            max_workers: Tables synced concurrently by run()
        """
        self.source = source
        self.store = store
        self.bookmarks: Dict[str, Bookmark] = {
            table: value if isinstance(value, Bookmark) else Bookmark.from_dict(value)
            for table, value in (bookmarks or {}).items()
        }
        self.results: Dict[str, Bookmark] = dict(self.bookmarks)
        self.log = log or _log_to_logger
        self.max_workers = max_workers
        self._lock = threading.Lock()

    def forward_only(self, table: str, **options) -> Dict[str, Any]:
        """Sync a forward-only table; options are passed to copy_table."""
        return self._sync(table, copy_table, options)

    def with_updated_at(self, table: str, **options) -> Dict[str, Any]:
        """Sync an updated-at table; options are passed to sync_table."""
        return self._sync(table, sync_table, options)

    def _sync(self, table: str, strategy: Callable[..., SyncResult], options: Dict) -> Dict[str, Any]:
        prior = self.bookmarks.get(table, Bookmark())
        try:
            result = strategy(self.source, self.store, prior, source_table=table, **options)
        except Exception as e:
            self.log(table, error=e)
            raise

        bookmark = result.bookmark.with_count(result.rows)
        with self._lock:
            self.results[table] = bookmark
        self.log(table, bookmark=bookmark)
        return {"table": table, "bookmark": bookmark}

    def run(self, tables: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """
        Sync several tables concurrently. A failing table does not stop the others.

        Args:
            tables: Dicts with "table", "mode" ("forward_only" or "updated_at")
                and any strategy options

        Returns:
            One result dict per table, in input order, with status and
            either bookmark or error
        """
        context = current_context()

        def run_one(config: Dict[str, Any]) -> Dict[str, Any]:
            options = dict(config)
            table = options.pop("table")
            mode = options.pop("mode", "forward_only")
            with log_context(**{**context, "table": table}):
                if mode == "updated_at":
                    outcome = self.with_updated_at(table, **options)
                elif mode == "forward_only":
                    outcome = self.forward_only(table, **options)
                else:
                    raise ValueError(f"Unknown sync mode for {table}: {mode}")
            return {**outcome, "status": "success"}

        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            futures = [executor.submit(run_one, config) for config in tables]

        results = []
        for config, future in zip(tables, futures):
            error = future.exception()
            if error is None:
                results.append(future.result())
            else:
                results.append({"table": config["table"], "status": "failed", "error": str(error)})
        return results
