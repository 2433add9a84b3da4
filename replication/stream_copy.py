"""
Stream Copy
===========

Core synchronizer: pulls pages from the source, maps each row and pushes it
into a bounded row stream that a loader thread drains concurrently into the
target. Extraction and load overlap, so only about one page of rows is ever
resident.
"""

import logging
import queue
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, Optional, Union

from observability import current_context, log_context

from .batch import RowFetchFunction, batch_fetch
from .bookmark import Bookmark
from .errors import ExtractionError, LoadError, StreamAborted
from .type_mapping import RowMapper, SourceRow, standard_value_mapper

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 10000


class _LoaderStopped(Exception):
    """The loader thread exited while the producer still had rows."""


class RowStream:
    """
    Bounded single-producer, single-consumer row channel.

    The producer calls push/close/abort; the loader iterates. push blocks
    while the buffer is full and gives up as soon as the loader is gone.
    """

    _END = object()
    _ABORT = object()

    def __init__(self, maxsize: int = 0, poll_interval: float = 0.1):
        self._queue: queue.Queue = queue.Queue(maxsize=maxsize)
        self._poll_interval = poll_interval
        self._consumer_done = threading.Event()
        self.finished = False

    def push(self, row: SourceRow):
        if not self._put(row):
            raise _LoaderStopped()

    def close(self):
        """Signal end of stream."""
        self._put(self._END)

    def abort(self):
        """Signal that the producer failed; the loader's iteration raises StreamAborted."""
        self._put(self._ABORT)

    def mark_consumer_done(self):
        self._consumer_done.set()

    def _put(self, item) -> bool:
        while not self._consumer_done.is_set():
            try:
                self._queue.put(item, timeout=self._poll_interval)
                return True
            except queue.Full:
                continue
        return False

    def __iter__(self) -> Iterator[SourceRow]:
        while True:
            item = self._queue.get()
            if item is self._END:
                self.finished = True
                return
            if item is self._ABORT:
                raise StreamAborted("Row producer failed; stream aborted")
            yield item


@dataclass(frozen=True)
class CustomSink:
    """Caller-supplied loader: insert(stream) consumes the whole RowStream."""

    insert: Callable[[RowStream], Any]
    name: str = "custom"

    def load(self, stream: RowStream) -> Any:
        return self.insert(stream)


@dataclass(frozen=True)
class StoreSink:
    """
    Bulk load into a table of a target store exposing insert(table, rows, key=None).

    With a key the store overwrites rows by that column instead of appending.
    """

    store: Any
    table_name: str
    key: Optional[str] = None

    @property
    def name(self) -> str:
        return self.table_name

    def load(self, stream: RowStream) -> Any:
        if self.key is None:
            return self.store.insert(self.table_name, stream)
        return self.store.insert(self.table_name, stream, key=self.key)


Sink = Union[CustomSink, StoreSink]


@dataclass
class TableSyncSpec:
    """
    Everything synchronize_table needs for one table.

    get_rows must return at most `limit` rows in a stable order consistent
    with get_bookmark. Returning exactly `limit` rows means "there may be more".
    `ordering` names the column whose ties can stall paging, for error messages.
    """

    get_rows: RowFetchFunction
    get_bookmark: Callable[[SourceRow], Bookmark]
    sink: Sink
    page_size: Optional[int] = None
    row_mapper: Optional[RowMapper] = None
    ordering: Optional[str] = None


@dataclass(frozen=True)
class SyncResult:
    rows: int
    bookmark: Bookmark
    load_result: Any = None


class _Loader(threading.Thread):
    def __init__(self, sink: Sink, stream: RowStream, context: Optional[Dict[str, Any]] = None):
        super().__init__(name=f"loader-{sink.name}", daemon=True)
        self.sink = sink
        self.stream = stream
        self.result: Any = None
        self.error: Optional[Exception] = None
        self.context = context or {}

    def run(self):
        try:
            with log_context(**self.context):
                self.result = self.sink.load(self.stream)
        except Exception as e:
            self.error = e
        finally:
            self.stream.mark_consumer_done()


def synchronize_table(spec: TableSyncSpec, bookmark: Optional[Bookmark] = None) -> SyncResult:
    """
    Move every row after `bookmark` from the source into the sink.

    Args:
        spec: Table sync specification
        bookmark: Position reached by the previous run (empty = from the beginning)

    Returns:
        SyncResult with the number of rows moved and the new bookmark. When no
        rows moved the input bookmark is returned unchanged.

    Raises:
        ExtractionError: reading or mapping source rows failed
        LoadError: the sink failed or stopped before draining the stream
    """
    bookmark = bookmark or Bookmark()
    page_size = spec.page_size or DEFAULT_PAGE_SIZE
    mapper = spec.row_mapper or standard_value_mapper
    name = spec.sink.name

    batcher = batch_fetch(spec.get_rows, spec.get_bookmark, name=name, ordering=spec.ordering)
    stream = RowStream(maxsize=page_size)
    loader = _Loader(spec.sink, stream, current_context())
    loader.start()

    logger.info(f"Syncing {name} from bookmark {bookmark.to_dict() or 'beginning'} (page size {page_size})")

    rows_synced = 0
    last_row: Optional[SourceRow] = None
    try:
        for row in batcher(bookmark, page_size):
            last_row = row
            stream.push(mapper(row))
            rows_synced += 1
    except _LoaderStopped:
        pass
    except Exception as e:
        stream.abort()
        loader.join()
        logger.error(f"Extraction failed for {name} after {rows_synced} rows: {e}")
        raise ExtractionError(str(e), table=name) from e
    else:
        stream.close()

    loader.join()

    if loader.error is not None:
        logger.error(f"Load failed for {name} after {rows_synced} rows pushed: {loader.error}")
        raise LoadError(str(loader.error), table=name) from loader.error
    if not stream.finished:
        raise LoadError(f"Loader for {name} returned before consuming the whole row stream", table=name)

    new_bookmark = spec.get_bookmark(last_row) if last_row is not None else bookmark
    logger.info(f"Synced {rows_synced} rows into {name}")
    return SyncResult(rows=rows_synced, bookmark=new_bookmark, load_result=loader.result)
