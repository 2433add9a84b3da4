"""
Replication Engine
==================

Incremental replication from a row-oriented source database into a
columnar analytical store.

- Forward-only tables: copy rows past the last seen primary key
- Updated-at tables: re-copy rows whose tracking timestamp moved

Delivery is at-least-once. Boundary rows may be re-delivered and are
absorbed by the target store's overwrite semantics.
"""

from .bookmark import Bookmark
from .batch import batch_fetch
from .stream_copy import CustomSink, StoreSink, SyncResult, TableSyncSpec, synchronize_table
from .strategies import SyncSession, copy_table, sync_table

__version__ = "1.0.0"
__all__ = [
    "Bookmark",
    "batch_fetch",
    "CustomSink",
    "StoreSink",
    "SyncResult",
    "TableSyncSpec",
    "synchronize_table",
    "SyncSession",
    "copy_table",
    "sync_table",
]
