"""
Replication Errors
==================

Failure taxonomy shared by the sync pipeline and the migration runner.
None of these are retried internally; retry policy belongs to the caller.
"""

from typing import Optional


class ReplicationError(Exception):
    """Base class for all replication failures."""


class ExtractionError(ReplicationError):
    """Reading from the source failed. The bookmark was not advanced."""

    def __init__(self, message: str, table: Optional[str] = None):
        super().__init__(message)
        self.table = table


class LoadError(ReplicationError):
    """
    Bulk insert into the target failed. The bookmark was not advanced.

    Some rows may already have landed; a retry relies on idempotent overwrite.
    """

    def __init__(self, message: str, table: Optional[str] = None):
        super().__init__(message)
        self.table = table


class StreamAborted(ReplicationError):
    """Raised inside a loader when the producer abandoned the row stream."""


class MigrationError(ReplicationError):
    """Base class for migration runner failures."""


class MigrationIntegrityError(MigrationError):
    """An applied migration was deleted or its content changed after apply."""


class MigrationApplyError(MigrationError):
    """A statement of a pending migration failed to execute."""

    def __init__(self, message: str, filename: Optional[str] = None):
        super().__init__(message)
        self.filename = filename
