"""
Target Schema Migrations
========================

Applies versioned SQL files to the analytical store. Applied versions are
recorded with an MD5 checksum in the `_migrations` table; an applied file
must never be edited or deleted afterwards.

File naming: <version>_<name>.sql, e.g. 0003_add_individuals.sql
"""

import hashlib
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from .errors import MigrationApplyError, MigrationError, MigrationIntegrityError
from .sql_queries import sql_queries, sql_sets
from .type_mapping import format_timestamp

logger = logging.getLogger(__name__)

MIGRATIONS_TABLE = "_migrations"


class MigrationState(Enum):
    PENDING = "pending"
    APPLYING = "applying"
    APPLIED = "applied"
    FAILED = "failed"


@dataclass(frozen=True)
class Migration:
    version: int
    filename: str
    commands: str

    @property
    def checksum(self) -> str:
        return checksum(self.commands)


@dataclass(frozen=True)
class CompletedMigration:
    version: int
    checksum: str
    migration_name: str
    applied_at: Optional[datetime] = None


def checksum(commands: str) -> str:
    """MD5 hex digest of a migration's text."""
    return hashlib.md5(commands.encode("utf-8")).hexdigest()


def create_database(store, database: str):
    """Create the target schema if it does not exist."""
    store.create_schema(database)
    logger.info(f"Schema ready: {database}")


def initialize_migration_table(store):
    """Create the append-only migration history table if it does not exist."""
    store.command(
        f"CREATE TABLE IF NOT EXISTS {MIGRATIONS_TABLE} ("
        "version integer, "
        "checksum varchar, "
        "migration_name varchar, "
        "applied_at timestamp(3))"
    )


def get_migrations_in_directory(directory: str) -> List[Migration]:
    """
    Discover migration files, sorted by version. Non-.sql files are ignored.

    Raises:
        MigrationError: a file has no numeric prefix or two files share a version
    """
    migrations: Dict[int, Migration] = {}

    for filename in os.listdir(directory):
        if not filename.endswith(".sql"):
            continue

        prefix = filename.split("_", 1)[0]
        if not prefix.isdigit():
            raise MigrationError(f"Migration file {filename} does not start with a numeric version")
        version = int(prefix)

        if version in migrations:
            raise MigrationError(
                f"Migration version {version} is used by both {migrations[version].filename} and {filename}"
            )

        with open(os.path.join(directory, filename), "r", encoding="utf-8") as f:
            migrations[version] = Migration(version=version, filename=filename, commands=f.read())

    return [migrations[version] for version in sorted(migrations)]


def get_completed_migrations(store) -> Dict[int, CompletedMigration]:
    rows = store.query(
        f"SELECT version, checksum, migration_name, applied_at FROM {MIGRATIONS_TABLE} ORDER BY version"
    )
    return {
        int(row["version"]): CompletedMigration(
            version=int(row["version"]),
            checksum=row["checksum"],
            migration_name=row["migration_name"],
            applied_at=row.get("applied_at"),
        )
        for row in rows
    }


def get_migrations_to_apply(store, migrations: List[Migration]) -> List[Migration]:
    """
    Check the recorded history against the files and return what is pending.

    Args:
        store: Target store
        migrations: Discovered migrations

    Returns:
        Migrations without a history record, in ascending version order

    Raises:
        MigrationIntegrityError: an applied migration vanished or was changed
    """
    completed = get_completed_migrations(store)
    by_version = {m.version: m for m in migrations}

    for version, record in completed.items():
        if version not in by_version:
            raise MigrationIntegrityError(
                f"Migration {version} ({record.migration_name}) has been applied but no longer exists"
            )

    pending = []
    for migration in sorted(migrations, key=lambda m: m.version):
        record = completed.get(migration.version)
        if record is None:
            pending.append(migration)
            continue
        if record.checksum != migration.checksum:
            raise MigrationIntegrityError(
                f"A migration file must not be changed after it was applied. "
                f"Please restore the content of {record.migration_name}."
            )

    return pending


class MigrationRunner:
    """
    Applies pending migrations one at a time, tracking each version's state.

    Not safe to run concurrently against the same store: no lock is taken.
    """

    def __init__(self, store, directory: str):
        self.store = store
        self.directory = directory
        self.states: Dict[int, MigrationState] = {}

    def discover(self) -> List[Migration]:
        return get_migrations_in_directory(self.directory)

    def plan_pending(self, migrations: Optional[List[Migration]] = None) -> List[Migration]:
        migrations = self.discover() if migrations is None else migrations
        pending = get_migrations_to_apply(self.store, migrations)
        for migration in pending:
            self.states[migration.version] = MigrationState.PENDING
        return pending

    def apply(self, pending: List[Migration]) -> List[str]:
        """
        Run each migration's statements in order and record it.

        A failing statement stops the whole run. Statements of that migration
        that already ran will run again on retry, so migrations must be safe
        to re-run from their first statement.

        Returns:
            Filenames applied

        Raises:
            MigrationApplyError
        """
        applied = []
        for migration in pending:
            self.states[migration.version] = MigrationState.APPLYING
            logger.info(f"Applying migration {migration.filename}")

            queries = sql_queries(migration.commands)
            settings = sql_sets(migration.commands)

            for i, query in enumerate(queries, 1):
                logger.info(f"  Statement {i}/{len(queries)}")
                try:
                    self.store.command(query, settings=settings)
                except Exception as e:
                    self.states[migration.version] = MigrationState.FAILED
                    logger.error(f"  ✗ {migration.filename} failed at statement {i}: {e}")
                    raise MigrationApplyError(
                        f"The migration {migration.filename} has an error. Please fix it (be sure that "
                        f"already executed parts of the migration can safely run a second time) and re-run "
                        f"the migrations.\n{e}",
                        filename=migration.filename,
                    ) from e

            try:
                self.store.insert(MIGRATIONS_TABLE, [{
                    "version": migration.version,
                    "checksum": migration.checksum,
                    "migration_name": migration.filename,
                    "applied_at": format_timestamp(datetime.now(timezone.utc)),
                }])
            except Exception as e:
                self.states[migration.version] = MigrationState.FAILED
                raise MigrationApplyError(
                    f"Can't record migration {migration.filename} in {MIGRATIONS_TABLE}: {e}",
                    filename=migration.filename,
                ) from e

            self.states[migration.version] = MigrationState.APPLIED
            applied.append(migration.filename)
            logger.info(f"  ✓ Applied {migration.filename}")

        return applied

    def run(self, database: Optional[str] = None) -> List[str]:
        """Prepare the store, then apply everything pending."""
        if database:
            create_database(self.store, database)
        initialize_migration_table(self.store)
        pending = self.plan_pending()
        logger.info(f"Migrations pending: {len(pending)}")
        return self.apply(pending)


def apply_migrations(store, migrations: List[Migration]) -> List[str]:
    """Apply the given pending migrations in order."""
    return MigrationRunner(store, directory="").apply(migrations)


def apply_migrations_in_directory(store, directory: str, database: Optional[str] = None) -> List[str]:
    """
    Full migration run for a directory.

    Returns:
        Filenames applied by this run
    """
    return MigrationRunner(store, directory).run(database)
