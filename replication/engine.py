"""
Replication Engine Core
=======================

Main orchestrator: loads the JSON configuration, connects to the source and
the analytical store, runs schema migrations and table syncs, and persists
bookmarks between runs.
"""

import json
import logging
import os
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from observability import StructuredLogger, configure_logging, log_context

from .bookmark import Bookmark
from .connectors.minio_connector import MinIOConnector, MinIOSink
from .connectors.source_connector import SourceConnector
from .connectors.trino_connector import TrinoStore
from .migrations import apply_migrations_in_directory
from .stream_copy import CustomSink
from .strategies import DEFAULT_DELAY_SECONDS, SyncSession
from .type_mapping import rename_columns

logger = logging.getLogger(__name__)


class ReplicationEngine:
    """
    Incremental replication from a relational source into Trino.

    Supports:
    - Forward-only tables: paged by primary key
    - Updated-at tables: paged by (tracking column, primary key)
    - Versioned schema migrations on the target
    """

    def __init__(
        self,
        config_path: str = None,
        task_settings: Optional[Dict] = None,
        table_mappings: Optional[Dict] = None
    ):
        """
        Initialize the replication engine.

        Args:
            config_path: Path to the configs directory
            task_settings: Settings dict (overrides task_settings.json)
            table_mappings: Mapping rules dict (overrides table_mappings.json)
        """
        self.config_path = config_path or self._get_default_config_path()
        self.task_settings = task_settings or self._load_config("task_settings.json")
        self.table_mappings = table_mappings or self._load_config("table_mappings.json")
        self.settings = self.task_settings.get("task_settings", {})
        self.source_connector: Optional[SourceConnector] = None
        self.target_store: Optional[TrinoStore] = None
        self.landing_zone: Optional[MinIOConnector] = None
        self.run_id = datetime.now().strftime("%Y%m%d_%H%M%S")
        self.events = StructuredLogger(__name__)

    def _get_default_config_path(self) -> str:
        """Get default config path."""
        return str(Path(__file__).parent / "configs")

    def _load_config(self, filename: str) -> Dict:
        """Load a JSON configuration file."""
        path = os.path.join(self.config_path, filename)
        with open(path, 'r') as f:
            return json.load(f)

    def setup_logging(self):
        """Configure logging from task settings."""
        configure_logging(self.settings.get("logging", {}))

    def connect(self, use_docker_hosts: bool = False):
        """
        Establish connections to source and target.

        Args:
            use_docker_hosts: Use Docker internal hostnames (for running inside containers)
        """
        logger.info("Connecting to source and target systems...")

        source_config = self.task_settings["source"]["connection"].copy()
        if use_docker_hosts:
            source_config["host"] = self.task_settings["source"].get("docker_host", source_config.get("host"))
            source_config["port"] = self.task_settings["source"].get("docker_port", source_config.get("port"))

        self.source_connector = SourceConnector(source_config)
        self.source_connector.connect()
        logger.info("✓ Connected to source")

        target_config = self.task_settings["target"]["connection"].copy()
        if use_docker_hosts:
            target_config["host"] = self.task_settings["target"].get("docker_host", target_config["host"])
            target_config["port"] = self.task_settings["target"].get("docker_port", target_config.get("port"))

        self.target_store = TrinoStore(target_config)
        self.target_store.connect()
        logger.info("✓ Connected to Trino target")

        landing_config = self.task_settings["target"].get("landing_zone")
        if landing_config:
            landing_config = landing_config.copy()
            if use_docker_hosts:
                landing_config["endpoint"] = landing_config.get("docker_endpoint", landing_config["endpoint"])
            self.landing_zone = MinIOConnector(landing_config)
            self.landing_zone.connect()
            logger.info("✓ Connected to MinIO landing zone")

    def disconnect(self):
        """Close all connections."""
        if self.source_connector:
            self.source_connector.disconnect()
        if self.target_store:
            self.target_store.close()
        logger.info("Connections closed")

    def get_tables_to_sync(self) -> List[Dict]:
        """
        Get list of tables to sync based on table mappings.

        Returns:
            List of table configurations
        """
        tables = []
        for rule in self.table_mappings.get("rules", []):
            if rule.get("rule-type") == "selection" and rule.get("rule-action") == "explicit":
                tables.append({
                    "rule_id": rule.get("rule-id"),
                    "rule_name": rule.get("rule-name"),
                    "schema": rule["object-locator"].get("schema-name"),
                    "table": rule["object-locator"]["table-name"],
                    "sync_config": rule.get("sync-config", {})
                })
        return tables

    def get_table_prefix(self) -> str:
        """Get the target table prefix from configuration."""
        for rule in self.table_mappings.get("rules", []):
            if (rule.get("rule-type") == "transformation" and
                    rule.get("rule-action") == "add-prefix" and
                    rule.get("rule-target") == "table"):
                return rule.get("value", "")

        return self.settings.get("table_prefix", "")

    def get_column_renames(self, table: str) -> Dict[str, str]:
        """Source column -> target column renames for a table."""
        renames = {}
        for rule in self.table_mappings.get("rules", []):
            if rule.get("rule-type") == "transformation" and rule.get("rule-action") == "rename-column":
                locator = rule.get("object-locator", {})
                if locator.get("table-name") == table:
                    renames[locator["column-name"]] = rule["value"]
        return renames

    def build_sync_config(self, table_config: Dict) -> Dict[str, Any]:
        """
        Translate one selected table into SyncSession options.

        Args:
            table_config: Entry from get_tables_to_sync()

        Returns:
            Dict with table, mode and strategy options
        """
        table = table_config["table"]
        sync_config = table_config.get("sync_config", {})
        mode = sync_config.get("mode", "forward_only")
        target_table = f"{self.get_table_prefix()}{table}"

        options: Dict[str, Any] = {
            "table": table,
            "mode": mode,
            "target_table": target_table,
            "schema": table_config.get("schema"),
            "pk": sync_config.get("pk"),
            "page_size": sync_config.get("page_size", self.settings.get("page_size")),
        }

        renames = self.get_column_renames(table)
        if renames:
            options["row_mapper"] = rename_columns(renames)

        if mode == "updated_at":
            options["tracking_column"] = sync_config.get("tracking_column", "updated_at")
            options["delay_seconds"] = sync_config.get(
                "delay_seconds", self.settings.get("delay_seconds", DEFAULT_DELAY_SECONDS)
            )

        if sync_config.get("sink") == "landing_zone":
            if self.landing_zone is None:
                raise ValueError(f"Table {table} targets the landing zone but none is configured")
            path = f"{table_config.get('schema') or 'default'}/{target_table}/sync/{self.run_id}"
            options["sink"] = CustomSink(
                MinIOSink(self.landing_zone, path, file_format=sync_config.get("file_format", "csv")),
                name=target_table,
            )
        else:
            options["optimize"] = sync_config.get("optimize", self.settings.get("optimize_after_sync", False))

        return options

    def _checkpoint_path(self) -> str:
        return self.settings.get(
            "checkpoint_path", str(Path(__file__).parent / "checkpoints" / "bookmarks.json")
        )

    def load_checkpoint(self) -> Dict[str, Bookmark]:
        """Load bookmarks saved by the previous run."""
        path = self._checkpoint_path()
        if not os.path.exists(path):
            return {}
        with open(path, 'r') as f:
            data = json.load(f)
        logger.info(f"Loaded bookmarks for {len(data)} tables from {path}")
        return {table: Bookmark.from_dict(value) for table, value in data.items()}

    def save_checkpoint(self, bookmarks: Dict[str, Bookmark]):
        """Persist bookmarks for the next run."""
        path = self._checkpoint_path()
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        with open(path, 'w') as f:
            json.dump({table: b.to_dict() for table, b in bookmarks.items()}, f, indent=2)
        logger.info(f"Bookmarks saved to {path}")

    def _log_table(self, table: str, bookmark: Optional[Bookmark] = None, error: Optional[Exception] = None):
        extra = {"run_id": self.run_id, "table": table}
        if error is not None:
            logger.error(f"  ✗ Sync failed for {table}: {error}", extra=extra)
        else:
            logger.info(
                f"  ✓ Synced {table}: {bookmark.last_count} rows",
                extra={**extra, "rows": bookmark.last_count, "bookmark": bookmark.to_dict()}
            )

    def run_sync(self, only_tables: Optional[List[str]] = None) -> List[Dict]:
        """
        Sync all configured tables (or a subset) and save the new bookmarks.

        Args:
            only_tables: Restrict the run to these table names

        Returns:
            List of result dictionaries
        """
        logger.info("=" * 60)
        logger.info("STARTING REPLICATION")
        logger.info(f"Run ID: {self.run_id}")
        logger.info("=" * 60)

        tables = self.get_tables_to_sync()
        if only_tables:
            tables = [t for t in tables if t["table"] in only_tables]
        logger.info(f"Tables to sync: {len(tables)}")

        with log_context(run_id=self.run_id):
            results = self._sync_tables(tables)

        return results

    def _sync_tables(self, tables: List[Dict]) -> List[Dict]:
        start = time.time()
        self.events.log_run_start("replication", self.run_id, len(tables))

        session = SyncSession(
            self.source_connector,
            self.target_store,
            bookmarks=self.load_checkpoint(),
            log=self._log_table,
            max_workers=self.settings.get("max_workers", 4),
        )

        configs = []
        results = []
        for table_config in tables:
            try:
                configs.append(self.build_sync_config(table_config))
            except ValueError as e:
                logger.error(f"  ✗ {table_config['table']}: {e}")
                results.append({"table": table_config["table"], "status": "failed", "error": str(e)})

        results.extend(session.run(configs))
        self.save_checkpoint(session.results)

        success = sum(1 for r in results if r["status"] == "success")
        failed = sum(1 for r in results if r["status"] == "failed")
        total_rows = sum(r["bookmark"].last_count for r in results if r["status"] == "success")

        logger.info("=" * 60)
        logger.info("REPLICATION COMPLETE")
        logger.info(f"  Tables: {success} success, {failed} failed")
        logger.info(f"  Total rows: {total_rows}")
        logger.info("=" * 60)
        self.events.log_run_end(
            "replication",
            self.run_id,
            "success" if failed == 0 else "failed",
            round(time.time() - start, 2),
            rows_processed=total_rows
        )

        return results

    def run_migrations(self) -> List[str]:
        """
        Apply pending target schema migrations.

        Returns:
            Filenames applied
        """
        directory = self.settings.get("migrations_path", str(Path(__file__).parent / "sql"))
        logger.info(f"Applying migrations from {directory}")
        applied = apply_migrations_in_directory(
            self.target_store,
            directory,
            database=self.task_settings["target"]["connection"].get("schema")
        )
        logger.info(f"Applied {len(applied)} migrations")
        return applied
