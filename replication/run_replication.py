#!/usr/bin/env python3
"""
Replication Runner
==================

CLI script to run the replication engine.

Usage:
    python -m replication.run_replication migrate   # Apply pending target migrations
    python -m replication.run_replication sync      # Sync all configured tables
    python -m replication.run_replication test      # Test connections only
"""

import argparse
import json
import os
import sys

from .engine import ReplicationEngine


def test_connections(engine: ReplicationEngine, use_docker: bool = False) -> bool:
    """Test source and target connections."""
    print("=" * 60)
    print("TESTING CONNECTIONS")
    print("=" * 60)

    try:
        engine.connect(use_docker_hosts=use_docker)

        print("\n✓ Source:")
        for table_config in engine.get_tables_to_sync():
            count = engine.source_connector.get_row_count(table_config["table"], table_config.get("schema"))
            print(f"    - {table_config['table']}: {count:,} rows")

        print("\n✓ Trino Target:")
        applied = engine.target_store.query("SELECT count(*) AS applied FROM _migrations")
        print(f"    Applied migrations: {applied[0]['applied'] if applied else 0}")

        engine.disconnect()
        print("\n✓ All connections successful!")
        return True

    except Exception as e:
        print(f"\n✗ Connection failed: {e}")
        return False


def run_migrations(engine: ReplicationEngine, use_docker: bool = False) -> bool:
    """Apply pending migrations to the target."""
    print("=" * 60)
    print("TARGET MIGRATIONS")
    print("=" * 60)

    try:
        engine.connect(use_docker_hosts=use_docker)
        applied = engine.run_migrations()
        engine.disconnect()
    except Exception as e:
        print(f"\n✗ Migrations failed: {e}")
        return False

    if applied:
        for filename in applied:
            print(f"✓ {filename}")
    else:
        print("Nothing to apply")
    return True


def run_sync(engine: ReplicationEngine, use_docker: bool = False, tables=None) -> bool:
    """Execute incremental replication."""
    print("=" * 60)
    print("INCREMENTAL REPLICATION")
    print("=" * 60)

    try:
        engine.connect(use_docker_hosts=use_docker)
        results = engine.run_sync(only_tables=tables)
        engine.disconnect()
    except Exception as e:
        print(f"\n✗ Replication failed: {e}")
        return False

    print("\n" + "=" * 60)
    print("RESULTS SUMMARY")
    print("=" * 60)
    for result in results:
        status_icon = "✓" if result["status"] == "success" else "✗"
        print(f"\n{status_icon} {result['table']}")
        print(f"    Status: {result['status']}")
        if result.get("bookmark") is not None:
            print(f"    Rows moved: {result['bookmark'].last_count:,}")
            print(f"    Bookmark: {result['bookmark'].to_dict()}")
        if result.get("error"):
            print(f"    Error: {result['error']}")

    results_path = "logs/sync_results.json"
    os.makedirs("logs", exist_ok=True)
    with open(results_path, "w") as f:
        serializable = [
            {**r, "bookmark": r["bookmark"].to_dict()} if r.get("bookmark") is not None else r
            for r in results
        ]
        json.dump(serializable, f, indent=2, default=str)
    print(f"\nResults saved to: {results_path}")

    return all(r["status"] == "success" for r in results)


def main():
    parser = argparse.ArgumentParser(description="Incremental replication into the analytical store")
    parser.add_argument(
        "command",
        choices=["test", "migrate", "sync"],
        help="Command to run"
    )
    parser.add_argument("--config", help="Path to config directory")
    parser.add_argument("--docker", action="store_true", help="Use Docker internal hostnames")
    parser.add_argument("--tables", nargs="+", help="Only sync these tables")

    args = parser.parse_args()

    engine = ReplicationEngine(config_path=args.config)
    engine.setup_logging()

    if args.command == "test":
        success = test_connections(engine, use_docker=args.docker)
    elif args.command == "migrate":
        success = run_migrations(engine, use_docker=args.docker)
    else:
        success = run_sync(engine, use_docker=args.docker, tables=args.tables)

    sys.exit(0 if success else 1)


if __name__ == "__main__":
    main()
