# tests/test_engine.py
import json

import pytest

from replication.bookmark import Bookmark
from replication.engine import ReplicationEngine
from replication.stream_copy import CustomSink


def make_engine(tmp_path, rules, **settings):
    task_settings = {
        "source": {"connection": {}},
        "target": {"connection": {"schema": "replica"}},
        "task_settings": {"checkpoint_path": str(tmp_path / "bookmarks.json"), "max_workers": 2, **settings},
    }
    return ReplicationEngine(task_settings=task_settings, table_mappings={"rules": rules})


def selection(table, **sync_config):
    return {
        "rule-type": "selection",
        "rule-id": table,
        "rule-name": table,
        "rule-action": "explicit",
        "object-locator": {"schema-name": None, "table-name": table},
        "sync-config": sync_config,
    }


PREFIX = {"rule-type": "transformation", "rule-action": "add-prefix", "rule-target": "table", "value": "raw_"}
RENAME = {
    "rule-type": "transformation",
    "rule-action": "rename-column",
    "object-locator": {"table-name": "individuals", "column-name": "firstname"},
    "value": "first_name",
}


@pytest.fixture
def engine(tmp_path, source, fake_store):
    engine = make_engine(tmp_path, [
        selection("address_types", mode="forward_only", pk="address_type_id"),
        selection("individuals", mode="updated_at", pk="individual_id", delay_seconds=0),
        PREFIX,
        RENAME,
    ])
    engine.source_connector = source
    engine.target_store = fake_store
    return engine


def test_packaged_configs_load():
    engine = ReplicationEngine()
    assert [t["table"] for t in engine.get_tables_to_sync()] == ["address_types", "individuals", "leads"]
    assert engine.get_table_prefix() == "raw_"
    assert engine.get_column_renames("individuals") == {"firstname": "first_name"}


def test_build_sync_config_for_updated_at_table(engine):
    config = engine.build_sync_config(engine.get_tables_to_sync()[1])

    assert config["table"] == "individuals"
    assert config["mode"] == "updated_at"
    assert config["target_table"] == "raw_individuals"
    assert config["pk"] == "individual_id"
    assert config["tracking_column"] == "updated_at"
    assert config["delay_seconds"] == 0
    assert config["row_mapper"]({"firstname": "Ada"}) == {"first_name": "Ada"}
    assert config["optimize"] is False


def test_build_sync_config_defaults(tmp_path):
    engine = make_engine(tmp_path, [selection("leads", mode="updated_at")], delay_seconds=120, page_size=500)
    config = engine.build_sync_config(engine.get_tables_to_sync()[0])

    assert config["target_table"] == "leads"
    assert config["delay_seconds"] == 120
    assert config["page_size"] == 500
    assert "row_mapper" not in config


def test_landing_zone_sink_requires_configuration(tmp_path):
    engine = make_engine(tmp_path, [selection("leads", sink="landing_zone")])
    with pytest.raises(ValueError, match="landing zone"):
        engine.build_sync_config(engine.get_tables_to_sync()[0])


def test_landing_zone_sink(tmp_path):
    engine = make_engine(tmp_path, [selection("leads", sink="landing_zone", file_format="parquet"), PREFIX])
    engine.landing_zone = object()

    config = engine.build_sync_config(engine.get_tables_to_sync()[0])

    assert isinstance(config["sink"], CustomSink)
    assert config["sink"].name == "raw_leads"
    assert "optimize" not in config


def test_checkpoint_round_trip(engine, t0):
    assert engine.load_checkpoint() == {}

    bookmarks = {"individuals": Bookmark(row_id=3, row_timestamp=t0, last_count=3)}
    engine.save_checkpoint(bookmarks)

    assert engine.load_checkpoint() == bookmarks


def test_run_sync_moves_rows_and_saves_bookmarks(engine, fake_store, tmp_path):
    results = engine.run_sync()

    assert [(r["table"], r["status"], r["bookmark"].last_count) for r in results] == [
        ("address_types", "success", 2),
        ("individuals", "success", 3),
    ]
    assert len(fake_store.tables["raw_address_types"]) == 2
    assert fake_store.tables["raw_individuals"][0]["first_name"] == "Ada"

    saved = json.loads((tmp_path / "bookmarks.json").read_text())
    assert saved["address_types"] == {"rowId": 2, "lastCount": 2}
    assert saved["individuals"]["rowId"] == 3


def test_second_run_resumes_from_checkpoint(engine, fake_store):
    engine.run_sync()
    results = engine.run_sync(only_tables=["address_types"])

    assert [(r["table"], r["bookmark"].last_count) for r in results] == [("address_types", 0)]
    assert len(fake_store.tables["raw_address_types"]) == 2
    assert set(engine.load_checkpoint()) == {"address_types", "individuals"}


def test_run_sync_reports_failed_tables(tmp_path, source, fake_store):
    engine = make_engine(tmp_path, [
        selection("address_types"),
        selection("leads", sink="landing_zone"),
        selection("missing_table"),
    ])
    engine.source_connector = source
    engine.target_store = fake_store

    results = engine.run_sync()

    assert [(r["table"], r["status"]) for r in results] == [
        ("leads", "failed"),
        ("address_types", "success"),
        ("missing_table", "failed"),
    ]
    assert set(engine.load_checkpoint()) == {"address_types"}


def test_run_migrations_uses_configured_directory(tmp_path, fake_store):
    (tmp_path / "0001_init.sql").write_text("CREATE TABLE t (x integer);")
    engine = make_engine(tmp_path, [], migrations_path=str(tmp_path))
    engine.target_store = fake_store

    assert engine.run_migrations() == ["0001_init.sql"]
    assert fake_store.schemas == ["replica"]
