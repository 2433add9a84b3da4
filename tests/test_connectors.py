# tests/test_connectors.py
from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pandas as pd
import pytest
from sqlalchemy import Column, Integer, MetaData, Table, select, update

from replication.bookmark import Bookmark
from replication.connectors.minio_connector import MinIOConnector, MinIOSink
from replication.connectors.source_connector import SourceConnector
from replication.connectors.trino_connector import TrinoStore
from replication.strategies import sync_table


class FakeCursor:
    def __init__(self, log, results):
        self.log = log
        self.results = results
        self.description = None
        self._rows = []

    def execute(self, statement, params=None):
        self.log.append((statement, params))
        for marker, (description, rows) in self.results.items():
            if marker in statement:
                self.description = description
                self._rows = rows
                return
        self.description = None
        self._rows = []

    def fetchall(self):
        return self._rows

    def close(self):
        pass


class FakeConnection:
    def __init__(self, results=None):
        self.executed = []
        self.results = results or {}

    def cursor(self):
        return FakeCursor(self.executed, self.results)

    def close(self):
        pass


COLUMNS = (
    [("column_name",), ("data_type",)],
    [("individual_id", "bigint"), ("first_name", "varchar"), ("updated_at", "timestamp(3)")],
)


@pytest.fixture
def trino():
    connection = FakeConnection({"information_schema.columns": COLUMNS})
    return TrinoStore({"host": "trino", "schema": "propwise", "insert_batch_size": 2}, connection=connection)


def test_insert_casts_values_to_target_types(trino):
    result = trino.insert("raw_individuals", iter([
        {"individual_id": 1, "first_name": "Ada", "updated_at": "2024-01-01 00:00:00.000"},
    ]))

    statement, params = trino.connection.executed[-1]
    assert statement == (
        "INSERT INTO raw_individuals (individual_id, first_name, updated_at) "
        "VALUES (CAST(? AS bigint), CAST(? AS varchar), CAST(? AS timestamp(3)))"
    )
    assert params == [1, "Ada", "2024-01-01 00:00:00.000"]
    assert result == {"table": "raw_individuals", "rows_written": 1, "batches": 1}


def test_insert_chunks_by_batch_size(trino):
    rows = [{"individual_id": i, "first_name": f"n{i}"} for i in range(5)]

    result = trino.insert("raw_individuals", rows)

    inserts = [s for s, _ in trino.connection.executed if s.startswith("INSERT")]
    assert [s.count("(CAST") for s in inserts] == [2, 2, 1]
    assert result["rows_written"] == 5
    assert result["batches"] == 3


def test_insert_of_empty_stream_writes_nothing(trino):
    assert trino.insert("raw_individuals", [])["rows_written"] == 0
    assert not any(s.startswith("INSERT") for s, _ in trino.connection.executed)


def test_column_types_are_cached(trino):
    trino.insert("raw_individuals", [{"individual_id": 1}])
    trino.insert("raw_individuals", [{"individual_id": 2}])

    lookups = [p for s, p in trino.connection.executed if "information_schema" in s]
    assert lookups == [["propwise", "raw_individuals"]]


def test_invalid_identifiers_are_rejected(trino):
    with pytest.raises(ValueError):
        trino.insert("raw_individuals; DROP TABLE x", [{"individual_id": 1}])


def test_command_applies_session_settings_first(trino):
    trino.command("CREATE TABLE t (x integer)", settings={"query_max_run_time": "30m", "optimize_hash_generation": True})

    assert [s for s, _ in trino.connection.executed] == [
        "SET SESSION query_max_run_time = '30m'",
        "SET SESSION optimize_hash_generation = true",
        "CREATE TABLE t (x integer)",
    ]


def test_query_returns_dict_rows(trino):
    rows = trino.query("SELECT column_name, data_type FROM information_schema.columns")
    assert rows[0] == {"column_name": "individual_id", "data_type": "bigint"}


def test_optimize_and_create_schema(trino):
    trino.optimize("raw_individuals")
    trino.create_schema("propwise")

    assert [s for s, _ in trino.connection.executed] == [
        "ALTER TABLE raw_individuals EXECUTE optimize",
        "CREATE SCHEMA IF NOT EXISTS iceberg.propwise",
    ]


@pytest.fixture
def minio():
    client = MagicMock()
    return MinIOConnector({"bucket": "raw-data"}, client=client)


def test_write_dataframe_csv(minio):
    path = minio.write_dataframe(pd.DataFrame([{"a": 1}, {"a": 2}]), "propwise/raw_leads", part=3)

    kwargs = minio.client.put_object.call_args.kwargs
    assert kwargs["bucket_name"] == "raw-data"
    assert kwargs["object_name"].startswith("propwise/raw_leads/data_")
    assert kwargs["object_name"].endswith("_00003.csv")
    assert kwargs["content_type"] == "text/csv"
    assert kwargs["data"].read().decode("utf-8").splitlines() == ["a", "1", "2"]
    assert path == f"s3://raw-data/{kwargs['object_name']}"


def test_write_dataframe_rejects_unknown_format(minio):
    with pytest.raises(ValueError, match="Unsupported"):
        minio.write_dataframe(pd.DataFrame([{"a": 1}]), "p", file_format="avro")


def test_sink_writes_one_object_per_chunk(minio):
    sink = MinIOSink(minio, "propwise/raw_leads/sync", file_format="parquet", chunk_size=2)
    rows = ({"lead_id": i, "updated_at": datetime(2024, 1, 1)} for i in range(5))

    result = sink(rows)

    assert result["rows_written"] == 5
    assert len(result["objects"]) == 3
    assert all(o.endswith(".parquet") for o in result["objects"])
    assert minio.client.put_object.call_count == 3


def test_sink_with_no_rows_writes_nothing(minio):
    result = MinIOSink(minio, "p")([])
    assert result == {"path": "p", "rows_written": 0, "objects": []}
    minio.client.put_object.assert_not_called()


def test_list_objects(minio):
    minio.client.list_objects.return_value = [MagicMock(object_name="a.csv"), MagicMock(object_name="b.csv")]
    assert minio.list_objects("propwise/") == ["a.csv", "b.csv"]
    minio.client.list_objects.assert_called_once_with("raw-data", prefix="propwise/", recursive=True)


def test_source_lists_and_counts_tables(source):
    assert sorted(source.get_tables()) == ["address_types", "individuals"]
    assert source.get_row_count("individuals") == 3


def test_source_reflection_is_cached(source):
    table = source.reflect_table("individuals")
    assert source.reflect_table("individuals") is table
    assert source.primary_key(table) == "individual_id"


def test_source_requires_single_primary_key(source_engine):
    Table(
        "links", MetaData(),
        Column("a", Integer, primary_key=True),
        Column("b", Integer, primary_key=True),
    ).create(source_engine)
    source = SourceConnector.from_engine(source_engine)

    with pytest.raises(ValueError, match="exactly one primary key"):
        source.primary_key(source.reflect_table("links"))


def test_source_clock_and_stream(source, t0):
    assert source.current_timestamp() > t0

    table = source.reflect_table("address_types")
    rows = list(source.stream(select(table).order_by(table.c.address_type_id)))
    assert rows == [
        {"address_type_id": 1, "name": "home", "created_at": t0},
        {"address_type_id": 2, "name": "work", "created_at": t0},
    ]


def test_source_url_from_parts():
    connector = SourceConnector({"host": "mysql-source", "port": 3306, "database": "propwise_source", "username": "u"})
    assert connector._connection_url().render_as_string() == "mysql+pymysql://u@mysql-source:3306/propwise_source"


def test_keyed_insert_merges_by_key(trino):
    trino.insert("raw_individuals", [
        {"individual_id": 1, "first_name": "Ada", "updated_at": "2024-01-01 00:00:00.000"},
        {"individual_id": 2, "first_name": "Grace", "updated_at": "2024-01-01 00:00:00.000"},
    ], key="individual_id")

    statement, params = trino.connection.executed[-1]
    assert statement == (
        "MERGE INTO raw_individuals t "
        "USING (VALUES (CAST(? AS bigint), CAST(? AS varchar), CAST(? AS timestamp(3))), "
        "(CAST(? AS bigint), CAST(? AS varchar), CAST(? AS timestamp(3)))) "
        "AS s (individual_id, first_name, updated_at) "
        "ON t.individual_id = s.individual_id "
        "WHEN MATCHED THEN UPDATE SET first_name = s.first_name, updated_at = s.updated_at "
        "WHEN NOT MATCHED THEN INSERT (individual_id, first_name, updated_at) "
        "VALUES (s.individual_id, s.first_name, s.updated_at)"
    )
    assert params == [1, "Ada", "2024-01-01 00:00:00.000", 2, "Grace", "2024-01-01 00:00:00.000"]


def test_keyed_insert_keeps_last_delivery_of_a_key_within_a_chunk(trino):
    result = trino.insert("raw_individuals", [
        {"individual_id": 1, "first_name": "Ada"},
        {"individual_id": 1, "first_name": "Ada L."},
    ], key="individual_id")

    _, params = trino.connection.executed[-1]
    assert params == [1, "Ada L."]
    assert result["rows_written"] == 1


def test_keyed_insert_requires_key_column(trino):
    with pytest.raises(ValueError, match="no key column"):
        trino.insert("raw_individuals", [{"first_name": "Ada"}], key="individual_id")


def test_repeated_updated_at_sync_is_merged_not_appended(source, source_engine, t0):
    store = TrinoStore({"host": "trino", "schema": "propwise"}, connection=FakeConnection({"information_schema": COLUMNS}))
    options = {"source_table": "individuals", "target_table": "raw_individuals", "delay_seconds": 0}

    first = sync_table(source, store, Bookmark(), **options)
    individuals = source.reflect_table("individuals")
    with source_engine.begin() as conn:
        conn.execute(update(individuals).where(individuals.c.individual_id == 1).values(updated_at=t0 + timedelta(seconds=1)))
    sync_table(source, store, first.bookmark, **options)

    loads = [s for s, _ in store.connection.executed if s.startswith(("INSERT", "MERGE"))]
    assert len(loads) == 2
    assert all(s.startswith("MERGE INTO raw_individuals t ") for s in loads)
    assert all("ON t.individual_id = s.individual_id" in s for s in loads)
