# tests/conftest.py
from datetime import datetime

import pytest
from sqlalchemy import Column, DateTime, Integer, MetaData, String, Table, create_engine

from replication.connectors.source_connector import SourceConnector

T0 = datetime(2024, 1, 1, 0, 0, 0)


class FakeStore:
    """In-memory target store: insert/command/query/optimize/create_schema."""

    def __init__(self, fail_on=None, fail_insert=None, fail_optimize=False):
        self.tables = {}
        self.keys = {}
        self.commands = []
        self.optimized = []
        self.schemas = []
        self.fail_on = fail_on
        self.fail_insert = fail_insert
        self.fail_optimize = fail_optimize

    def insert(self, table, rows, key=None):
        if self.fail_insert == table:
            raise RuntimeError(f"insert into {table} refused")
        stored = self.tables.setdefault(table, [])
        written = 0
        for row in rows:
            if key is not None:
                stored[:] = [r for r in stored if r[key] != row[key]]
            stored.append(row)
            written += 1
        self.keys[table] = key
        return {"table": table, "rows_written": written}

    def command(self, statement, settings=None):
        if self.fail_on and self.fail_on in statement:
            raise RuntimeError(f"syntax error near {self.fail_on}")
        self.commands.append((statement, settings or {}))

    def query(self, statement, params=None):
        if "FROM _migrations" in statement:
            return sorted(self.tables.get("_migrations", []), key=lambda r: r["version"])
        return []

    def optimize(self, table):
        if self.fail_optimize:
            raise RuntimeError("optimize not supported")
        self.optimized.append(table)

    def create_schema(self, schema):
        self.schemas.append(schema)


@pytest.fixture
def fake_store():
    return FakeStore()


@pytest.fixture
def source_engine(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'source.db'}")
    metadata = MetaData()

    address_types = Table(
        "address_types", metadata,
        Column("address_type_id", Integer, primary_key=True, autoincrement=False),
        Column("name", String(50)),
        Column("created_at", DateTime),
    )
    individuals = Table(
        "individuals", metadata,
        Column("individual_id", Integer, primary_key=True, autoincrement=False),
        Column("firstname", String(50)),
        Column("favorite_color", String(20)),
        Column("created_at", DateTime),
        Column("updated_at", DateTime),
    )
    metadata.create_all(engine)

    with engine.begin() as conn:
        conn.execute(address_types.insert(), [
            {"address_type_id": 1, "name": "home", "created_at": T0},
            {"address_type_id": 2, "name": "work", "created_at": T0},
        ])
        conn.execute(individuals.insert(), [
            {"individual_id": i, "firstname": name, "favorite_color": "blue", "created_at": T0, "updated_at": T0}
            for i, name in [(1, "Ada"), (2, "Grace"), (3, "Linus")]
        ])

    yield engine
    engine.dispose()


@pytest.fixture
def source(source_engine):
    return SourceConnector.from_engine(source_engine)


@pytest.fixture
def make_store():
    return FakeStore


@pytest.fixture
def t0():
    return T0
