# tests/test_bookmark.py
from datetime import datetime

import pytest

from replication.bookmark import Bookmark
from replication.type_mapping import format_timestamp, rename_columns, standard_value_mapper


def test_empty_bookmark():
    assert Bookmark().is_empty
    assert Bookmark.from_dict(None) == Bookmark()
    assert Bookmark.from_dict({}) == Bookmark()
    assert Bookmark().to_dict() == {}


def test_count_does_not_make_a_bookmark_non_empty():
    assert Bookmark(last_count=0).is_empty
    assert not Bookmark(row_id="abc").is_empty


def test_dict_form_round_trips():
    bookmark = Bookmark(row_id=42, row_timestamp=datetime(2024, 3, 1, 12, 30, 0, 250000), last_count=7)

    data = bookmark.to_dict()

    assert data == {"rowId": 42, "rowTimestamp": "2024-03-01T12:30:00.250000", "lastCount": 7}
    assert Bookmark.from_dict(data) == bookmark


def test_with_count_returns_new_bookmark():
    bookmark = Bookmark(row_id=1)
    counted = bookmark.with_count(5)

    assert counted == Bookmark(row_id=1, last_count=5)
    assert bookmark.last_count is None


def test_bookmark_is_immutable():
    with pytest.raises(AttributeError):
        Bookmark().row_id = 1


@pytest.mark.parametrize("value, expected", [
    (datetime(2024, 1, 1), "2024-01-01 00:00:00.000"),
    (datetime(2024, 1, 1, 8, 5, 3, 123456), "2024-01-01 08:05:03.123"),
    (datetime.fromisoformat("2024-01-01T02:00:00+02:00"), "2024-01-01 00:00:00.000"),
])
def test_format_timestamp(value, expected):
    assert format_timestamp(value) == expected


def test_standard_mapper_leaves_non_temporal_values():
    row = {"id": 1, "name": "Ada", "score": 1.5, "missing": None, "day": datetime(2024, 1, 1).date()}
    assert standard_value_mapper(row) == {"id": 1, "name": "Ada", "score": 1.5, "missing": None, "day": "2024-01-01"}


def test_rename_columns_keeps_unmapped_names():
    mapper = rename_columns({"firstname": "first_name"})
    assert mapper({"id": 1, "firstname": "Ada"}) == {"id": 1, "first_name": "Ada"}
