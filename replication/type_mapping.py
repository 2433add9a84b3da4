"""
Row Mappers
===========

Pure transforms from a source row to a row the target store accepts.
"""

from datetime import date, datetime, time, timezone
from typing import Any, Callable, Dict

SourceRow = Dict[str, Any]
RowMapper = Callable[[SourceRow], SourceRow]


def format_timestamp(value: datetime) -> str:
    """
    Render a datetime as a target timestamp literal.

    Aware values are converted to UTC and the zone suffix is dropped,
    e.g. 2024-01-01 00:00:00.000
    """
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.isoformat(sep=" ", timespec="milliseconds")


def standard_value_mapper(row: SourceRow) -> SourceRow:
    """Default mapper: normalize temporal values to literal text, pass the rest through."""
    mapped = {}
    for key, value in row.items():
        if isinstance(value, datetime):
            value = format_timestamp(value)
        elif isinstance(value, (date, time)):
            value = value.isoformat()
        mapped[key] = value
    return mapped


def rename_columns(mapping: Dict[str, str], base: RowMapper = standard_value_mapper) -> RowMapper:
    """
    Build a mapper that applies `base` and then renames columns.

    Columns not in the mapping keep their source name.
    """

    def mapper(row: SourceRow) -> SourceRow:
        return {mapping.get(key, key): value for key, value in base(row).items()}

    return mapper
