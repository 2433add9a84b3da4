"""
Bookmark
========

Replication progress for one table. A bookmark is only ever derived from a
row that was actually read; an empty bookmark means "start from the beginning".
"""

from dataclasses import dataclass, replace
from datetime import date, datetime
from typing import Any, Dict, Optional, Union

PrimaryKey = Union[str, int]


@dataclass(frozen=True)
class Bookmark:
    """
    Immutable replication cursor.

    Attributes:
        row_id: Primary key of the last row seen
        row_timestamp: Tracking timestamp of the last row seen
        last_count: Rows moved by the run that produced this bookmark
    """

    row_id: Optional[PrimaryKey] = None
    row_timestamp: Optional[datetime] = None
    last_count: Optional[int] = None

    @property
    def is_empty(self) -> bool:
        return self.row_id is None and self.row_timestamp is None

    def with_count(self, count: int) -> "Bookmark":
        """Return a copy carrying the row count of the run that produced it."""
        return replace(self, last_count=count)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to a JSON-friendly dict, omitting unset fields."""
        data: Dict[str, Any] = {}
        if self.row_id is not None:
            data["rowId"] = self.row_id
        if self.row_timestamp is not None:
            data["rowTimestamp"] = _format_timestamp(self.row_timestamp)
        if self.last_count is not None:
            data["lastCount"] = self.last_count
        return data

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "Bookmark":
        """Inverse of to_dict. None or {} gives an empty bookmark."""
        if not data:
            return cls()
        timestamp = data.get("rowTimestamp")
        if isinstance(timestamp, str):
            timestamp = datetime.fromisoformat(timestamp)
        return cls(
            row_id=data.get("rowId"),
            row_timestamp=timestamp,
            last_count=data.get("lastCount"),
        )


def _format_timestamp(value: Any) -> str:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)
