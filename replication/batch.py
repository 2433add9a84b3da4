"""
Batch Fetching
==============

Turns a "fetch one page after this bookmark" function into a single lazy
row iterator that keeps paging until the source runs dry.
"""

import logging
from typing import Callable, Iterable, Iterator, List, Optional, TypeVar

from .bookmark import Bookmark

logger = logging.getLogger(__name__)

T = TypeVar("T")

RowFetchFunction = Callable[[Bookmark, int], Iterable[T]]


def batch_fetch(
    get_rows: RowFetchFunction,
    get_bookmark: Callable[[T], Bookmark],
    name: str = "rows",
    ordering: Optional[str] = None,
) -> Callable[[Bookmark, int], Iterator[T]]:
    """
    Wrap a page fetcher into a re-paging row generator.

    get_rows must return rows in an order consistent with get_bookmark:
    the bookmark of the last row of a page is used to request the next page.
    A page shorter than the limit (including an empty one) ends the stream;
    a full page is never assumed to be the last one.

    Each page is read completely before any of its rows are yielded, so a
    source error mid-page emits nothing from that page and at most one page
    is held in memory. A full page ending on the bookmark it was requested
    with raises RuntimeError rather than requesting the same page forever.

    Args:
        get_rows: Function (bookmark, limit) -> iterable of rows
        get_bookmark: Function row -> Bookmark
        name: Table or stream name used in errors and logs
        ordering: Column whose ties can stall paging, named in the stall error

    Returns:
        Generator function (bookmark, limit) -> iterator of rows
    """

    def fetch(bookmark: Bookmark, limit: int) -> Iterator[T]:
        if limit < 1:
            raise ValueError(f"Page size must be at least 1, got {limit}")

        last_row: Optional[T] = None
        pages = 0
        while True:
            page_bookmark = get_bookmark(last_row) if last_row is not None else bookmark
            page: List[T] = list(get_rows(page_bookmark, limit))
            pages += 1
            logger.debug(f"{name} page {pages}: {len(page)} rows (limit {limit})")

            if len(page) >= limit and _position(get_bookmark(page[-1])) == _position(page_bookmark):
                raise RuntimeError(_stall_message(name, ordering, page_bookmark, limit))

            for row in page:
                last_row = row
                yield row

            if len(page) < limit:
                break

    return fetch


def _position(bookmark: Bookmark):
    return bookmark.row_id, bookmark.row_timestamp


def _stall_message(name: str, ordering: Optional[str], bookmark: Bookmark, limit: int) -> str:
    tied = f"one {ordering} value" if ordering else "one bookmark position"
    return (
        f"Paging {name} made no progress past {bookmark.to_dict()}: more than {limit} rows share {tied}. "
        f"Raise page_size above the largest group of rows with the same {ordering or 'position'}"
    )
