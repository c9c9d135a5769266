"""Page window math and JSON:API pagination meta/links."""

from __future__ import annotations

import math
from urllib.parse import urlencode

# Page size meaning "every matching record"; never paginated.
ALL_RECORDS = -1


def is_unbounded(size: int) -> bool:
    return size == ALL_RECORDS


def page_offset(number: int, size: int) -> int:
    if is_unbounded(size) or number == 0:
        return 0
    return max((number - 1) * size, 0)


def total_pages(total_rows: int, size: int) -> int:
    if size <= 0:
        raise ValueError("page size must be positive")
    if total_rows <= 0:
        return 0
    return math.ceil(total_rows / size)


def pagination_meta(pages: int, returned: int) -> dict:
    return {"total-pages": pages, "records-on-this-page": returned}


def _page_url(base_url: str, params: list[tuple[str, str]], number: int, size: int) -> str:
    query = list(params) + [("page[number]", str(number)), ("page[size]", str(size))]
    return f"{base_url}?{urlencode(query)}"


def pagination_links(
    base_url: str,
    number: int,
    size: int,
    pages: int,
    params: list[tuple[str, str]] | None = None,
) -> dict:
    """First/prev/self/next/last links; ``params`` are carried over untouched."""
    kept = [(k, v) for k, v in (params or []) if k not in ("page[number]", "page[size]")]
    links = {
        "first": _page_url(base_url, kept, 1, size),
        "self": _page_url(base_url, kept, number, size),
    }
    if number > 1:
        links["prev"] = _page_url(base_url, kept, number - 1, size)
    if number < pages:
        links["next"] = _page_url(base_url, kept, number + 1, size)
    if pages > 0:
        links["last"] = _page_url(base_url, kept, pages, size)
    return links
