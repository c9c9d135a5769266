"""JSON:API query parameter parsing for the module routes.

Supported parameters::

    fields[Accounts]=name,industry
    filter[name][like]=Acme%&filter[employees][gte]=10&filter[operator]=or
    filter[description][contains]=renewal
    sort=-date_entered,name
    page[size]=20&page[number]=2
    deleted=1
"""

from __future__ import annotations

import re
from typing import Any, Iterable

from app.errors import InvalidArgument
from app.pagination import ALL_RECORDS
from app.record_service import ListQuery

_BRACKET_RE = re.compile(r"^(fields|filter|page)\[([^\]]+)\](?:\[([^\]]+)\])?$")
FILTER_OPS = {"eq", "neq", "gt", "gte", "lt", "lte", "like", "contains", "in"}
TEXT_OPS = {"like", "contains"}
_TRUE_VALUES = {"1", "true", "yes"}
_FALSE_VALUES = {"0", "false", "no", ""}


def _split_csv(raw: str) -> list[str]:
    return [part.strip() for part in raw.split(",") if part.strip()]


def _coerce(field: dict | None, raw: str, path: str) -> Any:
    ftype = (field or {}).get("type")
    if ftype == "number":
        try:
            return int(raw)
        except ValueError:
            pass
        try:
            return float(raw)
        except ValueError:
            raise InvalidArgument(f"{path} must be a number", code="FILTER_VALUE_INVALID", path=path) from None
    if ftype in ("boolean", "bool"):
        lowered = raw.strip().lower()
        if lowered in _TRUE_VALUES:
            return True
        if lowered in _FALSE_VALUES:
            return False
        raise InvalidArgument(f"{path} must be a boolean", code="FILTER_VALUE_INVALID", path=path)
    return raw


def parse_fields(items: Iterable[tuple[str, str]], module: str, object_name: str | None = None) -> tuple[str, ...] | None:
    names = {module, object_name} - {None}
    for key, value in items:
        match = _BRACKET_RE.match(key)
        if not match or match.group(1) != "fields" or match.group(3):
            continue
        if match.group(2) not in names:
            raise InvalidArgument(
                f"fields[{match.group(2)}] does not match module {module}",
                code="FIELDS_MODULE_MISMATCH",
                path=key,
            )
        return tuple(_split_csv(value)) or None
    return None


def parse_filter(items: Iterable[tuple[str, str]], field_defs: dict) -> dict | None:
    conditions: list[dict] = []
    group = "and"
    for key, value in items:
        match = _BRACKET_RE.match(key)
        if not match or match.group(1) != "filter":
            continue
        field_id, op = match.group(2), match.group(3)
        if field_id == "operator" and op is None:
            group = value.strip().lower()
            if group not in ("and", "or"):
                raise InvalidArgument("filter[operator] must be 'and' or 'or'", code="FILTER_OPERATOR_INVALID", path=key)
            continue
        op = (op or "eq").lower()
        if op not in FILTER_OPS:
            raise InvalidArgument(f"Unsupported filter operator: {op}", code="FILTER_OPERATOR_INVALID", path=key)
        field = field_defs.get(field_id)
        if op == "in":
            cond_value: Any = [_coerce(field, part, key) for part in _split_csv(value)]
        elif op in TEXT_OPS:
            cond_value = value
        else:
            cond_value = _coerce(field, value, key)
        conditions.append({"op": op, "field": field_id, "value": cond_value})
    if not conditions:
        return None
    if len(conditions) == 1:
        return conditions[0]
    return {"op": group, "conditions": conditions}


def parse_sort(raw: str | None) -> tuple[tuple[str, bool], ...]:
    if not raw:
        return ()
    keys = []
    for part in _split_csv(raw):
        descending = part.startswith("-")
        field_id = part.lstrip("-+").strip()
        if not field_id:
            raise InvalidArgument("sort key is empty", code="SORT_INVALID", path="sort")
        keys.append((field_id, descending))
    return tuple(keys)


def _page_int(key: str, raw: str) -> int:
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise InvalidArgument(f"{key} must be an integer", code="PAGE_INVALID", path=key) from None


def parse_page(items: Iterable[tuple[str, str]]) -> tuple[int, int]:
    """Return ``(size, number)``; an absent size means every record."""
    size = ALL_RECORDS
    number = 1
    for key, value in items:
        if key == "page[size]":
            size = _page_int(key, value)
            if size <= 0:
                raise InvalidArgument("page[size] must be greater than 0", code="PAGE_INVALID", path=key)
        elif key == "page[number]":
            number = _page_int(key, value)
            if number < 0:
                raise InvalidArgument("page[number] must not be negative", code="PAGE_INVALID", path=key)
    return size, number


def parse_deleted(raw: str | None) -> bool:
    if raw is None:
        return False
    lowered = raw.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise InvalidArgument("deleted must be a boolean flag", code="DELETED_INVALID", path="deleted")


def parse_list_query(items: list[tuple[str, str]], registry, module: str) -> ListQuery:
    sort_raw = None
    deleted_raw = None
    for key, value in items:
        if key == "sort":
            sort_raw = value
        elif key == "deleted":
            deleted_raw = value
    size, number = parse_page(items)
    return ListQuery(
        module=module,
        condition=parse_filter(items, registry.field_defs(module)),
        sort=parse_sort(sort_raw),
        fields=parse_fields(items, module, registry.object_name(module)),
        page_size=size,
        page_number=number,
        include_deleted=parse_deleted(deleted_raw),
    )
