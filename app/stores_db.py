"""DB-backed record store (Postgres, JSONB rows)."""

from __future__ import annotations

import copy
import json
import logging
import uuid
from typing import Any

from app.db import execute, fetch_all, fetch_one, get_conn
from app.errors import InvalidArgument, NotFound, StorageFailure
from app.stores import Record, _now, apply_audit_stamps

logger = logging.getLogger("records.db")

SCHEMA_SQL = """
create table if not exists records (
    module text not null,
    id text not null,
    data jsonb not null default '{}'::jsonb,
    deleted boolean not null default false,
    created_at timestamptz not null default now(),
    updated_at timestamptz not null default now(),
    primary key (module, id)
);
create index if not exists records_module_deleted_idx on records (module, deleted);
"""


def _json_dumps(value: object) -> str:
    return json.dumps(value, default=str)


def _ensure_json(value):
    if isinstance(value, str):
        return json.loads(value)
    return value


def _is_safe_field_id(value: str) -> bool:
    if not value or not isinstance(value, str):
        return False
    for ch in value:
        if not (ch.isalnum() or ch in "._-"):
            return False
    return True


def _require_field_id(field_id: Any) -> str:
    if not _is_safe_field_id(field_id):
        raise InvalidArgument(f"Invalid field name: {field_id!r}", path="filter")
    return field_id


def condition_to_sql(condition: dict | None) -> tuple[str, list]:
    """Translate a condition tree into a SQL predicate over ``records``."""
    if not condition:
        return "true", []
    op = condition.get("op")
    if op in ("and", "or"):
        parts = []
        params: list = []
        for item in condition.get("conditions") or []:
            sql, item_params = condition_to_sql(item)
            parts.append(f"({sql})")
            params.extend(item_params)
        if not parts:
            return ("true" if op == "and" else "false"), []
        return f" {op} ".join(parts), params

    field_id = _require_field_id(condition.get("field"))
    value = condition.get("value")
    if field_id == "id":
        column, column_params, text_column = "to_jsonb(id)", [], "id"
    elif field_id == "deleted":
        column, column_params, text_column = "to_jsonb(deleted)", [], "deleted::text"
    else:
        column, column_params, text_column = "(data -> %s)", [field_id], "(data ->> %s)"
    text_params = [] if field_id in ("id", "deleted") else [field_id]

    if op == "eq":
        return f"{column} = %s::jsonb", column_params + [_json_dumps(value)]
    if op == "neq":
        return f"{column} is distinct from %s::jsonb", column_params + [_json_dumps(value)]
    if op in ("gt", "gte", "lt", "lte"):
        symbol = {"gt": ">", "gte": ">=", "lt": "<", "lte": "<="}[op]
        return f"{column} {symbol} %s::jsonb", column_params + [_json_dumps(value)]
    if op == "in":
        values = value if isinstance(value, list) else [value]
        return f"{column} in (select jsonb_array_elements(%s::jsonb))", column_params + [_json_dumps(values)]
    if op == "like":
        return f"{text_column} ilike %s", text_params + [str(value)]
    if op == "contains":
        return f"strpos({text_column}, %s) > 0", text_params + [str(value)]
    raise InvalidArgument(f"Unsupported filter operator: {op}", path="filter")


def order_by_sql(sort: list[tuple[str, bool]] | None) -> tuple[str, list]:
    """ORDER BY clause for list sort keys; nulls sort lowest in either direction."""
    parts = []
    params: list = []
    for field_id, descending in sort or []:
        direction = "desc" if descending else "asc"
        if field_id == "id":
            parts.append(f"id {direction}")
        else:
            nulls = "last" if descending else "first"
            parts.append(f"data -> %s {direction} nulls {nulls}")
            params.append(_require_field_id(field_id))
    parts.append("created_at asc, id asc")
    return ", ".join(parts), params


def _record_from_row(module: str, row: dict) -> Record:
    data = copy.deepcopy(_ensure_json(row.get("data")) or {})
    data.pop("id", None)
    data.pop("deleted", None)
    return Record(module=module, id=str(row.get("id")), fields=data, deleted=bool(row.get("deleted")))


class DbRecordStore:
    def ensure_schema(self) -> None:
        with get_conn() as conn:
            execute(conn, SCHEMA_SQL, query_name="records.ensure_schema")

    def instantiate(self, module: str) -> Record:
        return Record(module=module)

    def load(self, module: str, record_id: str) -> Record | None:
        with get_conn() as conn:
            row = fetch_one(
                conn,
                "select id, data, deleted from records where module=%s and id=%s",
                [module, record_id],
                query_name="records.get",
            )
        return _record_from_row(module, row) if row else None

    def load_or_fail(self, module: str, record_id: str) -> Record:
        record = self.load(module, record_id)
        if record is None:
            raise NotFound(f"{module} record with id {record_id} not found", path="id")
        return record

    def exists(self, module: str, record_id: str) -> bool:
        with get_conn() as conn:
            row = fetch_one(
                conn,
                "select 1 as ok from records where module=%s and id=%s and not deleted",
                [module, record_id],
                query_name="records.exists",
            )
        return row is not None

    def _where(self, module: str, condition: dict | None, include_deleted: bool) -> tuple[str, list]:
        predicate, params = condition_to_sql(condition)
        where = "where module=%s"
        if not include_deleted:
            where += " and not deleted"
        where += f" and ({predicate})"
        return where, [module] + params

    def count(self, module: str, condition: dict | None = None, include_deleted: bool = False) -> int:
        where, params = self._where(module, condition, include_deleted)
        with get_conn() as conn:
            row = fetch_one(conn, f"select count(*) as total from records {where}", params, query_name="records.count")
        return int(row.get("total") or 0) if row else 0

    def list(
        self,
        module: str,
        condition: dict | None = None,
        sort: list[tuple[str, bool]] | None = None,
        offset: int = 0,
        limit: int = 50,
        include_deleted: bool = False,
        fields: list[str] | None = None,
    ) -> list[Record]:
        safe_fields = [f for f in (fields or []) if _is_safe_field_id(f)]
        select_params: list = []
        if safe_fields:
            parts = []
            for field_id in safe_fields:
                parts.append("%s, data -> %s")
                select_params.extend([field_id, field_id])
            data_expr = f"jsonb_build_object({', '.join(parts)}) as data"
        else:
            data_expr = "data"
        where, where_params = self._where(module, condition, include_deleted)
        order_sql, order_params = order_by_sql(sort)
        params = select_params + where_params + order_params + [limit, offset]
        with get_conn() as conn:
            rows = fetch_all(
                conn,
                f"""
                select id, {data_expr}, deleted
                from records
                {where}
                order by {order_sql}
                limit %s offset %s
                """,
                params,
                query_name="records.list",
            )
        return [_record_from_row(module, row) for row in rows]

    def persist(self, record: Record, actor_id: str | None = None) -> Record:
        is_insert = record.is_new() or not self.load(record.module, record.id)
        if record.id is None:
            record.id = str(uuid.uuid4())
        apply_audit_stamps(record, actor_id, is_insert)
        payload = _json_dumps(record.fields)
        try:
            with get_conn() as conn:
                if is_insert:
                    execute(
                        conn,
                        """
                        insert into records (module, id, data, deleted)
                        values (%s, %s, %s::jsonb, %s)
                        on conflict (module, id) do update
                        set data=excluded.data, deleted=excluded.deleted, updated_at=now()
                        """,
                        [record.module, record.id, payload, record.deleted],
                        query_name="records.insert",
                    )
                else:
                    execute(
                        conn,
                        """
                        update records
                        set data = data || %s::jsonb, deleted=%s, updated_at=now()
                        where module=%s and id=%s
                        """,
                        [payload, record.deleted, record.module, record.id],
                        query_name="records.update",
                    )
        except Exception as exc:
            logger.error("record_persist_failed module=%s id=%s error=%s", record.module, record.id, exc)
            raise StorageFailure(f"Could not save {record.module} record {record.id}") from exc
        record.new_with_id = False
        return record

    def soft_delete(self, record: Record, actor_id: str | None = None) -> None:
        stamps = {"modified_user_id": actor_id, "date_modified": _now()}
        with get_conn() as conn:
            updated = execute(
                conn,
                """
                update records
                set deleted=true, data = data || %s::jsonb, updated_at=now()
                where module=%s and id=%s
                """,
                [_json_dumps(stamps), record.module, record.id],
                query_name="records.soft_delete",
            )
        if not updated:
            raise NotFound(f"{record.module} record with id {record.id} not found", path="id")
        record.deleted = True
