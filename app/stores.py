"""In-memory record store used by default and by the test-suite.

Store contract shared with ``app.stores_db.DbRecordStore``:

- ``load(module, record_id)`` returns a ``Record`` (soft-deleted included) or None
- ``load_or_fail(module, record_id)`` raises ``NotFound`` instead of returning None
- ``exists(module, record_id)`` is true for non-deleted records only
- ``instantiate(module)`` returns an unsaved, permission-checkable shell
- ``count`` / ``list`` take a condition dict (see ``app.conditions``)
- ``persist(record, actor_id)`` / ``soft_delete(record, actor_id)``
"""

from __future__ import annotations

import copy
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List

from app.conditions import eval_condition
from app.errors import NotFound


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass
class Record:
    module: str
    id: str | None = None
    fields: Dict[str, Any] = field(default_factory=dict)
    deleted: bool = False
    new_with_id: bool = False
    set_created_by: bool = True
    update_modified_by: bool = True
    update_date_entered: bool = False
    update_date_modified: bool = True

    def get(self, field_id: str, default: Any = None) -> Any:
        if field_id == "id":
            return self.id
        if field_id == "deleted":
            return self.deleted
        return self.fields.get(field_id, default)

    def set(self, field_id: str, value: Any) -> None:
        self.fields[field_id] = value

    def is_new(self) -> bool:
        return self.id is None or self.new_with_id

    def values(self) -> dict:
        data = copy.deepcopy(self.fields)
        data["id"] = self.id
        data["deleted"] = self.deleted
        return data


def apply_audit_stamps(record: Record, actor_id: str | None, is_insert: bool) -> None:
    """Stamp provenance fields according to the record's flags."""
    now = _now()
    if is_insert:
        if record.set_created_by:
            record.fields["created_by"] = actor_id
        if not record.update_date_entered or not record.fields.get("date_entered"):
            record.fields["date_entered"] = now
    if record.update_modified_by:
        record.fields["modified_user_id"] = actor_id
    if record.update_date_modified or not record.fields.get("date_modified"):
        record.fields["date_modified"] = now


def sort_key(value: Any) -> tuple:
    # None sorts first; mixed types fall back to their string form
    if value is None:
        return (0, "")
    if isinstance(value, bool):
        return (1, int(value))
    if isinstance(value, (int, float)):
        return (1, value)
    return (2, str(value).lower())


class MemoryRecordStore:
    def __init__(self) -> None:
        self._records: Dict[str, Dict[str, dict]] = {}
        self._lock = threading.Lock()

    def _bucket(self, module: str) -> Dict[str, dict]:
        return self._records.setdefault(module, {})

    def _to_record(self, module: str, row: dict) -> Record:
        data = copy.deepcopy(row)
        record_id = data.pop("id", None)
        deleted = bool(data.pop("deleted", False))
        return Record(module=module, id=record_id, fields=data, deleted=deleted)

    def instantiate(self, module: str) -> Record:
        return Record(module=module)

    def load(self, module: str, record_id: str) -> Record | None:
        with self._lock:
            row = self._bucket(module).get(record_id)
            return self._to_record(module, row) if row else None

    def load_or_fail(self, module: str, record_id: str) -> Record:
        record = self.load(module, record_id)
        if record is None:
            raise NotFound(f"{module} record with id {record_id} not found", path="id")
        return record

    def exists(self, module: str, record_id: str) -> bool:
        with self._lock:
            row = self._bucket(module).get(record_id)
            return bool(row) and not row.get("deleted")

    def _matching(self, module: str, condition: dict | None, include_deleted: bool) -> list[dict]:
        rows = []
        for row in self._bucket(module).values():
            if row.get("deleted") and not include_deleted:
                continue
            if condition and not eval_condition(condition, {"record": row}):
                continue
            rows.append(row)
        return rows

    def count(self, module: str, condition: dict | None = None, include_deleted: bool = False) -> int:
        with self._lock:
            return len(self._matching(module, condition, include_deleted))

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
        with self._lock:
            rows = self._matching(module, condition, include_deleted)
            for field_id, descending in reversed(sort or []):
                rows.sort(key=lambda r: sort_key(r.get(field_id)), reverse=descending)
            page = rows[offset : offset + limit] if limit >= 0 else rows[offset:]
            items: List[Record] = []
            for row in page:
                data = copy.deepcopy(row)
                if isinstance(fields, list) and fields:
                    data = {fid: data.get(fid) for fid in fields if fid in data}
                    data["id"] = row.get("id")
                    data["deleted"] = row.get("deleted", False)
                items.append(self._to_record(module, data))
            return items

    def persist(self, record: Record, actor_id: str | None = None) -> Record:
        with self._lock:
            bucket = self._bucket(record.module)
            is_insert = record.is_new() or record.id not in bucket
            if record.id is None:
                record.id = str(uuid.uuid4())
            apply_audit_stamps(record, actor_id, is_insert)
            if is_insert:
                row = {}
            else:
                row = copy.deepcopy(bucket[record.id])
            row.update(copy.deepcopy(record.fields))
            row["id"] = record.id
            row["deleted"] = record.deleted
            bucket[record.id] = row
            record.new_with_id = False
            return record

    def soft_delete(self, record: Record, actor_id: str | None = None) -> None:
        with self._lock:
            row = self._bucket(record.module).get(record.id)
            if row is None:
                raise NotFound(f"{record.module} record with id {record.id} not found", path="id")
            row["deleted"] = True
            row["modified_user_id"] = actor_id
            row["date_modified"] = _now()
            record.deleted = True
