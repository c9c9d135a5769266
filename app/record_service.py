"""Record service: get/list/create/update/delete over a record store.

Attachment writes happen after the primary record is persisted and are not
rolled back together with it: a create/update that fails in the attachment
step leaves the primary record saved and reports the attachment error.
"""

from __future__ import annotations

import base64
import binascii
import logging
from dataclasses import dataclass

from app.attachments import UploadStorage
from app.conditions import condition_fields
from app.config import ServiceConfig
from app.errors import AccessDenied, InvalidArgument, NotFound, StorageFailure
from app.pagination import ALL_RECORDS, is_unbounded, page_offset, pagination_links, pagination_meta, total_pages
from app.policy import PolicyEvaluator, actor_id
from app.projection import AttributeProjector, RelationshipProjector, data_object
from app.records_validation import (
    FILE_CONTENTS_KEY,
    FILE_NAME_KEY,
    validate_attributes,
    validate_required,
    validate_upload_filename,
)
from app.stores import Record


@dataclass(frozen=True)
class ListQuery:
    module: str
    condition: dict | None = None
    sort: tuple[tuple[str, bool], ...] = ()
    fields: tuple[str, ...] | None = None
    page_size: int = ALL_RECORDS
    page_number: int = 1
    include_deleted: bool = False


def set_record_update_params(record: Record, attributes: dict) -> None:
    """Derive provenance flags from which keys the caller sent."""
    record.set_created_by = not ("created_by" in attributes or "created_by_name" in attributes)
    record.update_modified_by = not ("modified_user_id" in attributes or "modified_by_name" in attributes)
    record.update_date_entered = "date_entered" in attributes
    record.update_date_modified = "date_modified" not in attributes


class RecordService:
    def __init__(
        self,
        registry,
        store,
        policy: PolicyEvaluator,
        config: ServiceConfig,
        storage: UploadStorage | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._registry = registry
        self._store = store
        self._policy = policy
        self._config = config
        self._storage = storage or UploadStorage(config.upload_dir)
        self._logger = logger or logging.getLogger("records.service")
        self._attributes = AttributeProjector(registry, policy)
        self._relationships = RelationshipProjector(registry)

    def _require_module(self, module: str) -> None:
        if not self._registry.has(module):
            raise NotFound(f"Module {module} not found", code="MODULE_NOT_FOUND", path="type")

    def data_response(self, record: Record, fields: list[str] | None, path: str | None, actor: dict | None) -> dict:
        return data_object(
            self._registry,
            record,
            self._attributes.attributes(record, fields, actor),
            self._relationships.relationships(record, path),
        )

    def get_record(
        self,
        module: str,
        record_id: str,
        fields: list[str] | None = None,
        path: str | None = None,
        actor: dict | None = None,
    ) -> dict:
        self._require_module(module)
        record = self._store.load_or_fail(module, record_id)
        if not self._policy.can_access(record, "view", actor):
            raise AccessDenied(f"Not allowed to view {module} record {record_id}")
        return {"data": self.data_response(record, fields, path, actor)}

    def _check_query_fields(self, query: ListQuery, actor: dict | None, owned_only: bool) -> None:
        declared = self._registry.field_defs(query.module)
        for field_id in condition_fields(query.condition):
            if field_id not in declared:
                raise InvalidArgument(f"Unknown filter field: {field_id}", code="FILTER_FIELD_UNKNOWN", path="filter")
            if not self._policy.can_query_field(query.module, field_id, actor, owned_only):
                raise AccessDenied(f"Not allowed to filter on {field_id}", code="FILTER_FIELD_FORBIDDEN", path="filter")
        for field_id, _ in query.sort:
            if field_id not in declared:
                raise InvalidArgument(f"Unknown sort field: {field_id}", code="SORT_FIELD_UNKNOWN", path="sort")
            if not self._policy.can_query_field(query.module, field_id, actor, owned_only):
                raise AccessDenied(f"Not allowed to sort on {field_id}", code="SORT_FIELD_FORBIDDEN", path="sort")

    def list_records(
        self,
        query: ListQuery,
        path: str = "",
        base_url: str | None = None,
        params: list[tuple[str, str]] | None = None,
        actor: dict | None = None,
    ) -> dict:
        module = query.module
        self._require_module(module)
        shell = self._store.instantiate(module)
        if not self._policy.can_access(shell, "view", actor):
            raise AccessDenied(f"Not allowed to list {module} records")
        scope = self._policy.list_scope(module, actor)
        self._check_query_fields(query, actor, owned_only=scope is not None)
        condition = query.condition
        if scope is not None:
            condition = {"op": "and", "conditions": [condition, scope]} if condition else scope

        size = query.page_size
        number = query.page_number
        offset = page_offset(number, size)
        unbounded = is_unbounded(size)
        limit = self._config.list_max_limit if unbounded else size
        fields = list(query.fields) if query.fields else self._registry.default_fields(module)

        total = self._store.count(module, condition, query.include_deleted)
        rows = self._store.list(
            module,
            condition=condition,
            sort=list(query.sort),
            offset=offset,
            limit=limit,
            include_deleted=query.include_deleted,
            fields=self._policy.readable_fields(shell, module, fields, actor),
        )

        data = []
        # One reload per row after the bulk query (N+1 store calls per page).
        for row in rows:
            record = self._store.load_or_fail(module, row.id)
            data.append(self.data_response(record, fields, f"{path}/{record.id}", actor))

        response: dict = {"data": data}
        if data and not unbounded:
            pages = total_pages(total, size)
            response["meta"] = pagination_meta(pages, len(data))
            response["links"] = pagination_links(base_url or path, number, size, pages, params)
        self._logger.info(
            "records_listed module=%s total=%s returned=%s offset=%s limit=%s",
            module,
            total,
            len(data),
            offset,
            limit,
        )
        return response

    def _process_attributes(self, record: Record, attributes: dict, for_create: bool) -> bool:
        field_defs = self._registry.field_defs(record.module)
        errors = validate_attributes(field_defs, attributes)
        if errors:
            raise InvalidArgument(errors[0]["message"], code=errors[0]["code"], path=errors[0]["path"], detail={"errors": errors})

        create_file = False
        for field_id, value in attributes.items():
            if field_id == FILE_CONTENTS_KEY:
                continue
            if field_id == FILE_NAME_KEY:
                create_file = True
                continue
            record.set(field_id, value)

        if for_create:
            errors = validate_required(field_defs, record.fields)
            if errors:
                raise InvalidArgument(errors[0]["message"], code=errors[0]["code"], path=errors[0]["path"], detail={"errors": errors})
        return create_file

    def create_record(
        self,
        module: str,
        record_id: str | None,
        attributes: dict | None,
        path: str = "",
        actor: dict | None = None,
    ) -> dict:
        self._require_module(module)
        attributes = attributes or {}
        if record_id is not None and self._store.exists(module, record_id):
            raise InvalidArgument(
                f"{module} record with id {record_id} already exists",
                code="RECORD_ALREADY_EXISTS",
                path="id",
            )

        record = self._store.instantiate(module)
        if not self._policy.can_access(record, "save", actor):
            raise AccessDenied(f"Not allowed to create {module} records")

        if record_id is not None:
            # Clients may pre-generate ids; the store inserts with the given id.
            record.id = record_id
            record.new_with_id = True

        set_record_update_params(record, attributes)
        file_upload = self._process_attributes(record, attributes, for_create=True)
        self._store.persist(record, actor_id(actor))
        self._logger.info("record_created module=%s id=%s actor=%s", module, record.id, actor_id(actor))

        if file_upload:
            self.add_file_to_note(record.id, attributes, actor)

        record = self._store.load_or_fail(module, record.id)
        return {"data": self.data_response(record, None, f"{path}/{record.id}", actor)}

    def update_record(
        self,
        module: str,
        record_id: str,
        attributes: dict | None,
        path: str = "",
        actor: dict | None = None,
    ) -> dict:
        self._require_module(module)
        attributes = attributes or {}
        record = self._store.load_or_fail(module, record_id)
        if not self._policy.can_access(record, "save", actor):
            raise AccessDenied(f"Not allowed to update {module} record {record_id}")

        set_record_update_params(record, attributes)
        file_upload = self._process_attributes(record, attributes, for_create=False)
        self._store.persist(record, actor_id(actor))
        self._logger.info("record_updated module=%s id=%s actor=%s", module, record.id, actor_id(actor))

        if file_upload:
            self.add_file_to_note(record.id, attributes, actor)

        record = self._store.load_or_fail(module, record.id)
        return {"data": self.data_response(record, None, f"{path}/{record.id}", actor)}

    def add_file_to_note(self, record_id: str, attributes: dict, actor: dict | None = None) -> Record:
        notes_module = self._config.notes_module
        note = self._store.load(notes_module, record_id)
        if note is None:
            self._logger.error("add_file_to_note: no %s record with id %s", notes_module, record_id)
            raise InvalidArgument(
                f"File upload failed: no {notes_module} record with id {record_id}",
                code="FILE_NOTE_MISSING",
                path=FILE_NAME_KEY,
            )

        filename = attributes.get(FILE_NAME_KEY)
        issue = validate_upload_filename(filename, self._config.upload_badext)
        if issue:
            self._logger.error("add_file_to_note: %s filename=%s", issue["message"], filename)
            raise InvalidArgument(issue["message"], code=issue["code"], path=issue["path"], detail=issue["detail"])

        try:
            content = base64.b64decode(attributes.get(FILE_CONTENTS_KEY) or "")
        except (binascii.Error, ValueError, TypeError) as exc:
            self._logger.error("add_file_to_note: invalid filecontents id=%s error=%s", record_id, exc)
            raise InvalidArgument(
                "File upload failed: filecontents is not valid base64.",
                code="FILE_CONTENTS_INVALID",
                path=FILE_CONTENTS_KEY,
            ) from exc

        try:
            stored = self._storage.write(note.id, content, filename=filename)
        except Exception as exc:
            self._logger.error("add_file_to_note: write failed id=%s error=%s", note.id, exc)
            raise StorageFailure(f"File upload failed: could not write file for {notes_module} {note.id}") from exc

        note.set("filename", filename)
        note.set("uploadfile", filename)
        note.set("file_mime_type", stored.get("mime_type"))
        self._store.persist(note, actor_id(actor))
        self._logger.info("note_file_attached id=%s filename=%s mime_type=%s", note.id, filename, stored.get("mime_type"))
        return note

    def delete_record(self, module: str, record_id: str, actor: dict | None = None) -> dict:
        self._require_module(module)
        record = self._store.load_or_fail(module, record_id)
        if not self._policy.can_access(record, "delete", actor):
            raise AccessDenied(f"Not allowed to delete {module} record {record_id}")
        self._store.soft_delete(record, actor_id(actor))
        self._logger.info("record_deleted module=%s id=%s actor=%s", module, record.id, actor_id(actor))
        return {"meta": {"message": f"Record with id {record.id} is deleted"}}
