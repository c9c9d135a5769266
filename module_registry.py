"""In-memory registry of module schemas (fields, relationships, access rules)."""

from __future__ import annotations

import copy
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List


Issue = Dict[str, Any]

FIELD_TYPES = {"id", "string", "text", "number", "boolean", "bool", "date", "datetime", "enum"}

# Fields every module carries; the store stamps them on persist.
SYSTEM_FIELDS: List[dict] = [
    {"id": "id", "type": "id", "system": True},
    {"id": "date_entered", "type": "datetime", "system": True},
    {"id": "date_modified", "type": "datetime", "system": True},
    {"id": "modified_user_id", "type": "id", "system": True},
    {"id": "modified_by_name", "type": "string", "system": True},
    {"id": "created_by", "type": "id", "system": True},
    {"id": "created_by_name", "type": "string", "system": True},
    {"id": "assigned_user_id", "type": "id", "system": True},
    {"id": "deleted", "type": "boolean", "system": True},
]


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _issue(code: str, message: str, path: str | None = None, detail: dict | None = None) -> Issue:
    return {"code": code, "message": message, "path": path, "detail": detail}


def _field_list(fields: Any) -> list[dict]:
    if isinstance(fields, dict):
        items = []
        for field_id, field_def in fields.items():
            if isinstance(field_def, dict):
                items.append({"id": field_id, **field_def})
            else:
                items.append({"id": field_id})
        return items
    if isinstance(fields, list):
        return [f for f in fields if isinstance(f, dict)]
    return []


class ModuleRegistry:
    def __init__(self) -> None:
        self._modules: Dict[str, dict] = {}

    def get(self, module_id: str) -> dict | None:
        record = self._modules.get(module_id)
        return copy.deepcopy(record) if record else None

    def has(self, module_id: str) -> bool:
        return module_id in self._modules

    def list(self) -> list[dict]:
        return [copy.deepcopy(self._modules[mid]) for mid in sorted(self._modules.keys())]

    def register(self, manifest: dict) -> dict:
        errors: List[Issue] = []
        warnings: List[Issue] = []

        module = manifest.get("module") if isinstance(manifest, dict) else None
        module_id = module.get("id") if isinstance(module, dict) else None
        if not isinstance(module_id, str) or not module_id.strip():
            errors.append(_issue("MODULE_ID_REQUIRED", "module.id is required", "module.id"))
            return {"ok": False, "errors": errors, "warnings": warnings, "module": None}
        if module_id in self._modules:
            errors.append(_issue("MODULE_ALREADY_REGISTERED", "module already registered", "module.id"))
            return {"ok": False, "errors": errors, "warnings": warnings, "module": None}

        declared = _field_list(manifest.get("fields"))
        fields: Dict[str, dict] = {f["id"]: copy.deepcopy(f) for f in SYSTEM_FIELDS}
        for idx, field in enumerate(declared):
            field_id = field.get("id")
            if not isinstance(field_id, str) or not field_id:
                errors.append(_issue("FIELD_ID_REQUIRED", "field id is required", f"fields[{idx}].id"))
                continue
            ftype = field.get("type", "string")
            if ftype not in FIELD_TYPES:
                errors.append(_issue("FIELD_TYPE_UNKNOWN", f"unknown field type: {ftype}", f"fields[{idx}].type"))
                continue
            if field_id in fields and fields[field_id].get("system"):
                warnings.append(_issue("FIELD_SYSTEM_OVERRIDE", f"system field redeclared: {field_id}", f"fields[{idx}]"))
            fields[field_id] = {**copy.deepcopy(field), "type": ftype}

        relationships: Dict[str, dict] = {}
        for idx, rel in enumerate(_field_list(manifest.get("relationships"))):
            rel_id = rel.get("id")
            if not isinstance(rel_id, str) or not rel_id:
                errors.append(_issue("RELATIONSHIP_ID_REQUIRED", "relationship id is required", f"relationships[{idx}].id"))
                continue
            relationships[rel_id] = copy.deepcopy(rel)

        default_fields = manifest.get("default_fields")
        if default_fields is None:
            default_fields = list(fields.keys())
        elif not isinstance(default_fields, list):
            errors.append(_issue("DEFAULT_FIELDS_INVALID", "default_fields must be a list", "default_fields"))
            default_fields = []
        for field_id in default_fields:
            if field_id not in fields:
                errors.append(_issue("DEFAULT_FIELD_UNKNOWN", f"default field not declared: {field_id}", "default_fields"))

        acl = manifest.get("acl") or {}
        if not isinstance(acl, dict):
            errors.append(_issue("ACL_INVALID", "acl must be an object", "acl"))

        if errors:
            return {"ok": False, "errors": errors, "warnings": warnings, "module": None}

        record = {
            "module_id": module_id,
            "name": module.get("name") or module_id,
            "object_name": module.get("object_name") or module_id,
            "fields": fields,
            "default_fields": list(default_fields),
            "relationships": relationships,
            "acl": copy.deepcopy(acl),
            "registered_at": _now(),
        }
        self._modules[module_id] = record
        return {"ok": True, "errors": errors, "warnings": warnings, "module": copy.deepcopy(record)}

    def register_many(self, manifests: list[dict]) -> list[dict]:
        return [self.register(manifest) for manifest in manifests]

    def load_file(self, path: str | Path) -> list[dict]:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        manifests = data.get("modules") if isinstance(data, dict) else data
        if not isinstance(manifests, list):
            raise ValueError(f"{path}: expected a list of module manifests")
        return self.register_many(manifests)

    def object_name(self, module_id: str) -> str:
        record = self._modules.get(module_id)
        return record.get("object_name") if record else module_id

    def field_defs(self, module_id: str) -> Dict[str, dict]:
        record = self._modules.get(module_id)
        return copy.deepcopy(record.get("fields") or {}) if record else {}

    def field_def(self, module_id: str, field_id: str) -> dict | None:
        record = self._modules.get(module_id)
        if not record:
            return None
        field = (record.get("fields") or {}).get(field_id)
        return copy.deepcopy(field) if field else None

    def default_fields(self, module_id: str) -> list[str]:
        record = self._modules.get(module_id)
        return list(record.get("default_fields") or []) if record else []

    def relationships(self, module_id: str) -> Dict[str, dict]:
        record = self._modules.get(module_id)
        return copy.deepcopy(record.get("relationships") or {}) if record else {}

    def acl(self, module_id: str) -> dict:
        record = self._modules.get(module_id)
        return copy.deepcopy(record.get("acl") or {}) if record else {}
