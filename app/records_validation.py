"""Attribute validation against module field schemas."""

from __future__ import annotations

from datetime import date, datetime
from typing import Any

# Keys carrying an inline attachment; never copied onto the record.
FILE_NAME_KEY = "filename"
FILE_CONTENTS_KEY = "filecontents"
ATTACHMENT_KEYS = {FILE_NAME_KEY, FILE_CONTENTS_KEY}


def enum_values(field: dict) -> list:
    options = field.get("options") or field.get("values") or []
    values = []
    for opt in options:
        if isinstance(opt, dict) and "value" in opt:
            values.append(opt["value"])
        else:
            values.append(opt)
    return values


def _issue(code: str, message: str, path: str | None = None, detail: dict | None = None) -> dict:
    return {"code": code, "message": message, "path": path, "detail": detail}


def _check_type(field_id: str, field: dict, val: Any) -> dict | None:
    ftype = field.get("type")
    if ftype in ("string", "text", "id"):
        if not isinstance(val, str):
            return _issue("TYPE_MISMATCH", f"{field_id} must be a string", path=field_id)
    elif ftype == "number":
        if not isinstance(val, (int, float)) or isinstance(val, bool):
            return _issue("TYPE_MISMATCH", f"{field_id} must be a number", path=field_id)
    elif ftype in ("boolean", "bool"):
        if not isinstance(val, bool):
            return _issue("TYPE_MISMATCH", f"{field_id} must be a boolean", path=field_id)
    elif ftype == "enum":
        allowed = enum_values(field)
        if val not in allowed:
            return _issue("INVALID_ENUM", f"{field_id} must be one of {allowed}", path=field_id)
    elif ftype == "date":
        if not isinstance(val, str):
            return _issue("TYPE_MISMATCH", f"{field_id} must be a date string", path=field_id)
        try:
            date.fromisoformat(val)
        except ValueError:
            return _issue("INVALID_DATE", f"{field_id} must be YYYY-MM-DD", path=field_id)
    elif ftype == "datetime":
        if not isinstance(val, str):
            return _issue("TYPE_MISMATCH", f"{field_id} must be a datetime string", path=field_id)
        try:
            datetime.fromisoformat(val.replace("Z", "+00:00"))
        except ValueError:
            return _issue("INVALID_DATETIME", f"{field_id} must be ISO8601", path=field_id)
    return None


def validate_attributes(field_defs: dict, attributes: Any) -> list[dict]:
    """Check an attribute map before it is copied onto a record.

    Unknown fields are errors here even though projection silently skips them.
    ``id`` and ``deleted`` are managed by the service and may not be written.
    """
    if not isinstance(attributes, dict):
        return [_issue("INVALID_PAYLOAD", "attributes must be an object")]
    errors: list[dict] = []
    for field_id, val in attributes.items():
        if field_id in ATTACHMENT_KEYS:
            continue
        if field_id in ("id", "deleted"):
            errors.append(_issue("READONLY_FIELD", f"{field_id} cannot be set through attributes", path=field_id))
            continue
        field = field_defs.get(field_id)
        if field is None:
            errors.append(_issue("UNKNOWN_FIELD", f"Unknown field: {field_id}", path=field_id))
            continue
        if val is None:
            continue
        issue = _check_type(field_id, field, val)
        if issue:
            errors.append(issue)
    if FILE_NAME_KEY in attributes and not isinstance(attributes.get(FILE_NAME_KEY), str):
        errors.append(_issue("TYPE_MISMATCH", "filename must be a string", path=FILE_NAME_KEY))
    return errors


def validate_required(field_defs: dict, values: dict) -> list[dict]:
    errors = []
    for field_id, field in field_defs.items():
        if not field.get("required"):
            continue
        val = values.get(field_id)
        if val is None or val == "":
            errors.append(_issue("REQUIRED_FIELD", f"Missing required field: {field_id}", path=field_id))
    return errors


def file_extension(filename: str) -> str:
    pos = filename.rfind(".")
    if pos < 0:
        return ""
    return filename[pos + 1 :]


def validate_upload_filename(filename: Any, badext: tuple[str, ...] | list[str]) -> dict | None:
    if not isinstance(filename, str) or not filename:
        return _issue("FILE_NAME_INVALID", "File upload failed: filename is required.", path=FILE_NAME_KEY)
    ext = file_extension(filename)
    if not ext or ext.lower() in {b.lower() for b in badext}:
        return _issue(
            "FILE_EXTENSION_INVALID",
            "File upload failed: File extension is not included or is not valid.",
            path=FILE_NAME_KEY,
            detail={"filename": filename},
        )
    return None
