"""Built-in module manifests registered when no manifest file is configured."""

from __future__ import annotations

DEFAULT_MODULES: list[dict] = [
    {
        "module": {"id": "Accounts", "name": "Accounts", "object_name": "Account"},
        "fields": [
            {"id": "name", "type": "string", "required": True},
            {"id": "account_type", "type": "enum", "options": ["Analyst", "Competitor", "Customer", "Partner", "Prospect", "Other"]},
            {"id": "industry", "type": "string"},
            {"id": "annual_revenue", "type": "string"},
            {"id": "employees", "type": "number"},
            {"id": "phone_office", "type": "string"},
            {"id": "website", "type": "string"},
            {"id": "description", "type": "text"},
        ],
        "relationships": [
            {"id": "contacts", "module": "Contacts"},
            {"id": "notes", "module": "Notes"},
        ],
    },
    {
        "module": {"id": "Contacts", "name": "Contacts", "object_name": "Contact"},
        "fields": [
            {"id": "first_name", "type": "string"},
            {"id": "last_name", "type": "string", "required": True},
            {"id": "email1", "type": "string"},
            {"id": "phone_work", "type": "string"},
            {"id": "birthdate", "type": "date", "acl": {"read": ["admin", "manager", "owner"]}},
            {"id": "do_not_call", "type": "boolean"},
            {"id": "account_id", "type": "id"},
            {"id": "description", "type": "text"},
        ],
        "relationships": [
            {"id": "accounts", "module": "Accounts"},
            {"id": "notes", "module": "Notes"},
        ],
    },
    {
        "module": {"id": "Notes", "name": "Notes", "object_name": "Note"},
        "fields": [
            {"id": "name", "type": "string", "required": True},
            {"id": "description", "type": "text"},
            {"id": "filename", "type": "string"},
            {"id": "uploadfile", "type": "string"},
            {"id": "file_mime_type", "type": "string"},
            {"id": "parent_type", "type": "string"},
            {"id": "parent_id", "type": "id"},
            {"id": "contact_id", "type": "id"},
        ],
        "relationships": [
            {"id": "contact", "module": "Contacts"},
        ],
    },
]
