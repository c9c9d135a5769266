"""Role-based access decisions for records and fields.

Module manifests carry rules such as ``{"acl": {"delete": ["admin", "manager"]}}``
and fields may carry ``{"acl": {"read": ["owner", "manager"]}}``. The pseudo-role
``owner`` matches when the actor owns the record (assigned or created it); an
unsaved record is owned by whoever is creating it.
"""

from __future__ import annotations

import logging
from typing import Any

from app.stores import Record

ACTIONS = {"view", "save", "delete"}
ADMIN_ROLE = "admin"
OWNER_RULE = "owner"

logger = logging.getLogger("records.policy")


def actor_id(actor: dict | None) -> str | None:
    if not isinstance(actor, dict):
        return None
    value = actor.get("user_id") or actor.get("id")
    return str(value) if value else None


def actor_roles(actor: dict | None) -> set[str]:
    if not isinstance(actor, dict):
        return set()
    roles = actor.get("roles")
    found = {r for r in roles if isinstance(r, str)} if isinstance(roles, list) else set()
    role = actor.get("role")
    if isinstance(role, str) and role:
        found.add(role)
    return found


def _is_owner(record: Record | None, actor: dict | None) -> bool:
    if record is None or record.id is None or record.new_with_id:
        return True
    uid = actor_id(actor)
    if not uid:
        return False
    return uid in (record.get("assigned_user_id"), record.get("created_by"))


def _role_grants(rule: Any, actor: dict | None) -> bool:
    if rule is None:
        return True
    if not isinstance(rule, list):
        return bool(rule)
    return "*" in rule or bool(actor_roles(actor).intersection(rule))


def _rule_allows(rule: Any, record: Record | None, actor: dict | None) -> bool:
    if _role_grants(rule, actor):
        return True
    return isinstance(rule, list) and OWNER_RULE in rule and _is_owner(record, actor)


def owner_condition(uid: str | None) -> dict:
    """Condition matching records assigned to or created by ``uid``."""
    if not uid:
        return {"op": "or", "conditions": []}
    return {
        "op": "or",
        "conditions": [
            {"op": "eq", "field": "assigned_user_id", "value": uid},
            {"op": "eq", "field": "created_by", "value": uid},
        ],
    }


class PolicyEvaluator:
    def __init__(self, registry) -> None:
        self._registry = registry

    def can_access(self, record: Record, action: str, actor: dict | None) -> bool:
        if action not in ACTIONS:
            raise ValueError(f"unknown action: {action}")
        if ADMIN_ROLE in actor_roles(actor):
            return True
        rule = self._registry.acl(record.module).get(action)
        allowed = _rule_allows(rule, record, actor)
        if not allowed:
            logger.info("access_denied module=%s id=%s action=%s actor=%s", record.module, record.id, action, actor_id(actor))
        return allowed

    def can_read_field(self, record: Record | None, module: str, field_id: str, actor: dict | None) -> bool:
        field = self._registry.field_def(module, field_id)
        if field is None:
            return False
        if ADMIN_ROLE in actor_roles(actor):
            return True
        acl = field.get("acl") if isinstance(field.get("acl"), dict) else {}
        return _rule_allows(acl.get("read"), record, actor)

    def readable_fields(self, record: Record | None, module: str, fields: list[str], actor: dict | None) -> list[str]:
        return [f for f in fields if self.can_read_field(record, module, f, actor)]

    def list_scope(self, module: str, actor: dict | None) -> dict | None:
        """Extra condition a listing must carry, or None when every row is visible.

        A ``view`` rule that lets the actor in only through ``owner`` narrows the
        listing to the actor's own records.
        """
        if ADMIN_ROLE in actor_roles(actor):
            return None
        rule = self._registry.acl(module).get("view")
        if _role_grants(rule, actor):
            return None
        return owner_condition(actor_id(actor))

    def can_query_field(self, module: str, field_id: str, actor: dict | None, owned_only: bool = False) -> bool:
        """Whether the actor may filter or sort on a field across a listing.

        ``owner`` read grants count only when every listed row is the actor's own.
        """
        field = self._registry.field_def(module, field_id)
        if field is None:
            return False
        if ADMIN_ROLE in actor_roles(actor):
            return True
        acl = field.get("acl") if isinstance(field.get("acl"), dict) else {}
        rule = acl.get("read")
        if _role_grants(rule, actor):
            return True
        return owned_only and isinstance(rule, list) and OWNER_RULE in rule
