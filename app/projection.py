"""Attribute and relationship projection of records into JSON:API data objects."""

from __future__ import annotations

from app.policy import PolicyEvaluator
from app.stores import Record


class AttributeProjector:
    def __init__(self, registry, policy: PolicyEvaluator) -> None:
        self._registry = registry
        self._policy = policy

    def attributes(self, record: Record, fields: list[str] | None, actor: dict | None) -> dict:
        """Declared, readable fields of the record; everything else is left out."""
        requested = list(fields) if fields else self._registry.default_fields(record.module)
        declared = self._registry.field_defs(record.module)
        attributes = {}
        for field_id in requested:
            if field_id == "id" or field_id not in declared:
                continue
            if not self._policy.can_read_field(record, record.module, field_id, actor):
                continue
            attributes[field_id] = record.get(field_id)
        return attributes


class RelationshipProjector:
    def __init__(self, registry) -> None:
        self._registry = registry

    def relationships(self, record: Record, base_path: str | None) -> dict:
        relationships = {}
        base = (base_path or "").rstrip("/")
        for name in self._registry.relationships(record.module):
            url = f"{base}/relationships/{name}"
            relationships[name] = {"links": {"self": url, "related": url}}
        return relationships


def data_object(registry, record: Record, attributes: dict, relationships: dict) -> dict:
    return {
        "type": registry.object_name(record.module),
        "id": record.id,
        "attributes": attributes,
        "relationships": relationships,
    }
