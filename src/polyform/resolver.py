"""Field identity resolution.

A stored value map may be keyed by a field's generated id, by its ``name`` or
by its human label, depending on which client wrote it and whether the schema
was edited afterwards. Every read path goes through :func:`lookup_value` so the
precedence (id, then name, then label) is the same everywhere. New writes are
always keyed by id through :func:`canonicalize_values`.
"""

from __future__ import annotations

from typing import Any

from polyform.field_types import is_empty


def resolve(field: dict[str, Any]) -> str:
    return str(field.get("id") or field.get("name") or field.get("label") or "")


def candidate_keys(field: dict[str, Any]) -> list[str]:
    keys: list[str] = []
    for attr in ("id", "name", "label"):
        key = str(field.get(attr) or "").strip()
        if key and key not in keys:
            keys.append(key)
    return keys


def lookup_value(values: dict[str, Any] | None, field: dict[str, Any]) -> Any | None:
    if not isinstance(values, dict):
        return None
    for key in candidate_keys(field):
        if key not in values:
            continue
        value = values[key]
        if not is_empty(value):
            return value
    return None


def field_matches_ref(field: dict[str, Any], ref: Any) -> bool:
    text = str(ref or "").strip()
    return bool(text) and text in candidate_keys(field)


def find_field(fields: list[dict[str, Any]], ref: Any) -> dict[str, Any] | None:
    text = str(ref or "").strip()
    if not text:
        return None
    for attr in ("id", "name", "label"):
        for field in fields:
            if str(field.get(attr) or "").strip() == text:
                return field
    return None


def canonicalize_values(fields: list[dict[str, Any]], values: dict[str, Any] | None) -> dict[str, Any]:
    canonical: dict[str, Any] = {}
    for field in fields:
        value = lookup_value(values, field)
        if value is not None:
            canonical[resolve(field)] = value
    return canonical
