"""Snapshot and comparison helpers for revision payloads."""
from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Mapping
from uuid import UUID

from sqlalchemy import inspect

from auditkit.utils.time import ensure_utc


def to_jsonable(value: Any) -> Any:
    """Return ``value`` converted to a JSON-safe, deterministic representation."""

    if isinstance(value, Enum):
        return to_jsonable(value.value)
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, datetime):
        return ensure_utc(value).isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, (Decimal, UUID)):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): to_jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [to_jsonable(item) for item in value]
    raise TypeError(f"Cannot snapshot value of type {type(value).__name__}")


def revisioned_columns(model: type) -> list[str]:
    """Return the attribute keys of ``model`` captured in revision payloads.

    The optimistic-locking version column is bookkeeping and is left out.
    """

    mapper = inspect(model)
    version_col = mapper.version_id_col
    return [
        attr.key
        for attr in mapper.column_attrs
        if version_col is None or attr.columns[0] is not version_col
    ]


def snapshot_entity(obj: Any) -> dict[str, Any]:
    """Return the full column state of an ORM instance as a revision payload."""

    return {key: to_jsonable(getattr(obj, key)) for key in revisioned_columns(type(obj))}


def entity_type_for(model: type) -> str:
    """Return the name revisions of ``model`` are filed under."""

    return getattr(model, "__revision_entity__", model.__name__)


def diff_payloads(old: Mapping[str, Any], new: Mapping[str, Any]) -> dict[str, dict[str, Any]]:
    """Return field changes between two payloads as ``{field: {old: x, new: y}}``.

    Fields present on one side only are reported with ``None`` for the
    missing side.
    """

    changes: dict[str, dict[str, Any]] = {}
    for key in sorted(set(old) | set(new)):
        old_value = old.get(key)
        new_value = new.get(key)
        if key not in old or key not in new or old_value != new_value:
            changes[key] = {"old": old_value, "new": new_value}
    return changes


__all__ = ["to_jsonable", "revisioned_columns", "snapshot_entity", "entity_type_for", "diff_payloads"]
