"""
Pure list/record transforms used for optimistic updates and reconciliation.

Every function returns a new value and never mutates its input, so the
same transform is safe to run from a mutation, a bulk action and a
realtime patch. Cached data is either a list of records (dicts) or a
single record.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterable
from typing import Any

Record = dict
Updater = Callable[[Any], Any]
Reconciler = Callable[[tuple, Any, Any], Any]


def temp_id() -> str:
    """Placeholder id for a record created before the server assigned one."""
    return f"temp-{int(time.time() * 1000)}"


def _matches(item: Any, item_id: Any, id_field: str) -> bool:
    return isinstance(item, dict) and item.get(id_field) == item_id


def optimistic_add(items: list | None, new_item: Record, id_field: str = "id") -> list:
    """Append a record, giving it a temporary id if it has none."""
    item = dict(new_item)
    if item.get(id_field) is None:
        item[id_field] = temp_id()
    return [*(items or []), item]


def optimistic_prepend(items: list | None, new_item: Record, id_field: str = "id") -> list:
    """Insert a record at the front, giving it a temporary id if it has none."""
    item = dict(new_item)
    if item.get(id_field) is None:
        item[id_field] = temp_id()
    return [item, *(items or [])]


def optimistic_update(data: Any, item_id: Any, updates: Record, id_field: str = "id") -> Any:
    """Merge updates into the record with item_id."""
    if data is None:
        return data
    if isinstance(data, list):
        return [{**item, **updates} if _matches(item, item_id, id_field) else item for item in data]
    if _matches(data, item_id, id_field):
        return {**data, **updates}
    return data


def optimistic_remove(data: Any, item_id: Any, id_field: str = "id") -> Any:
    """Remove the record with item_id (a single matching record becomes None)."""
    return optimistic_remove_many(data, [item_id], id_field)


def optimistic_remove_many(data: Any, item_ids: Iterable[Any], id_field: str = "id") -> Any:
    ids = set(item_ids)
    if data is None:
        return data
    if isinstance(data, list):
        return [item for item in data if not (isinstance(item, dict) and item.get(id_field) in ids)]
    if isinstance(data, dict) and data.get(id_field) in ids:
        return None
    return data


def optimistic_toggle(data: Any, item_id: Any, field: str, id_field: str = "id") -> Any:
    """Flip a boolean field on the record with item_id."""
    if isinstance(data, list):
        return [
            {**item, field: not item.get(field)} if _matches(item, item_id, id_field) else item
            for item in data
        ]
    if _matches(data, item_id, id_field):
        return {**data, field: not data.get(field)}
    return data


def upsert_record(data: Any, record: Record, id_field: str = "id") -> Any:
    """Replace the record with the same id, or append it to a list."""
    item_id = record.get(id_field)
    if isinstance(data, list):
        if any(_matches(item, item_id, id_field) for item in data):
            return [dict(record) if _matches(item, item_id, id_field) else item for item in data]
        return [*data, dict(record)]
    if data is None or _matches(data, item_id, id_field):
        return dict(record)
    return data


def find_record(data: Any, item_id: Any, id_field: str = "id") -> Record | None:
    """The record with item_id, or None."""
    if isinstance(data, list):
        for item in data:
            if _matches(item, item_id, id_field):
                return item
        return None
    return data if _matches(data, item_id, id_field) else None


# Transform factories, usable directly as an optimistic_transform


def remove_items(*item_ids: Any, id_field: str = "id") -> Updater:
    """Transform removing item_ids from list data."""
    return lambda old: optimistic_remove_many(old, item_ids, id_field)


def update_items(item_ids: Iterable[Any], updates: Record, id_field: str = "id") -> Updater:
    """Transform merging updates into every record in item_ids."""
    ids = list(item_ids)

    def apply(old: Any) -> Any:
        for item_id in ids:
            old = optimistic_update(old, item_id, updates, id_field)
        return old

    return apply


def add_item(new_item: Record, *, prepend: bool = False, id_field: str = "id") -> Updater:
    """Transform adding one record."""
    if prepend:
        return lambda old: optimistic_prepend(old, new_item, id_field)
    return lambda old: optimistic_add(old, new_item, id_field)


# Reconcilers: (key, optimistic_data, server_payload) -> new data


def replace_with_response(key: tuple, old: Any, payload: Any) -> Any:
    """Use the server payload as the new cached value."""
    return payload


def upsert_response_record(id_field: str = "id") -> Reconciler:
    """Put the server's record in place of the optimistic one."""

    def reconcile(key: tuple, old: Any, payload: Any) -> Any:
        if not isinstance(payload, dict) or payload.get(id_field) is None:
            return old
        return upsert_record(old, payload, id_field)

    return reconcile


def drop_response_record(id_field: str = "id") -> Reconciler:
    """Make sure the record the server returned is absent (e.g. approved
    users leaving the pending list)."""

    def reconcile(key: tuple, old: Any, payload: Any) -> Any:
        if not isinstance(payload, dict) or payload.get(id_field) is None:
            return old
        return optimistic_remove(old, payload[id_field], id_field)

    return reconcile
