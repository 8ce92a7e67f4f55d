"""
Query keys for the cache store.

A QueryKey is a plain tuple whose first element names the resource
(e.g. ("users", "pending") or ("terms", {"year": 2024})). Keys must be
hashable and compare by value, so nested lists and dicts are normalized
into tuples before use.

Invariants:
    - Two keys are equal iff their normalized tuples are equal
    - Normalization is deterministic (dict items are sorted by key)
    - None segments are dropped
"""

from __future__ import annotations

from typing import Any, Iterable, Tuple

QueryKey = Tuple[Any, ...]


def _freeze(part: Any) -> Any:
    if isinstance(part, dict):
        return tuple(sorted((str(k), _freeze(v)) for k, v in part.items() if v is not None))
    if isinstance(part, (list, tuple)):
        return tuple(_freeze(p) for p in part if p is not None)
    if isinstance(part, (set, frozenset)):
        return tuple(sorted((_freeze(p) for p in part), key=repr))
    return part


def make_query_key(*parts: Any) -> QueryKey:
    """Build a normalized query key.

    A single tuple or list argument is treated as the whole key, so
    make_query_key(("users", "pending")) == make_query_key("users", "pending").

    Raises:
        ValueError: If the key is empty after dropping None segments
    """
    if len(parts) == 1 and isinstance(parts[0], (list, tuple)):
        parts = tuple(parts[0])
    key = tuple(_freeze(p) for p in parts if p is not None)
    if not key:
        raise ValueError("Query key must have at least one non-None segment")
    return key


def key_matches(prefix: Iterable[Any], key: QueryKey) -> bool:
    """Whether key starts with prefix."""
    prefix = make_query_key(tuple(prefix))
    return key[: len(prefix)] == prefix


def key_table(key: QueryKey) -> str:
    """Resource name a key belongs to."""
    return str(key[0])


def _is_params(part: Any) -> bool:
    return isinstance(part, tuple) and all(
        isinstance(p, tuple) and len(p) == 2 and isinstance(p[0], str) for p in part
    )


def key_path(key: QueryKey) -> str:
    """Render a key as an API path, the way the portal's default query does.

    Scalar segments are joined with "/"; filter segments (normalized dicts)
    are left out and exposed through key_params().
    """
    segments = []
    for part in key:
        if isinstance(part, tuple):
            continue
        segments.append(str(part).strip("/"))
    return "/" + "/".join(s for s in segments if s)


def key_params(key: QueryKey) -> dict[str, Any]:
    """Filter parameters carried by a key, merged left to right."""
    params: dict[str, Any] = {}
    for part in key:
        if _is_params(part):
            params.update(dict(part))
    return params
