"""
Cache module for the SchoolSync engine.

This module provides:
- QueryKey normalization and prefix matching
- CacheStore: keyed, versioned, in-memory query results
- CachedQuery: per-key observer used by mounted screens

Invariants:
    - The store is passed explicitly to every component (no global instance)
    - Versions only move forward
"""

from .keys import QueryKey, key_matches, key_params, key_path, key_table, make_query_key
from .query import CachedQuery, QueryState
from .store import CacheEntry, CacheStore

__all__ = [
    "QueryKey",
    "make_query_key",
    "key_matches",
    "key_path",
    "key_params",
    "key_table",
    "CacheEntry",
    "CacheStore",
    "CachedQuery",
    "QueryState",
]
