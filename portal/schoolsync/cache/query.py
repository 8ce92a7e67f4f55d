"""
Query observers over the cache store.

A CachedQuery is what a screen holds while it is mounted: it subscribes to
one key, fetches when the entry is missing or stale, and exposes the
current QueryState (data, is_loading, is_error). Closing it releases the
subscription so the store can garbage-collect the entry.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from ..errors import QueryError
from .keys import QueryKey, make_query_key
from .store import CacheEntry, CacheStore, QueryFn

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QueryState:
    """Snapshot of a query as a consumer sees it.

    Attributes:
        data: Cached data (None while nothing was fetched)
        is_loading: No data yet and a fetch is in flight
        is_error: The last fetch failed
        error: The last fetch error
        version: Entry version the state was read from
    """

    data: Any = None
    is_loading: bool = False
    is_error: bool = False
    error: BaseException | None = None
    version: int = 0


class CachedQuery:
    """Observer of one cache key.

    Example:
        >>> query = CachedQuery(store, ("users", "pending"), fetch_pending)
        >>> await query.start()
        >>> query.state.data
        [...]
        >>> query.close()
    """

    def __init__(
        self,
        store: CacheStore,
        key: QueryKey,
        query_fn: QueryFn | None = None,
        on_change: Callable[[QueryState], None] | None = None,
    ) -> None:
        self.store = store
        self.key = make_query_key(key)
        self.on_change = on_change
        if query_fn is not None:
            store.bind_query(self.key, query_fn)
        self._unsubscribe: Callable[[], None] | None = None
        self._fetch: asyncio.Future | None = None

    @property
    def state(self) -> QueryState:
        """Current state read from the store."""
        entry = self.store.get(self.key)
        fetching = self._fetch is not None and not self._fetch.done()
        if entry is None:
            return QueryState(is_loading=fetching)
        return QueryState(
            data=entry.data,
            is_loading=fetching and entry.version == 0,
            is_error=entry.error is not None,
            error=entry.error,
            version=entry.version,
        )

    @property
    def is_active(self) -> bool:
        return self._unsubscribe is not None

    async def start(self) -> QueryState:
        """Subscribe and fetch if the cached entry is missing or stale."""
        if self._unsubscribe is None:
            self._unsubscribe = self.store.subscribe(self.key, self._on_entry)
        if self.store.is_stale(self.key):
            await self.refresh()
        return self.state

    async def refresh(self) -> QueryState:
        """Refetch now. Fetch errors are reported through state, not raised."""
        self._fetch = asyncio.ensure_future(self.store.refetch(self.key))
        try:
            await self._fetch
        except QueryError as e:
            logger.debug(f"Query fetch failed: {e}", extra={"key": self.key})
        return self.state

    def close(self) -> None:
        """Unsubscribe from the store."""
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def _on_entry(self, entry: CacheEntry) -> None:
        if self.on_change is not None:
            self.on_change(self.state)
