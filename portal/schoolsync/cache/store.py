"""
In-memory versioned cache store for the SchoolSync engine.

The CacheStore holds the results of portal queries ("pending users",
"admin list", ...) keyed by QueryKey. It is the only shared mutable state
of the engine: the mutation coordinator, bulk executor, realtime
subscriber and query observers all read and write through its
get/set/patch/invalidate/restore contract.

Invariants:
    - Every data write (set, patch, restore) increments the entry version
    - Marking an entry stale or recording a fetch error never bumps the version
    - Entry data is replaced, never mutated in place
    - restore() only applies when the live version is the expected one
    - Listeners see a batch of writes only after the whole batch is applied

How to change safely:
    - Never add a write path that skips _write(); the version is what the
      rollback guard relies on
    - Keep updaters pure; they are shared by mutations and realtime patches
    - Test new behaviour against the rollback/realtime interleavings in
      tests/integration
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Awaitable, Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, replace
from typing import Any

from ..config import CacheConfig, RetryConfig
from ..errors import QueryError, is_retryable
from .keys import QueryKey, key_matches, key_table, make_query_key

logger = logging.getLogger(__name__)

Listener = Callable[["CacheEntry"], None]
Updater = Callable[[Any], Any]
QueryFn = Callable[[QueryKey], Awaitable[Any]]

# Guard against a refetch chasing invalidations forever
MAX_FETCH_PASSES = 3


@dataclass(frozen=True)
class CacheEntry:
    """A cached query result.

    Attributes:
        key: Query key
        data: Cached value (None until first successful write)
        version: Write counter, starts at 1 on first write (0 = never written)
        last_updated: Wall clock time of the last data write (seconds)
        is_stale: Whether the entry was invalidated since its last write
        error: Last fetch error, cleared by the next data write
    """

    key: QueryKey
    data: Any
    version: int
    last_updated: float
    is_stale: bool = False
    error: BaseException | None = None


class CacheStore:
    """Keyed, versioned in-memory table of query results.

    Thread safety:
        Not thread-safe. All calls must come from the event loop thread;
        every method except refetch() completes without awaiting, so
        writes never interleave.

    Example:
        >>> store = CacheStore()
        >>> store.set(("users", "pending"), [{"id": "u1"}])
        >>> store.patch(("users", "pending"), lambda old: [u for u in old if u["id"] != "u1"])
        >>> store.get(("users", "pending")).version
        2
    """

    def __init__(
        self,
        config: CacheConfig | None = None,
        retry: RetryConfig | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the store.

        Args:
            config: Staleness and garbage collection settings
            retry: Retry policy for query functions
            clock: Time source (seconds), injectable for tests
        """
        self.config = config or CacheConfig()
        self.retry = retry or RetryConfig()
        self._clock = clock
        self._entries: dict[QueryKey, CacheEntry] = {}
        self._listeners: dict[QueryKey, list[Listener]] = {}
        self._query_fns: dict[QueryKey, QueryFn] = {}
        self._default_query_fn: QueryFn | None = None
        self._inflight: dict[QueryKey, asyncio.Task] = {}
        self._refetch_requested: set[QueryKey] = set()
        self._background: set[asyncio.Task] = set()
        self._batch_depth = 0
        self._pending_notify: dict[QueryKey, None] = {}

    # Reads

    def get(self, key: QueryKey) -> CacheEntry | None:
        """Get the entry for a key, or None if it was never cached."""
        return self._entries.get(make_query_key(key))

    def get_data(self, key: QueryKey, default: Any = None) -> Any:
        """Get the cached data for a key."""
        entry = self.get(key)
        if entry is None or entry.data is None:
            return default
        return entry.data

    def version(self, key: QueryKey) -> int:
        """Current version of a key (0 if never written)."""
        entry = self.get(key)
        return entry.version if entry else 0

    def keys(self) -> list[QueryKey]:
        """All cached keys."""
        return list(self._entries)

    def entries_for_table(self, table: str) -> list[CacheEntry]:
        """Entries whose key belongs to a resource table."""
        return [e for k, e in self._entries.items() if key_table(k) == table]

    def is_stale(self, key: QueryKey, now: float | None = None) -> bool:
        """Whether a key needs fetching (missing, invalidated, or too old)."""
        entry = self.get(key)
        if entry is None or entry.version == 0 or entry.is_stale:
            return True
        now = self._clock() if now is None else now
        return now - entry.last_updated > self.config.stale_time

    # Writes

    def set(self, key: QueryKey, data: Any) -> CacheEntry:
        """Replace the data for a key.

        Returns:
            The new entry (version incremented)
        """
        return self._write(make_query_key(key), data)

    def patch(self, key: QueryKey, updater: Updater) -> CacheEntry:
        """Read-modify-write a key.

        Args:
            key: Query key
            updater: Pure function old_data -> new_data (old_data is None
                when the key is absent). Must not mutate its argument.

        Returns:
            The new entry (version incremented)
        """
        key = make_query_key(key)
        entry = self._entries.get(key)
        return self._write(key, updater(entry.data if entry else None))

    def restore(
        self,
        key: QueryKey,
        entry: CacheEntry | None,
        expected_version: int | None = None,
    ) -> bool:
        """Roll a key back to a prior entry.

        The restore applies only if the live version equals expected_version
        (by default, the version of the given entry). Otherwise a newer
        legitimate write exists and is kept.

        Args:
            key: Query key
            entry: Prior entry (None if the key was absent)
            expected_version: Version the key must still have

        Returns:
            True if restored, False if skipped as a stale rollback
        """
        key = make_query_key(key)
        if expected_version is None:
            expected_version = entry.version if entry else 0

        live_version = self.version(key)
        if live_version != expected_version:
            logger.debug(
                "Skipping stale rollback",
                extra={
                    "key": key,
                    "expected_version": expected_version,
                    "live_version": live_version,
                },
            )
            return False

        restored = self._write(key, entry.data if entry else None)
        if entry is not None and entry.is_stale:
            self._replace(replace(restored, is_stale=True), notify=False)
        return True

    def invalidate(self, key: QueryKey, *, exact: bool = False) -> list[QueryKey]:
        """Mark entries stale and schedule a refetch for observed ones.

        Args:
            key: Key, or key prefix unless exact is True
            exact: Match only this exact key

        Returns:
            Keys that were marked stale
        """
        matched = self._match(key, exact)
        for k in matched:
            entry = self._entries.get(k)
            if entry is not None and not entry.is_stale:
                self._replace(replace(entry, is_stale=True))
            if self.has_listeners(k) and self.query_fn_for(k) is not None:
                self._schedule_refetch(k)

        if matched:
            logger.debug("Invalidated cache keys", extra={"keys": matched})
        return matched

    async def invalidate_and_refetch(
        self,
        key: QueryKey,
        *,
        exact: bool = False,
        active_only: bool = False,
    ) -> dict[QueryKey, BaseException | None]:
        """Invalidate entries and wait for their refetch.

        Args:
            key: Key, or key prefix unless exact is True
            exact: Match only this exact key
            active_only: Only refetch keys that have listeners

        Returns:
            Mapping of refetched key to its error (None on success)
        """
        matched = self._match(key, exact)
        for k in matched:
            entry = self._entries.get(k)
            if entry is not None and not entry.is_stale:
                self._replace(replace(entry, is_stale=True))

        targets = [
            k
            for k in matched
            if self.query_fn_for(k) is not None and (not active_only or self.has_listeners(k))
        ]
        for k in targets:
            # A fetch already running may have read the server before the
            # caller's write; make it run another pass before it settles
            task = self._inflight.get(k)
            if task is not None and not task.done():
                self._refetch_requested.add(k)
        results = await asyncio.gather(*(self.refetch(k) for k in targets), return_exceptions=True)
        outcome: dict[QueryKey, BaseException | None] = {}
        for k, result in zip(targets, results):
            outcome[k] = result if isinstance(result, BaseException) else None
        return outcome

    def remove(self, key: QueryKey) -> bool:
        """Drop an entry entirely (garbage collection only)."""
        return self._entries.pop(make_query_key(key), None) is not None

    # Subscriptions

    def subscribe(self, key: QueryKey, listener: Listener) -> Callable[[], None]:
        """Call listener with the new entry after every change of key.

        Returns:
            Idempotent unsubscribe callable
        """
        key = make_query_key(key)
        self._listeners.setdefault(key, []).append(listener)
        done = False

        def unsubscribe() -> None:
            nonlocal done
            if done:
                return
            done = True
            listeners = self._listeners.get(key, [])
            if listener in listeners:
                listeners.remove(listener)
            if not listeners:
                self._listeners.pop(key, None)

        return unsubscribe

    def has_listeners(self, key: QueryKey) -> bool:
        """Whether any consumer is subscribed to key."""
        return bool(self._listeners.get(make_query_key(key)))

    @contextmanager
    def batch(self) -> Iterator[None]:
        """Defer listener notification until the outermost batch exits."""
        self._batch_depth += 1
        try:
            yield
        finally:
            self._batch_depth -= 1
            if self._batch_depth == 0:
                pending = list(self._pending_notify)
                self._pending_notify.clear()
                for key in pending:
                    self._notify(key)

    # Query functions

    def bind_query(self, key: QueryKey, fn: QueryFn) -> None:
        """Register the query function used to (re)fetch a key."""
        self._query_fns[make_query_key(key)] = fn

    def set_default_query(self, fn: QueryFn | None) -> None:
        """Register the query function used for keys without their own."""
        self._default_query_fn = fn

    def query_fn_for(self, key: QueryKey) -> QueryFn | None:
        """Query function bound to key, falling back to the default."""
        return self._query_fns.get(make_query_key(key), self._default_query_fn)

    async def refetch(self, key: QueryKey) -> Any:
        """Run the query function for key and store its result.

        Concurrent calls for the same key share one fetch. An invalidation
        that arrives mid-flight triggers another pass. A result is
        discarded if a local write landed while the fetch was in flight.

        Returns:
            The data now cached for key

        Raises:
            QueryError: If no query function is bound or the fetch failed
        """
        key = make_query_key(key)
        task = self._inflight.get(key)
        if task is None or task.done():
            task = asyncio.ensure_future(self._run_fetch(key))
            self._inflight[key] = task
            task.add_done_callback(lambda t, k=key: self._fetch_done(k, t))
        return await asyncio.shield(task)

    async def wait_idle(self) -> None:
        """Wait for all scheduled refetches to settle (testing helper)."""
        while self._background or self._inflight:
            pending = list(self._background) + list(self._inflight.values())
            await asyncio.gather(*pending, return_exceptions=True)

    # Garbage collection

    def collect_garbage(self, now: float | None = None) -> list[QueryKey]:
        """Remove unobserved entries not written for gc_time seconds.

        Returns:
            Removed keys
        """
        now = self._clock() if now is None else now
        removed = [
            key
            for key, entry in self._entries.items()
            if not self.has_listeners(key)
            and key not in self._inflight
            and now - entry.last_updated > self.config.gc_time
        ]
        for key in removed:
            del self._entries[key]
        if removed:
            logger.debug("Collected cache entries", extra={"count": len(removed)})
        return removed

    # Internals

    def _match(self, key: QueryKey, exact: bool) -> list[QueryKey]:
        key = make_query_key(key)
        if exact:
            candidates = [key] if key in self._entries or self.has_listeners(key) else []
            return candidates
        known = list(self._entries) + [k for k in self._listeners if k not in self._entries]
        return [k for k in known if key_matches(key, k)]

    def _write(self, key: QueryKey, data: Any) -> CacheEntry:
        old = self._entries.get(key)
        entry = CacheEntry(
            key=key,
            data=data,
            version=(old.version if old else 0) + 1,
            last_updated=self._clock(),
        )
        self._replace(entry)
        return entry

    def _replace(self, entry: CacheEntry, notify: bool = True) -> None:
        self._entries[entry.key] = entry
        if not notify:
            return
        if self._batch_depth:
            self._pending_notify[entry.key] = None
        else:
            self._notify(entry.key)

    def _notify(self, key: QueryKey) -> None:
        entry = self._entries.get(key)
        if entry is None:
            return
        for listener in list(self._listeners.get(key, [])):
            try:
                listener(entry)
            except Exception as e:
                logger.warning(
                    f"Cache listener failed: {e}",
                    extra={"key": key},
                    exc_info=True,
                )

    def _schedule_refetch(self, key: QueryKey) -> None:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running loop; refetch deferred", extra={"key": key})
            return

        if key in self._inflight:
            self._refetch_requested.add(key)
            return

        task = asyncio.ensure_future(self.refetch(key))
        self._background.add(task)
        task.add_done_callback(self._background_done)

    def _background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning(f"Background refetch failed: {task.exception()}")

    def _fetch_done(self, key: QueryKey, task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        if not task.cancelled():
            # Retrieved so an unobserved failure is not reported as never awaited
            task.exception()

    async def _run_fetch(self, key: QueryKey) -> Any:
        fn = self.query_fn_for(key)
        if fn is None:
            raise QueryError(f"No query function bound for {key}", key=key)

        for fetch_pass in range(1, MAX_FETCH_PASSES + 1):
            self._refetch_requested.discard(key)
            start_version = self.version(key)
            try:
                data = await self._fetch_with_retry(fn, key)
            except Exception as e:
                self._record_error(key, e)
                raise QueryError(f"Failed to fetch {key}: {e}", key=key, cause=e) from e

            if key in self._refetch_requested and fetch_pass < MAX_FETCH_PASSES:
                continue
            self._refetch_requested.discard(key)

            if self.version(key) != start_version:
                logger.debug(
                    "Discarding fetched data; a newer write landed during the fetch",
                    extra={"key": key, "start_version": start_version},
                )
                entry = self._entries[key]
                if not entry.is_stale:
                    self._replace(replace(entry, is_stale=True))
                return entry.data

            self._write(key, data)
            return data

        raise AssertionError("unreachable")

    async def _fetch_with_retry(self, fn: QueryFn, key: QueryKey) -> Any:
        attempt = 0
        while True:
            try:
                return await fn(key)
            except Exception as e:
                if attempt >= self.retry.max_retries or not is_retryable(e):
                    raise
                delay = min(
                    self.retry.base_delay * (2**attempt) + random.uniform(0, self.retry.max_jitter),
                    self.retry.max_delay,
                )
                logger.debug(
                    f"Query failed, retrying in {delay:.2f}s: {e}",
                    extra={"key": key, "attempt": attempt + 1},
                )
                attempt += 1
                await asyncio.sleep(delay)

    def _record_error(self, key: QueryKey, error: BaseException) -> None:
        entry = self._entries.get(key)
        if entry is None:
            entry = CacheEntry(key=key, data=None, version=0, last_updated=self._clock())
        self._replace(replace(entry, error=error, is_stale=True))
