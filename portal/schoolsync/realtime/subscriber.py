"""
Realtime subscriber for the SchoolSync engine.

The RealtimeSubscriber turns change feed events into cache writes:

- update/delete of a record that is cached -> targeted patch of every
  bound key that holds it
- insert, or an update that cannot be merged -> invalidate the bound keys
  so observed ones refetch
- reconnect -> invalidate every key of every watched table, since events
  may have been missed while disconnected

Invariants:
    - Applying the same event twice leaves the cache as applying it once
    - A delete of an absent record writes nothing
    - An update not newer than the last applied one for its record is ignored
    - Table subscriptions are reference counted; the feed sees one
      subscription per watched table

How to change safely:
    - Never write to the store outside handle_event and _invalidate_binding
    - Test idempotency with duplicate and replayed events
    - Realtime writes bump the version, so they win over rollbacks of
      mutations in flight; keep it that way
"""

from __future__ import annotations

import asyncio
import enum
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from ..cache.keys import QueryKey, key_matches, make_query_key
from ..cache.store import CacheStore
from ..config import RealtimeConfig
from ..errors import ChangeFeedError
from ..mutation.transforms import find_record, optimistic_remove, optimistic_update
from .base import ChangeFeed, Unsubscribe
from .events import EventType, RealtimeEvent, parse_timestamp

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TableBinding:
    """Which cache keys hold records of a table.

    Attributes:
        table: Table name used by the change feed
        key_prefixes: Key prefixes whose entries hold the table's records
            (default: the table name alone)
        id_field: Record id field
        timestamp_field: Record field used for last-write-wins, if any
    """

    table: str
    key_prefixes: tuple = ()
    id_field: str = "id"
    timestamp_field: str | None = "updated_at"

    def prefixes(self) -> list[QueryKey]:
        if not self.key_prefixes:
            return [make_query_key(self.table)]
        return [make_query_key(p) for p in self.key_prefixes]


class EventAction(enum.Enum):
    PATCHED = "patched"
    INVALIDATED = "invalidated"
    SKIPPED = "skipped"
    IGNORED = "ignored"


@dataclass
class EventResult:
    """Result of applying a realtime event.

    Attributes:
        event: The event
        action: What was done with it
        keys: Keys that were patched or invalidated
    """

    event: RealtimeEvent
    action: EventAction
    keys: list[QueryKey] = field(default_factory=list)


class RealtimeSubscriber:
    """Applies change feed events to a CacheStore.

    Thread safety:
        Not thread-safe. Feed callbacks must run on the event loop thread.

    Example:
        >>> subscriber = RealtimeSubscriber(
        ...     store, feed, [TableBinding("users", (("users",),))]
        ... )
        >>> unwatch = subscriber.watch("users")
        >>> ...
        >>> unwatch()
    """

    def __init__(
        self,
        store: CacheStore,
        feed: ChangeFeed | None = None,
        bindings: Iterable[TableBinding] = (),
        config: RealtimeConfig | None = None,
    ) -> None:
        """Initialize the subscriber.

        Args:
            store: Cache to write to
            feed: Change feed to subscribe with (None for manual delivery)
            bindings: Table to cache key bindings
            config: Reconnect and polling settings
        """
        self.store = store
        self.feed = feed
        self.config = config or RealtimeConfig()
        self._bindings: dict[str, TableBinding] = {}
        for binding in bindings:
            self.bind(binding)

        self._refcounts: dict[str, int] = {}
        self._feed_handles: dict[str, Unsubscribe | None] = {}
        self._last_applied: dict[tuple[str, Any], float] = {}
        self._connected = True
        self._error_streak = 0
        self._poll_task: asyncio.Task | None = None
        self._stopped_polls: set[asyncio.Task] = set()
        self._applied_count = 0
        self._skipped_count = 0
        self._remove_listener: Unsubscribe | None = None
        if feed is not None:
            self._remove_listener = feed.add_connection_listener(self)

    def bind(self, binding: TableBinding) -> None:
        """Register (or replace) the binding for a table."""
        self._bindings[binding.table] = binding

    def binding_for(self, table: str) -> TableBinding | None:
        return self._bindings.get(table)

    # Subscriptions

    def watch(self, table: str) -> Callable[[], None]:
        """Watch a table for the lifetime of a consumer.

        The first watcher opens the feed subscription; the last unwatch
        closes it. If the feed refuses the subscription the table is
        covered by polling instead.

        Returns:
            Idempotent unwatch callable

        Raises:
            KeyError: If the table has no binding
        """
        if table not in self._bindings:
            raise KeyError(f"No cache binding for table {table!r}")

        count = self._refcounts.get(table, 0)
        self._refcounts[table] = count + 1
        if count == 0:
            self._open(table)

        done = False

        def unwatch() -> None:
            nonlocal done
            if done:
                return
            done = True
            self._release(table)

        return unwatch

    def watched_tables(self) -> list[str]:
        return list(self._refcounts)

    def watcher_count(self, table: str) -> int:
        return self._refcounts.get(table, 0)

    def _open(self, table: str) -> None:
        handle = None
        if self.feed is not None:
            try:
                handle = self.feed.subscribe_to_table(table, self.handle_event)
            except ChangeFeedError as e:
                logger.warning(
                    f"Realtime subscription failed, falling back to polling: {e}",
                    extra={"table": table},
                )
                self._start_polling()
        self._feed_handles[table] = handle
        logger.info("Watching table", extra={"table": table})

    def _release(self, table: str) -> None:
        count = self._refcounts.get(table, 0) - 1
        if count > 0:
            self._refcounts[table] = count
            return
        self._refcounts.pop(table, None)
        handle = self._feed_handles.pop(table, None)
        if handle is not None:
            handle()
        logger.info("Stopped watching table", extra={"table": table})
        if not self._refcounts:
            self._stop_polling()

    # Event application

    def handle_event(self, event: RealtimeEvent) -> EventResult:
        """Apply one change event to the cache.

        Args:
            event: Change event from the feed

        Returns:
            EventResult describing what was written
        """
        binding = self._bindings.get(event.table)
        if binding is None:
            logger.debug("Ignoring event for unbound table", extra={"table": event.table})
            return EventResult(event, EventAction.IGNORED)

        if event.event_type == EventType.INSERT:
            result = self._invalidate_for(event, binding)
        elif event.event_type == EventType.DELETE:
            result = self._apply_delete(event, binding)
        else:
            result = self._apply_update(event, binding)

        if result.action == EventAction.SKIPPED:
            self._skipped_count += 1
        elif result.action != EventAction.IGNORED:
            self._applied_count += 1
        logger.debug(
            "Applied realtime event",
            extra={
                "table": event.table,
                "event_type": event.event_type.value,
                "record_id": event.record_id,
                "action": result.action.value,
            },
        )
        return result

    def _apply_delete(self, event: RealtimeEvent, binding: TableBinding) -> EventResult:
        if event.record_id is None:
            return self._invalidate_for(event, binding)

        timestamp = self._event_timestamp(event, binding)
        if self._is_superseded(event.table, event.record_id, timestamp):
            return EventResult(event, EventAction.SKIPPED)

        patched: list[QueryKey] = []
        with self.store.batch():
            for key in self._bound_keys(binding):
                data = self.store.get_data(key)
                if find_record(data, event.record_id, binding.id_field) is None:
                    continue
                self.store.patch(
                    key,
                    lambda old: optimistic_remove(old, event.record_id, binding.id_field),
                )
                patched.append(key)

        self._remember(event.table, event.record_id, timestamp)
        if not patched:
            return EventResult(event, EventAction.SKIPPED)
        return EventResult(event, EventAction.PATCHED, patched)

    def _apply_update(self, event: RealtimeEvent, binding: TableBinding) -> EventResult:
        record = event.record
        if not isinstance(record, dict) or event.record_id is None:
            return self._invalidate_for(event, binding)

        timestamp = self._event_timestamp(event, binding)
        if self._is_superseded(event.table, event.record_id, timestamp):
            return EventResult(event, EventAction.SKIPPED)

        found = False
        patched: list[QueryKey] = []
        with self.store.batch():
            for key in self._bound_keys(binding):
                existing = find_record(self.store.get_data(key), event.record_id, binding.id_field)
                if existing is None:
                    continue
                found = True
                if self._is_older_than_record(timestamp, existing, binding):
                    continue
                if {**existing, **record} == existing:
                    continue
                self.store.patch(
                    key,
                    lambda old: optimistic_update(old, event.record_id, record, binding.id_field),
                )
                patched.append(key)

        if not found:
            # The record may now match a cached filter it did not match before
            return self._invalidate_for(event, binding)

        self._remember(event.table, event.record_id, timestamp)
        if not patched:
            return EventResult(event, EventAction.SKIPPED)
        return EventResult(event, EventAction.PATCHED, patched)

    def _invalidate_for(self, event: RealtimeEvent, binding: TableBinding) -> EventResult:
        keys = self._invalidate_binding(binding)
        return EventResult(event, EventAction.INVALIDATED, keys)

    def _invalidate_binding(self, binding: TableBinding) -> list[QueryKey]:
        keys: list[QueryKey] = []
        for prefix in binding.prefixes():
            keys.extend(self.store.invalidate(prefix))
        return keys

    def _bound_keys(self, binding: TableBinding) -> list[QueryKey]:
        prefixes = binding.prefixes()
        return [k for k in self.store.keys() if any(key_matches(p, k) for p in prefixes)]

    def _event_timestamp(self, event: RealtimeEvent, binding: TableBinding) -> float | None:
        if event.timestamp is not None:
            return event.timestamp
        if event.record is not None and binding.timestamp_field:
            return parse_timestamp(event.record.get(binding.timestamp_field))
        return None

    def _is_superseded(self, table: str, record_id: Any, timestamp: float | None) -> bool:
        if timestamp is None:
            return False
        last = self._last_applied.get((table, record_id))
        return last is not None and timestamp <= last

    def _is_older_than_record(
        self, timestamp: float | None, existing: dict, binding: TableBinding
    ) -> bool:
        if timestamp is None or not binding.timestamp_field:
            return False
        current = parse_timestamp(existing.get(binding.timestamp_field))
        return current is not None and timestamp < current

    def _remember(self, table: str, record_id: Any, timestamp: float | None) -> None:
        if timestamp is None:
            return
        key = (table, record_id)
        if timestamp > self._last_applied.get(key, float("-inf")):
            self._last_applied[key] = timestamp

    # Connection state

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def is_polling(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    def on_disconnect(self, reason: str | None = None) -> None:
        """The channel dropped; cached data keeps being served."""
        self._connected = False
        logger.warning("Realtime channel disconnected", extra={"reason": reason})

    def on_reconnect(self) -> None:
        """The channel is back; refresh everything that may have missed events."""
        self._connected = True
        self._error_streak = 0
        self._stop_polling()
        keys = self.invalidate_watched()
        logger.info("Realtime channel reconnected", extra={"invalidated": len(keys)})

    def on_connection_error(self, error: BaseException) -> None:
        """Count a failed connection attempt; poll after too many in a row."""
        self._connected = False
        self._error_streak += 1
        logger.warning(
            f"Realtime connection error: {error}",
            extra={"attempt": self._error_streak},
        )
        if self._error_streak >= self.config.max_reconnect_attempts:
            self._start_polling()

    def invalidate_watched(self) -> list[QueryKey]:
        """Invalidate every key bound to a watched table."""
        keys: list[QueryKey] = []
        for table in self._refcounts:
            keys.extend(self._invalidate_binding(self._bindings[table]))
        return keys

    def _start_polling(self) -> None:
        if self.is_polling:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running loop; polling fallback not started")
            return
        logger.info(
            "Starting polling fallback",
            extra={"interval": self.config.fallback_poll_interval},
        )
        self._poll_task = loop.create_task(self._poll())

    def _stop_polling(self) -> None:
        if self._poll_task is not None:
            self._poll_task.cancel()
            self._stopped_polls.add(self._poll_task)
            self._poll_task.add_done_callback(self._stopped_polls.discard)
            self._poll_task = None
            logger.info("Stopped polling fallback")

    async def _poll(self) -> None:
        while True:
            await asyncio.sleep(self.config.fallback_poll_interval)
            self.invalidate_watched()

    # Lifecycle

    async def close(self) -> None:
        """Drop every feed subscription and stop polling."""
        for table in list(self._refcounts):
            self._refcounts[table] = 1
            self._release(table)
        self._stop_polling()
        if self._stopped_polls:
            await asyncio.gather(*list(self._stopped_polls), return_exceptions=True)
        if self._remove_listener is not None:
            self._remove_listener()
            self._remove_listener = None

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "watched_tables": self.watched_tables(),
            "applied_count": self._applied_count,
            "skipped_count": self._skipped_count,
            "connected": self._connected,
            "polling": self.is_polling,
        }
