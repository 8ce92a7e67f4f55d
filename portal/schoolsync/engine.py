"""
SchoolSync engine facade.

Wires one CacheStore to the mutation coordinator, the bulk executor and
the realtime subscriber, and exposes the operations screens use:

    async with SyncEngine(config, bindings=[TableBinding("users")]) as engine:
        pending = await engine.use_cached_query(("api", "admin", "users", "pending"))
        unwatch = engine.watch("users")
        await engine.mutate(...)

Invariants:
    - Every component shares the engine's single store instance
    - close() releases feed subscriptions before closing the transport

How to change safely:
    - Keep the facade thin; behaviour lives in the components
    - Anything a screen needs must also be reachable on the components
      directly, so tests can drive them without the facade
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from typing import Any
from urllib.parse import urlencode

import json_log_formatter

from .cache.keys import QueryKey, key_params, key_path, make_query_key
from .cache.query import CachedQuery
from .cache.store import CacheStore, QueryFn
from .config import EngineConfig
from .mutation.bulk import BulkExecutor, BulkOutcome, PerItemRequest
from .mutation.context import MutationResult
from .mutation.coordinator import MutationCoordinator, RequestLike, TransformLike, response_payload
from .mutation.transforms import Reconciler
from .notify import LoggingNotificationSink, NotificationSink, SelectionState
from .realtime.base import ChangeFeed
from .realtime.subscriber import RealtimeSubscriber, TableBinding
from .transport.base import Response, Transport, create_transport

logger = logging.getLogger(__name__)


def setup_logging(config: EngineConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Engine configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def transport_query(transport: Transport) -> QueryFn:
    """Default query function: GET the key rendered as a path.

    ("api", "admin", "users", {"status": "pending"}) fetches
    /api/admin/users?status=pending.
    """

    async def query(key: QueryKey) -> Any:
        path = key_path(key)
        params = key_params(key)
        if params:
            path = f"{path}?{urlencode(sorted(params.items()), doseq=True)}"
        return await response_payload(await transport.request("GET", path))

    return query


class SyncEngine:
    """Optimistic mutation and realtime reconciliation engine.

    Attributes:
        config: Engine configuration
        store: The shared cache store
        transport: API transport
        coordinator: Single mutation coordinator
        bulk: Bulk executor
        realtime: Realtime subscriber
        selection: Selection used by bulk actions by default

    Example:
        >>> engine = SyncEngine(transport=InMemoryTransport())
        >>> await engine.start()
        >>> result = await engine.mutate(
        ...     [("users", "pending")],
        ...     remove_items("u1"),
        ...     RequestSpec("POST", "/api/admin/users/u1/approve"),
        ... )
        >>> await engine.close()
    """

    def __init__(
        self,
        config: EngineConfig | None = None,
        transport: Transport | None = None,
        feed: ChangeFeed | None = None,
        sink: NotificationSink | None = None,
        bindings: Iterable[TableBinding] = (),
    ) -> None:
        """Initialize the engine.

        Args:
            config: Engine configuration (defaults if omitted)
            transport: API transport (HTTP from config if omitted)
            feed: Realtime change feed (none: realtime disabled)
            sink: Notification sink (logging sink if omitted)
            bindings: Table to cache key bindings for realtime events
        """
        self.config = config or EngineConfig()
        self.transport = transport if transport is not None else create_transport(self.config.transport)
        self.sink = sink if sink is not None else LoggingNotificationSink()
        self.selection = SelectionState()
        self.store = CacheStore(self.config.cache, self.config.retry)
        self.store.set_default_query(transport_query(self.transport))
        self.coordinator = MutationCoordinator(self.store, self.transport, self.sink)
        self.bulk = BulkExecutor(
            self.store,
            self.transport,
            self.sink,
            self.selection,
            self.config.bulk,
        )
        self.realtime = RealtimeSubscriber(self.store, feed, bindings, self.config.realtime)
        self._queries: list[CachedQuery] = []
        self._started = False

    async def start(self) -> None:
        """Validate configuration and mark the engine ready."""
        if self._started:
            return
        self.config.validate()
        self.config.log_config()
        self._started = True
        logger.info("Sync engine started")

    async def close(self) -> None:
        """Release queries, feed subscriptions and the transport."""
        for query in self._queries:
            query.close()
        self._queries.clear()
        await self.realtime.close()
        await self.coordinator.wait_settled()
        await self.transport.close()
        self._started = False
        logger.info("Sync engine closed")

    async def __aenter__(self) -> SyncEngine:
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    # Operations

    async def request(self, method: str, path: str, body: Any = None) -> Response:
        """Send a raw request through the engine's transport."""
        return await self.transport.request(method, path, body)

    async def use_cached_query(
        self,
        key: Any,
        query_fn: QueryFn | None = None,
        on_change: Callable[..., None] | None = None,
    ) -> CachedQuery:
        """Observe a key, fetching it when missing or stale.

        Returns:
            The started CachedQuery; close() it when the screen unmounts
        """
        query = CachedQuery(self.store, make_query_key(key), query_fn, on_change)
        await query.start()
        self._queries.append(query)
        return query

    def release_query(self, query: CachedQuery) -> None:
        """Close a query obtained from use_cached_query()."""
        query.close()
        if query in self._queries:
            self._queries.remove(query)

    async def refetch(self, key: Any, *, exact: bool = False) -> dict[QueryKey, BaseException | None]:
        """Invalidate a key (or prefix) and wait for its refetch."""
        return await self.store.invalidate_and_refetch(key, exact=exact)

    def invalidate(self, key: Any, *, exact: bool = False) -> list[QueryKey]:
        return self.store.invalidate(key, exact=exact)

    async def mutate(
        self,
        affected_keys: Iterable[Any],
        optimistic_transform: TransformLike,
        request: RequestLike,
        *,
        reconcile: Reconciler | None = None,
        invalidate_on_success: Iterable[Any] = (),
        success_message: str | None = None,
        error_message: str | None = None,
        raise_on_error: bool = False,
        label: str | None = None,
    ) -> MutationResult:
        """Run an optimistic mutation; see MutationCoordinator.mutate()."""
        return await self.coordinator.mutate(
            affected_keys,
            optimistic_transform,
            request,
            reconcile=reconcile,
            invalidate_on_success=invalidate_on_success,
            success_message=success_message,
            error_message=error_message,
            raise_on_error=raise_on_error,
            label=label,
        )

    async def run_bulk(
        self,
        item_ids: Iterable[Any],
        per_item_request: PerItemRequest,
        **kwargs: Any,
    ) -> BulkOutcome:
        """Run a bulk mutation; see BulkExecutor.run_bulk()."""
        return await self.bulk.run_bulk(item_ids, per_item_request, **kwargs)

    def watch(self, table: str) -> Callable[[], None]:
        """Watch a table for realtime changes; returns an unwatch callable."""
        return self.realtime.watch(table)

    def bind_table(self, binding: TableBinding) -> None:
        self.realtime.bind(binding)

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "cached_keys": len(self.store.keys()),
            "active_queries": len(self._queries),
            "selected": len(self.selection),
            "realtime": self.realtime.stats,
        }
