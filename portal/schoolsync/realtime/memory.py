"""
In-memory change feed implementation for testing.

This module provides a change feed without a socket server for:
- Unit tests
- Integration tests that interleave mutations with realtime events
- Local development

Invariants:
    - Events are delivered on the event loop via call_soon, never inline
      from publish()
    - Only tables with an open subscription receive events
    - Every published event is kept in history so tests can replay it

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep interface compatible with the ChangeFeed protocol
    - Add features to help with testing scenarios
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional, Union

from ..errors import ChangeFeedError
from .base import ConnectionListener, EventCallback, Unsubscribe
from .events import RealtimeEvent

logger = logging.getLogger(__name__)


class InMemoryChangeFeed:
    """In-memory implementation of ChangeFeed for testing.

    Thread safety:
        Not thread-safe. Use from the event loop thread only.

    Example:
        >>> feed = InMemoryChangeFeed()
        >>> unsubscribe = feed.subscribe_to_table("users", print)
        >>> feed.publish(RealtimeEvent.delete("users", "u1"))
        >>> await feed.flush()
    """

    def __init__(self) -> None:
        self._subscribers: Dict[str, List[EventCallback]] = {}
        self._listeners: List[ConnectionListener] = []
        self._history: List[RealtimeEvent] = []
        self._connected = True
        self._fail_subscribe: Optional[Exception] = None
        self._delivered = 0

    @property
    def is_connected(self) -> bool:
        return self._connected

    def subscribe_to_table(self, table: str, on_event: EventCallback) -> Unsubscribe:
        """Start delivering events for a table to on_event.

        Raises:
            ChangeFeedError: If a subscribe failure was injected
        """
        if self._fail_subscribe is not None:
            error = self._fail_subscribe
            raise ChangeFeedError(f"Failed to subscribe to {table}: {error}", table=table) from error

        callbacks = self._subscribers.setdefault(table, [])
        callbacks.append(on_event)
        logger.debug("Table subscription opened", extra={"table": table})
        done = False

        def unsubscribe() -> None:
            nonlocal done
            if done:
                return
            done = True
            remaining = self._subscribers.get(table, [])
            if on_event in remaining:
                remaining.remove(on_event)
            if not remaining:
                self._subscribers.pop(table, None)
            logger.debug("Table subscription closed", extra={"table": table})

        return unsubscribe

    def add_connection_listener(self, listener: ConnectionListener) -> Unsubscribe:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def publish(self, event: Union[RealtimeEvent, Dict[str, Any]]) -> RealtimeEvent:
        """Schedule delivery of an event to the table's subscribers.

        Args:
            event: A RealtimeEvent or a wire message dict

        Returns:
            The published event
        """
        if isinstance(event, dict):
            event = RealtimeEvent.from_message(event)
        self._history.append(event)
        if not self._connected:
            logger.debug("Feed disconnected; event not delivered", extra={"table": event.table})
            return event

        loop = asyncio.get_running_loop()
        for callback in list(self._subscribers.get(event.table, [])):
            loop.call_soon(self._deliver, callback, event)
        return event

    def _deliver(self, callback: EventCallback, event: RealtimeEvent) -> None:
        # A callback that was unsubscribed after scheduling gets nothing
        if callback not in self._subscribers.get(event.table, []):
            return
        self._delivered += 1
        callback(event)

    async def flush(self) -> None:
        """Let scheduled deliveries run."""
        await asyncio.sleep(0)
        await asyncio.sleep(0)

    # Testing helpers

    def subscription_count(self, table: Optional[str] = None) -> int:
        """Number of open subscriptions, for one table or all tables."""
        if table is not None:
            return len(self._subscribers.get(table, []))
        return sum(len(callbacks) for callbacks in self._subscribers.values())

    @property
    def history(self) -> List[RealtimeEvent]:
        return list(self._history)

    @property
    def delivered_count(self) -> int:
        return self._delivered

    def replay(self, table: Optional[str] = None) -> int:
        """Re-publish past events, as a feed may do after reconnecting.

        Returns:
            Number of events replayed
        """
        events = [e for e in self._history if table is None or e.table == table]
        loop = asyncio.get_running_loop()
        for event in events:
            for callback in list(self._subscribers.get(event.table, [])):
                loop.call_soon(self._deliver, callback, event)
        return len(events)

    def inject_subscribe_failure(self, error: Optional[Exception]) -> None:
        """Make subscribe_to_table() fail with error (None to clear)."""
        self._fail_subscribe = error

    def simulate_disconnect(self, reason: str = "transport close") -> None:
        self._connected = False
        for listener in list(self._listeners):
            listener.on_disconnect(reason)

    def simulate_connection_error(self, error: Optional[Exception] = None) -> None:
        self._connected = False
        error = error or ChangeFeedError("Connection refused")
        for listener in list(self._listeners):
            listener.on_connection_error(error)

    def simulate_reconnect(self) -> None:
        self._connected = True
        for listener in list(self._listeners):
            listener.on_reconnect()
