"""
Base protocol for realtime change feeds.

A change feed pushes RealtimeEvents for the tables it is asked to watch
and reports connection state changes. The portal uses a socket channel;
tests use InMemoryChangeFeed.

Invariants:
    - Callbacks run on the event loop thread, never concurrently
    - subscribe_to_table() returns an unsubscribe callable; calling it
      more than once is harmless
    - Delivery may be out of order and may repeat events after a reconnect

How to change safely:
    - Protocol changes require updating all implementations
    - Feeds must not apply events to the cache themselves
"""

from __future__ import annotations

from abc import abstractmethod
from typing import Callable, Optional, Protocol, runtime_checkable

from .events import RealtimeEvent

EventCallback = Callable[[RealtimeEvent], None]
Unsubscribe = Callable[[], None]


@runtime_checkable
class ConnectionListener(Protocol):
    """Receives connection state changes from a change feed."""

    def on_reconnect(self) -> None: ...

    def on_disconnect(self, reason: Optional[str] = None) -> None: ...

    def on_connection_error(self, error: BaseException) -> None: ...


@runtime_checkable
class ChangeFeed(Protocol):
    """Protocol for realtime change feed backends.

    Example:
        >>> unsubscribe = feed.subscribe_to_table("users", subscriber.handle_event)
        >>> ...
        >>> unsubscribe()
    """

    @abstractmethod
    def subscribe_to_table(self, table: str, on_event: EventCallback) -> Unsubscribe:
        """Start receiving change events for a table.

        Raises:
            ChangeFeedError: If the subscription could not be opened
        """
        ...

    @abstractmethod
    def add_connection_listener(self, listener: ConnectionListener) -> Unsubscribe:
        """Register for connect/disconnect/error notifications."""
        ...
