"""
Realtime module for the SchoolSync engine.

This module handles:
- Change feed protocol and the in-memory feed used by tests
- Parsing table change messages into RealtimeEvents
- Applying events to the cache with targeted patches or invalidation

Invariants:
    - Event application is idempotent
    - One feed subscription per watched table, however many watchers

How to change safely:
    - New feed backends implement ChangeFeed and stay ignorant of the cache
    - Test duplicate and replayed delivery for every new event shape
"""

from .base import ChangeFeed, ConnectionListener, EventCallback, Unsubscribe
from .events import EventType, RealtimeEvent, TableChangeMessage, parse_timestamp
from .memory import InMemoryChangeFeed
from .subscriber import EventAction, EventResult, RealtimeSubscriber, TableBinding

__all__ = [
    "ChangeFeed",
    "ConnectionListener",
    "EventCallback",
    "Unsubscribe",
    "EventType",
    "RealtimeEvent",
    "TableChangeMessage",
    "parse_timestamp",
    "InMemoryChangeFeed",
    "RealtimeSubscriber",
    "TableBinding",
    "EventAction",
    "EventResult",
]
