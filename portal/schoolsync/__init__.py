"""
SchoolSync - optimistic mutation and realtime reconciliation for the school portal.

This package keeps the portal's query cache consistent with the server
while screens apply writes optimistically:

    ┌──────────────┐   mutate / run_bulk   ┌──────────────────────┐
    │   Screens    │──────────────────────▶│ MutationCoordinator  │
    │ (CachedQuery)│                       │ BulkExecutor         │
    └──────┬───────┘                       └──────────┬───────────┘
           │ subscribe                                │ snapshot / patch / restore
           ▼                                          ▼
    ┌──────────────────────────────────────────────────────────────┐
    │                   CacheStore (versioned)                     │
    └──────────────────────────────────────────────────────────────┘
           ▲ patch / invalidate                       ▲ refetch
    ┌──────┴───────────┐                       ┌──────┴───────┐
    │RealtimeSubscriber│◀── ChangeFeed          │  Transport   │──▶ Portal API
    └──────────────────┘                       └──────────────┘

Invariants:
    - The CacheStore is the only shared mutable state and is injected,
      never global
    - Every data write bumps the entry version; rollbacks never overwrite
      a newer write
    - Realtime application is idempotent

How to change safely:
    - Route every cache write through CacheStore
    - Re-run the interleaving scenarios in tests/integration
"""

from ._version import __version__
from .config import EngineConfig
from .engine import SyncEngine, setup_logging

__all__ = ["__version__", "EngineConfig", "SyncEngine", "setup_logging"]
