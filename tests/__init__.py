"""
SchoolSync Test Suite.

This package contains:
- unit/: Unit tests (no network, in-memory transport and feed)
- integration/: Interleaving scenarios across store, mutations and realtime
"""
