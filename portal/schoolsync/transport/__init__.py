"""
API transport abstraction for the SchoolSync engine.

This module provides a pluggable transport interface supporting:
- HTTP via httpx (production)
- A circuit breaker wrapper for any transport
- In-memory scripted routes (for testing)

Invariants:
    - Any non-ok Response is treated as a mutation failure by callers
    - Timeouts are the transport's concern; callers treat them as failures

How to change safely:
    - New transports must implement the Transport protocol
    - Keep error classification in errors.py
"""

from .base import RequestSpec, Response, Transport, create_transport
from .circuit_breaker import CircuitBreaker, CircuitBreakerTransport, CircuitState
from .http import HttpTransport
from .memory import InMemoryTransport, RecordedRequest

__all__ = [
    # Protocol and types
    "Transport",
    "Response",
    "RequestSpec",
    # Factory
    "create_transport",
    # Implementations
    "HttpTransport",
    "CircuitBreaker",
    "CircuitBreakerTransport",
    "CircuitState",
    "InMemoryTransport",
    "RecordedRequest",
]
