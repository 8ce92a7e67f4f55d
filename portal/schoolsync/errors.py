"""
Error types for the SchoolSync engine.

This module defines the exception hierarchy raised or reported by the engine:
- SyncEngineError: Base exception
- TransportError: A request could not be completed (network, timeout, non-2xx)
- QueryError: A query function failed while refetching a cache entry
- MutationError: A single optimistic mutation failed and was rolled back
- BulkError: Every item of a bulk mutation failed
- ChangeFeedError: The realtime change feed misbehaved

Invariants:
    - All errors inherit from SyncEngineError
    - Transport errors carry an error_type used for retry decisions
    - Error messages are safe to show to the user
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

# error_type values, mirroring how the portal classifies failed requests
NETWORK = "network"
TIMEOUT = "timeout"
SERVER = "server"
CLIENT = "client"
AUTH = "auth"

RETRYABLE_ERROR_TYPES = frozenset({NETWORK, TIMEOUT, SERVER})


class SyncEngineError(Exception):
    """Base exception for all SchoolSync engine errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "SYNC_ENGINE_ERROR"
        self.details = details or {}


class TransportError(SyncEngineError):
    """A request to the API failed.

    Raised when:
    - The server could not be reached
    - The request timed out
    - The server answered with a non-2xx status
    - The circuit breaker refused the request
    """

    def __init__(
        self,
        message: str,
        error_type: str = NETWORK,
        code: str = "TRANSPORT_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        merged = {"error_type": error_type}
        merged.update(details or {})
        super().__init__(message, code=code, details=merged)
        self.error_type = error_type


class NetworkError(TransportError):
    """Connection to the API failed."""

    def __init__(self, message: str = "Network connection failed") -> None:
        super().__init__(message, error_type=NETWORK, code="NETWORK_ERROR")


class RequestTimeoutError(TransportError):
    """The API did not answer in time."""

    def __init__(self, message: str = "Request timeout - please try again") -> None:
        super().__init__(message, error_type=TIMEOUT, code="TIMEOUT")


class HttpStatusError(TransportError):
    """The API answered with a non-2xx status.

    Attributes:
        status: HTTP status code
        body: Decoded response body, if any
    """

    def __init__(
        self,
        status: int,
        body: Any = None,
        message: Optional[str] = None,
    ) -> None:
        if message is None:
            message = _message_from_body(body) or f"Request failed with status {status}"
        super().__init__(
            message,
            error_type=classify_status(status),
            code="HTTP_STATUS",
            details={"status": status},
        )
        self.status = status
        self.body = body


class CircuitOpenError(TransportError):
    """The circuit breaker is open and short-circuited the request."""

    def __init__(self, retry_after: float = 0.0) -> None:
        super().__init__(
            "Service temporarily unavailable",
            error_type=SERVER,
            code="CIRCUIT_OPEN",
            details={"retry_after": retry_after},
        )
        self.retry_after = retry_after


class QueryError(SyncEngineError):
    """A query function failed while (re)fetching a cache entry."""

    def __init__(self, message: str, key: tuple, cause: Optional[BaseException] = None) -> None:
        super().__init__(message, code="QUERY_ERROR", details={"key": key})
        self.key = key
        self.cause = cause


class MutationError(SyncEngineError):
    """An optimistic mutation failed and its cache changes were rolled back.

    Attributes:
        stale_keys: Keys whose rollback was skipped because a newer write
            had already landed
        cause: The underlying failure
    """

    def __init__(
        self,
        message: str,
        cause: Optional[BaseException] = None,
        stale_keys: Optional[List[tuple]] = None,
    ) -> None:
        super().__init__(
            message,
            code="MUTATION_FAILED",
            details={"stale_keys": stale_keys or []},
        )
        self.cause = cause
        self.stale_keys = stale_keys or []


class BulkError(SyncEngineError):
    """Every item of a bulk mutation failed."""

    def __init__(self, message: str, failed_ids: Optional[List[Any]] = None) -> None:
        super().__init__(
            message,
            code="BULK_FAILED",
            details={"failed_ids": failed_ids or []},
        )
        self.failed_ids = failed_ids or []


class ChangeFeedError(SyncEngineError):
    """The realtime change feed failed."""

    def __init__(self, message: str, table: Optional[str] = None) -> None:
        super().__init__(message, code="CHANGE_FEED_ERROR", details={"table": table})
        self.table = table


def classify_status(status: int) -> str:
    """Map an HTTP status code to an error_type."""
    if status in (401, 403):
        return AUTH
    if status == 429 or status >= 500:
        return SERVER
    if 400 <= status < 500:
        return CLIENT
    return NETWORK


def is_retryable(error: BaseException) -> bool:
    """Whether a failed query may be retried.

    Auth and client errors are final; network, timeout, server and
    rate-limit failures are retried.
    """
    if isinstance(error, TransportError):
        return error.error_type in RETRYABLE_ERROR_TYPES
    if isinstance(error, QueryError) and error.cause is not None:
        return is_retryable(error.cause)
    return False


def _message_from_body(body: Any) -> Optional[str]:
    if isinstance(body, dict):
        message = body.get("message") or body.get("error")
        if isinstance(message, str) and message:
            return message
    if isinstance(body, str) and body:
        return body
    return None
