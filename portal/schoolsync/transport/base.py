"""
Base protocol and types for the API transport.

This module defines the Transport protocol that mutation and query code
uses to reach the portal API, along with the Response and RequestSpec
types shared by all implementations.

Invariants:
    - request() returns a Response for any HTTP answer, ok or not
    - request() raises TransportError only when no answer was obtained
      (network failure, timeout, open circuit)
    - Response bodies are decoded JSON (or raw text when not JSON)

How to change safely:
    - Protocol changes require updating all implementations
    - Keep error classification in errors.classify_status so retry
      decisions stay consistent
"""

from __future__ import annotations

from abc import abstractmethod
from dataclasses import dataclass, field
from typing import (
    Any,
    Dict,
    Optional,
    Protocol,
    runtime_checkable,
    TYPE_CHECKING,
)
import logging

from ..errors import HttpStatusError

if TYPE_CHECKING:
    from ..config import TransportConfig

logger = logging.getLogger(__name__)


@dataclass
class Response:
    """An API response.

    Attributes:
        status: HTTP status code
        body: Decoded body (JSON value, text, or None)
        headers: Response headers
    """

    status: int
    body: Any = None
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        """Whether the status is 2xx."""
        return 200 <= self.status < 300

    async def json(self) -> Any:
        """Decoded body, mirroring fetch's Response.json()."""
        return self.body

    def raise_for_status(self) -> None:
        """Raise HttpStatusError for a non-2xx response."""
        if not self.ok:
            raise HttpStatusError(self.status, self.body)

    def __str__(self) -> str:
        return f"Response(status={self.status})"


@dataclass(frozen=True)
class RequestSpec:
    """A request to send through a Transport.

    Example:
        >>> RequestSpec("POST", "/api/admin/users/u1/approve", {"approved": True})
    """

    method: str
    path: str
    body: Any = None

    async def send(self, transport: Transport) -> Response:
        return await transport.request(self.method, self.path, self.body)


@runtime_checkable
class Transport(Protocol):
    """Protocol for API transports.

    Example:
        >>> transport = HttpTransport(TransportConfig(base_url="http://localhost:5000"))
        >>> response = await transport.request("GET", "/api/users/pending")
        >>> response.ok
        True
    """

    @abstractmethod
    async def request(
        self,
        method: str,
        path: str,
        body: Optional[Any] = None,
    ) -> Response:
        """Send a request.

        Args:
            method: HTTP method
            path: Path relative to the API base URL
            body: JSON-serializable request body

        Returns:
            Response for any HTTP answer

        Raises:
            NetworkError: If the server could not be reached
            RequestTimeoutError: If the request timed out
            CircuitOpenError: If the circuit breaker refused the request
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release connections."""
        ...


def create_transport(config: "TransportConfig") -> Transport:
    """Factory function to create the HTTP transport from configuration.

    Args:
        config: Transport configuration

    Returns:
        HttpTransport, wrapped in a circuit breaker when enabled
    """
    from .circuit_breaker import CircuitBreaker, CircuitBreakerTransport
    from .http import HttpTransport

    transport: Transport = HttpTransport(config)
    if config.circuit_enabled:
        breaker = CircuitBreaker(
            failure_threshold=config.circuit_failure_threshold,
            cooldown=config.circuit_cooldown,
        )
        transport = CircuitBreakerTransport(transport, breaker)
    return transport
