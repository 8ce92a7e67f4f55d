"""
Circuit breaker for API requests, built on pybreaker.

After fail_max consecutive transport failures the circuit opens and
requests fail fast with CircuitOpenError for cooldown seconds. The first
request after the cooldown is let through (half-open); success closes the
circuit again, failure re-opens it.

Only network, timeout and server (5xx/429) failures count. Client and
auth errors are on pybreaker's exclusion list: the server answered, so
they count as successes.

Invariants:
    - pybreaker owns the failure counter and the state transitions
    - Requests are awaited outside the breaker; only their outcome is
      reported through breaker.call()
"""

from __future__ import annotations

import enum
import logging
import time
from collections.abc import Callable
from typing import Any

import pybreaker

from ..errors import AUTH, CLIENT, SERVER, CircuitOpenError, HttpStatusError, TransportError
from .base import Response, Transport

logger = logging.getLogger(__name__)


class CircuitState(enum.Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


_STATE_MAP = {
    pybreaker.STATE_CLOSED: CircuitState.CLOSED,
    pybreaker.STATE_OPEN: CircuitState.OPEN,
    pybreaker.STATE_HALF_OPEN: CircuitState.HALF_OPEN,
}


def is_caller_error(error: BaseException) -> bool:
    """Whether a failure says nothing about server health."""
    return isinstance(error, TransportError) and error.error_type in (CLIENT, AUTH)


class CircuitStateListener(pybreaker.CircuitBreakerListener):
    """Logs state changes and remembers when the circuit last opened."""

    def __init__(self, clock: Callable[[], float]) -> None:
        self._clock = clock
        self.opened_at = 0.0

    def state_change(self, cb: pybreaker.CircuitBreaker, old_state: Any, new_state: Any) -> None:
        name = new_state.name
        if name == pybreaker.STATE_OPEN:
            self.opened_at = self._clock()
            logger.warning(
                "Circuit breaker opened",
                extra={"breaker": cb.name, "failures": cb.fail_counter},
            )
        elif name == pybreaker.STATE_HALF_OPEN:
            logger.info("Circuit breaker half-open", extra={"breaker": cb.name})
        else:
            logger.info("Circuit breaker closed", extra={"breaker": cb.name})


class CircuitBreaker:
    """Consecutive-failure circuit breaker for async requests.

    pybreaker's call() is synchronous, so the request itself is awaited
    first and its outcome is then replayed through the breaker.

    Example:
        >>> breaker = CircuitBreaker(failure_threshold=5, cooldown=60)
        >>> breaker.before_request()
        >>> breaker.record_failure(NetworkError())
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        cooldown: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        name: str = "portal_api",
    ) -> None:
        """Initialize the breaker.

        Args:
            failure_threshold: Consecutive failures before the circuit opens
            cooldown: Seconds to stay open before letting a trial request through
            clock: Monotonic clock used for the cooldown
            name: Breaker name used in logs
        """
        self.cooldown = cooldown
        self._clock = clock
        self._listener = CircuitStateListener(clock)
        self.breaker = pybreaker.CircuitBreaker(
            fail_max=failure_threshold,
            reset_timeout=cooldown,
            exclude=[is_caller_error],
            listeners=[self._listener],
            name=name,
        )

    @property
    def failure_threshold(self) -> int:
        return self.breaker.fail_max

    @property
    def state(self) -> CircuitState:
        self._half_open_if_cooled_down()
        return _STATE_MAP[self.breaker.current_state]

    @property
    def failures(self) -> int:
        return self.breaker.fail_counter

    def before_request(self) -> None:
        """Raise CircuitOpenError if requests are currently refused."""
        if self.state == CircuitState.OPEN:
            retry_after = self.cooldown - (self._clock() - self._listener.opened_at)
            raise CircuitOpenError(retry_after=max(retry_after, 0.0))

    def record_success(self) -> None:
        self._report(None)

    def record_failure(self, error: TransportError | None = None) -> None:
        self._report(error or TransportError("Request failed", error_type=SERVER))

    def reset(self) -> None:
        """Manually close the circuit."""
        self.breaker.close()
        logger.info("Circuit breaker manually reset", extra={"breaker": self.breaker.name})

    def _half_open_if_cooled_down(self) -> None:
        if self.breaker.current_state != pybreaker.STATE_OPEN:
            return
        if self._clock() - self._listener.opened_at >= self.cooldown:
            self.breaker.half_open()

    def _report(self, error: TransportError | None) -> None:
        def outcome() -> None:
            if error is not None:
                raise error

        try:
            self.breaker.call(outcome)
        except pybreaker.CircuitBreakerError:
            # The failure tripped the circuit, or it was already open
            pass
        except TransportError:
            # The replayed failure; the caller raises the original
            pass


class CircuitBreakerTransport:
    """Transport wrapper that routes requests through a CircuitBreaker."""

    def __init__(self, inner: Transport, breaker: CircuitBreaker | None = None) -> None:
        self.inner = inner
        self.breaker = breaker or CircuitBreaker()

    async def request(self, method: str, path: str, body: Any = None) -> Response:
        self.breaker.before_request()
        try:
            response = await self.inner.request(method, path, body)
        except TransportError as e:
            self.breaker.record_failure(e)
            raise

        if response.ok:
            self.breaker.record_success()
        else:
            self.breaker.record_failure(HttpStatusError(response.status, response.body))
        return response

    async def close(self) -> None:
        await self.inner.close()
