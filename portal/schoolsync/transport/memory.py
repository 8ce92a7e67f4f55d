"""
In-memory API transport for testing.

This module provides a scripted transport for:
- Unit tests
- Integration tests of mutation/rollback interleavings
- Local development without a running portal API

Invariants:
    - Routes are matched on (METHOD, path) exactly
    - Unrouted requests answer 404
    - Held routes keep requests in flight until released

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep interface compatible with the Transport protocol
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from .base import Response

logger = logging.getLogger(__name__)

Handler = Union[
    Response,
    BaseException,
    Callable[[Any], Union[Response, Awaitable[Response]]],
]


@dataclass
class RecordedRequest:
    """A request seen by the in-memory transport."""
    method: str
    path: str
    body: Any
    timestamp: float = field(default_factory=time.time)


class InMemoryTransport:
    """Scripted implementation of the Transport protocol.

    Example:
        >>> api = InMemoryTransport()
        >>> api.respond("POST", "/api/admin/users/u1/approve", 200, {"id": "u1", "status": "approved"})
        >>> gate = api.hold("POST", "/api/admin/users/u1/approve")
        >>> task = asyncio.create_task(api.request("POST", "/api/admin/users/u1/approve"))
        >>> gate.set()  # let the request complete
    """

    def __init__(self) -> None:
        self._routes: Dict[Tuple[str, str], Handler] = {}
        self._gates: Dict[Tuple[str, str], asyncio.Event] = {}
        self._in_flight: Dict[Tuple[str, str], int] = defaultdict(int)
        self.requests: List[RecordedRequest] = []
        self.default: Optional[Handler] = None
        self.closed = False

    def route(self, method: str, path: str, handler: Handler) -> None:
        """Register a handler: a Response, an exception to raise, or a
        callable taking the request body and returning a Response."""
        self._routes[(method.upper(), path)] = handler

    def respond(self, method: str, path: str, status: int = 200, body: Any = None) -> None:
        """Register a fixed response."""
        self.route(method, path, Response(status=status, body=body))

    def fail(self, method: str, path: str, error: BaseException) -> None:
        """Make a route raise error instead of answering."""
        self.route(method, path, error)

    def hold(self, method: str, path: str) -> asyncio.Event:
        """Keep requests to a route in flight until the returned event is set."""
        gate = asyncio.Event()
        self._gates[(method.upper(), path)] = gate
        return gate

    async def request(self, method: str, path: str, body: Any = None) -> Response:
        """Answer a request from the route table."""
        route = (method.upper(), path)
        self.requests.append(RecordedRequest(method=route[0], path=path, body=body))
        logger.debug("In-memory request", extra={"method": route[0], "path": path})

        gate = self._gates.get(route)
        if gate is not None:
            self._in_flight[route] += 1
            try:
                await gate.wait()
            finally:
                self._in_flight[route] -= 1

        handler = self._routes.get(route, self.default)
        if handler is None:
            return Response(status=404, body={"message": f"No route for {route[0]} {path}"})
        if isinstance(handler, BaseException):
            raise handler
        if isinstance(handler, Response):
            return handler

        result = handler(body)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def close(self) -> None:
        self.closed = True

    # Testing helpers

    def in_flight(self, method: str, path: str) -> int:
        """Number of requests currently held on a route."""
        return self._in_flight[(method.upper(), path)]

    def requests_to(self, method: str, path: str) -> List[RecordedRequest]:
        """Recorded requests for one route."""
        return [r for r in self.requests if r.method == method.upper() and r.path == path]

    async def wait_for_in_flight(
        self,
        method: str,
        path: str,
        count: int = 1,
        timeout: float = 5.0,
    ) -> bool:
        """Wait until count requests are held on a route.

        Returns:
            True if count reached, False if timeout
        """
        start = time.time()
        while time.time() - start < timeout:
            if self.in_flight(method, path) >= count:
                return True
            await asyncio.sleep(0)
        return False
