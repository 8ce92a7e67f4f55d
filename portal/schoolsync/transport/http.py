"""
HTTP transport for the portal API, built on httpx.

Invariants:
    - Non-2xx answers are returned as Response objects, never raised
    - Timeouts raise RequestTimeoutError; connection failures raise NetworkError
    - The bearer token is sent on every request when configured

How to change safely:
    - Keep the error mapping in sync with errors.classify_status
    - Test against httpx.MockTransport rather than a live server
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from ..config import TransportConfig
from ..errors import NetworkError, RequestTimeoutError
from .base import Response

logger = logging.getLogger(__name__)


class HttpTransport:
    """Transport that talks to the portal API over HTTP.

    Example:
        >>> async with HttpTransport(TransportConfig(base_url="http://localhost:5000")) as api:
        ...     response = await api.request("POST", "/api/admin/users/u1/approve")
    """

    def __init__(
        self,
        config: TransportConfig | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the transport.

        Args:
            config: Transport configuration
            client: Pre-built client (tests pass one with a MockTransport)
        """
        self.config = config or TransportConfig()
        headers = {"Accept": "application/json"}
        if self.config.token:
            headers["Authorization"] = f"Bearer {self.config.token}"
        self._client = client or httpx.AsyncClient(
            base_url=self.config.base_url,
            headers=headers,
            timeout=self.config.timeout,
        )
        if client is not None and self.config.token:
            self._client.headers["Authorization"] = f"Bearer {self.config.token}"

    async def request(self, method: str, path: str, body: Any = None) -> Response:
        """Send a request and decode the answer."""
        kwargs: dict[str, Any] = {}
        if body is not None and method.upper() in ("POST", "PUT", "PATCH", "DELETE"):
            kwargs["json"] = body

        try:
            raw = await self._client.request(method.upper(), path, **kwargs)
        except httpx.TimeoutException as e:
            logger.warning(
                "Request timed out",
                extra={"method": method, "path": path, "error": str(e)},
            )
            raise RequestTimeoutError() from e
        except httpx.TransportError as e:
            logger.warning(
                "Request failed",
                extra={"method": method, "path": path, "error": str(e)},
            )
            raise NetworkError(
                "Network connection failed - please check your internet connection"
            ) from e

        response = Response(
            status=raw.status_code,
            body=_decode(raw),
            headers=dict(raw.headers),
        )
        if not response.ok:
            logger.debug(
                "Request returned error status",
                extra={"method": method, "path": path, "status": raw.status_code},
            )
        return response

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> HttpTransport:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()


def _decode(raw: httpx.Response) -> Any:
    if not raw.content:
        return None
    content_type = raw.headers.get("content-type", "")
    if "application/json" in content_type:
        try:
            return raw.json()
        except ValueError:
            return raw.text
    if "text/html" in content_type:
        # Error pages from proxies are useless to the user; replace them
        if raw.status_code == 401:
            return {"message": "Your session has expired. Please log in again."}
        if raw.status_code >= 500:
            return {"message": "Internal server error. Please try again in a moment."}
        return {"message": f"Server error ({raw.status_code}). Please try again."}
    return raw.text
