"""
Unit tests for the httpx transport.

Uses httpx.MockTransport, so no server is needed.
"""

import json

import httpx
import pytest

from portal.schoolsync.config import TransportConfig
from portal.schoolsync.errors import NetworkError, RequestTimeoutError
from portal.schoolsync.transport.base import create_transport
from portal.schoolsync.transport.circuit_breaker import CircuitBreakerTransport
from portal.schoolsync.transport.http import HttpTransport


def make_transport(handler, token=None):
    client = httpx.AsyncClient(
        transport=httpx.MockTransport(handler),
        base_url="http://portal.test",
    )
    return HttpTransport(TransportConfig(base_url="http://portal.test", token=token), client=client)


class TestHttpTransport:
    """Tests for HttpTransport."""

    @pytest.mark.asyncio
    async def test_json_response(self):
        def handler(request):
            assert request.url.path == "/api/admin/users/pending"
            return httpx.Response(200, json=[{"id": "u1"}])

        async with make_transport(handler) as transport:
            response = await transport.request("GET", "/api/admin/users/pending")
        assert response.ok
        assert await response.json() == [{"id": "u1"}]

    @pytest.mark.asyncio
    async def test_sends_json_body_and_token(self):
        seen = {}

        def handler(request):
            seen["auth"] = request.headers.get("Authorization")
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"id": "u1", "status": "approved"})

        async with make_transport(handler, token="abc") as transport:
            await transport.request("POST", "/api/admin/users/u1/approve", {"approved": True})
        assert seen == {"auth": "Bearer abc", "body": {"approved": True}}

    @pytest.mark.asyncio
    async def test_error_status_is_returned_not_raised(self):
        def handler(request):
            return httpx.Response(422, json={"message": "Invalid email"})

        async with make_transport(handler) as transport:
            response = await transport.request("POST", "/api/users", {"email": "x"})
        assert not response.ok
        assert response.status == 422
        assert response.body == {"message": "Invalid email"}

    @pytest.mark.asyncio
    async def test_html_error_page_replaced(self):
        def handler(request):
            return httpx.Response(502, html="<html><body>Bad Gateway</body></html>")

        async with make_transport(handler) as transport:
            response = await transport.request("GET", "/api/terms")
        assert response.status == 502
        assert response.body == {"message": "Internal server error. Please try again in a moment."}

    @pytest.mark.asyncio
    async def test_html_session_expired(self):
        def handler(request):
            return httpx.Response(401, html="<html>login</html>")

        async with make_transport(handler) as transport:
            response = await transport.request("GET", "/api/terms")
        assert "session has expired" in response.body["message"]

    @pytest.mark.asyncio
    async def test_timeout_raises_request_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        async with make_transport(handler) as transport:
            with pytest.raises(RequestTimeoutError):
                await transport.request("GET", "/api/terms")

    @pytest.mark.asyncio
    async def test_connection_failure_raises_network_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        async with make_transport(handler) as transport:
            with pytest.raises(NetworkError):
                await transport.request("GET", "/api/terms")

    @pytest.mark.asyncio
    async def test_empty_body(self):
        def handler(request):
            return httpx.Response(204)

        async with make_transport(handler) as transport:
            response = await transport.request("DELETE", "/api/users/u1")
        assert response.ok
        assert response.body is None


class TestCreateTransport:
    """Tests for the transport factory."""

    @pytest.mark.asyncio
    async def test_circuit_breaker_wraps_by_default(self):
        transport = create_transport(TransportConfig())
        assert isinstance(transport, CircuitBreakerTransport)
        await transport.close()

    @pytest.mark.asyncio
    async def test_plain_http_when_circuit_disabled(self):
        transport = create_transport(TransportConfig(circuit_enabled=False))
        assert isinstance(transport, HttpTransport)
        await transport.close()
