"""
Tests for QuickBooksTransport.

Retry policy: connection failures, 429 and 5xx are retried up to
HTTP_MAX_ATTEMPTS; everything else is returned on the first answer.
"""

import httpx
import pytest

from qbo_demo.exceptions import TransientTransportError
from qbo_demo.services.transport import is_retryable_status


class TestRetryableStatus:
    def test_retryable(self):
        assert is_retryable_status(429)
        assert is_retryable_status(500)
        assert is_retryable_status(503)

    def test_not_retryable(self):
        for status in (200, 201, 400, 401, 403, 404):
            assert not is_retryable_status(status)


class TestQuickBooksTransport:
    """Tests for the retry loop."""

    @pytest.mark.asyncio
    async def test_success_is_returned_immediately(self, make_transport):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json={"ok": True})

        transport = make_transport(handler)
        response = await transport.get("https://example.test/ok")

        assert response.status_code == 200
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self, make_transport):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(400, json={"error": "invalid_grant"})

        transport = make_transport(handler)
        response = await transport.post("https://example.test/token")

        assert response.status_code == 400
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_server_error_then_success(self, make_transport):
        """A 503 followed by a 200 yields the 200."""
        statuses = iter([503, 200])

        def handler(request):
            return httpx.Response(next(statuses), json={})

        transport = make_transport(handler)
        response = await transport.get("https://example.test/flaky")

        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_rate_limit_exhausts_attempts(self, make_transport):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(429, text="Too Many Requests")

        transport = make_transport(handler)
        with pytest.raises(TransientTransportError) as exc_info:
            await transport.get("https://example.test/limited")

        assert len(calls) == 3
        assert "HTTP 429" in exc_info.value.detail

    @pytest.mark.asyncio
    async def test_connection_errors_exhaust_attempts(self, make_transport):
        calls = []

        def handler(request):
            calls.append(request)
            raise httpx.ConnectError("connection refused", request=request)

        transport = make_transport(handler)
        with pytest.raises(TransientTransportError) as exc_info:
            await transport.get("https://example.test/down")

        assert len(calls) == 3
        assert exc_info.value.message == "QuickBooks is temporarily unreachable. Please try again."
        assert "ConnectError" in exc_info.value.detail
