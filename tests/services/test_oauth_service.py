"""
Tests for QuickBooksOAuthService.

Discovery, token and revocation endpoints are served by an
httpx.MockTransport handler.
"""

import base64
import json
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from qbo_demo.config import Settings
from qbo_demo.exceptions import (
    AuthorizationError,
    AuthorizationErrorKind,
    ConfigurationError,
    TokenRefreshError,
    TokenRefreshErrorKind,
    ValidationError,
)
from qbo_demo.services.oauth_service import QuickBooksOAuthService, append_prompts

DISCOVERY = {
    "issuer": "https://oauth.platform.intuit.com/op/v1",
    "authorization_endpoint": "https://appcenter.intuit.com/connect/oauth2",
    "token_endpoint": "https://oauth.platform.intuit.com/oauth2/v1/tokens/bearer",
    "revocation_endpoint": "https://developer.api.intuit.com/v2/oauth2/tokens/revoke",
}

TOKEN_BODY = {
    "access_token": "new-access",
    "refresh_token": "new-refresh",
    "token_type": "bearer",
    "expires_in": 3600,
    "x_refresh_token_expires_in": 8726400,
    "scope": "com.intuit.quickbooks.accounting",
}


class FakeIntuit:
    """Records requests and answers like Intuit's OAuth endpoints."""

    def __init__(self, token_status=200, token_body=None, revoke_status=200):
        self.requests = []
        self.token_status = token_status
        self.token_body = TOKEN_BODY if token_body is None else token_body
        self.revoke_status = revoke_status

    def count(self, url_part):
        return sum(1 for r in self.requests if url_part in str(r.url))

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url)
        if "well-known" in url:
            return httpx.Response(200, json=DISCOVERY)
        if url == DISCOVERY["token_endpoint"]:
            return httpx.Response(self.token_status, json=self.token_body)
        if url == DISCOVERY["revocation_endpoint"]:
            return httpx.Response(self.revoke_status)
        return httpx.Response(404)


@pytest.fixture
def intuit():
    return FakeIntuit()


@pytest.fixture
def oauth(test_settings, make_transport, intuit):
    return QuickBooksOAuthService(test_settings, make_transport(intuit))


class TestConfiguration:
    """validate_configuration names the first bad field."""

    def test_missing_client_id(self, make_transport, intuit):
        service = QuickBooksOAuthService(
            Settings(QBO_CLIENT_ID="", QBO_CLIENT_SECRET="secret"), make_transport(intuit)
        )
        with pytest.raises(ConfigurationError) as exc_info:
            service.validate_configuration()
        assert exc_info.value.field == "QBO_CLIENT_ID"

    def test_redirect_uri_must_be_http(self, make_transport, intuit):
        service = QuickBooksOAuthService(
            Settings(QBO_CLIENT_ID="id", QBO_CLIENT_SECRET="secret", QBO_REDIRECT_URI="ftp://x"),
            make_transport(intuit),
        )
        with pytest.raises(ConfigurationError) as exc_info:
            service.validate_configuration()
        assert exc_info.value.field == "QBO_REDIRECT_URI"

    def test_unknown_environment(self, make_transport, intuit):
        service = QuickBooksOAuthService(
            Settings(QBO_CLIENT_ID="id", QBO_CLIENT_SECRET="secret", QBO_ENVIRONMENT="staging"),
            make_transport(intuit),
        )
        with pytest.raises(ConfigurationError) as exc_info:
            service.validate_configuration()
        assert exc_info.value.field == "QBO_ENVIRONMENT"


class TestAuthorizationUrl:
    """Consent URL construction."""

    @pytest.mark.asyncio
    async def test_url_carries_client_scopes_and_state(self, oauth):
        request = await oauth.build_authorization_url()

        parsed = urlparse(request.url)
        params = parse_qs(parsed.query)
        assert request.url.startswith(DISCOVERY["authorization_endpoint"] + "?")
        assert params["client_id"] == ["client-id"]
        assert params["response_type"] == ["code"]
        assert params["scope"] == ["com.intuit.quickbooks.accounting project-management.project"]
        assert params["redirect_uri"] == ["http://localhost:8000/callback"]
        assert params["state"] == [request.state]
        assert params["prompt"] == ["consent", "login"]
        # Spaces percent-encoded, not '+'
        assert "%20" in request.url

    @pytest.mark.asyncio
    async def test_each_url_has_fresh_state(self, oauth, intuit):
        """State is unique per call; discovery is fetched once."""
        first = await oauth.build_authorization_url()
        second = await oauth.build_authorization_url()

        assert first.state != second.state
        assert len(first.state) >= 32
        assert intuit.count("well-known") == 1

    @pytest.mark.asyncio
    async def test_discovery_unreachable(self, test_settings, make_transport):
        def handler(request):
            raise httpx.ConnectError("down", request=request)

        service = QuickBooksOAuthService(test_settings, make_transport(handler))
        with pytest.raises(AuthorizationError) as exc_info:
            await service.build_authorization_url()
        assert exc_info.value.kind == AuthorizationErrorKind.NETWORK_ERROR

    @pytest.mark.asyncio
    async def test_invalid_discovery_document(self, test_settings, make_transport):
        def handler(request):
            return httpx.Response(200, json={"issuer": "x"})

        service = QuickBooksOAuthService(test_settings, make_transport(handler))
        with pytest.raises(ConfigurationError):
            await service.build_authorization_url()

    def test_append_prompts_keeps_existing(self):
        assert append_prompts("https://a/b?prompt=consent") == "https://a/b?prompt=consent&prompt=login"
        assert append_prompts("https://a/b") == "https://a/b?prompt=consent&prompt=login"


class TestExchangeCode:
    """Authorization-code grant."""

    @pytest.mark.asyncio
    async def test_success(self, oauth, intuit):
        grant = await oauth.exchange_code("auth-code", "123")

        assert grant.access_token == "new-access"
        assert grant.refresh_token == "new-refresh"
        assert grant.realm_id == "123"
        assert grant.bearer_value == "Bearer new-access"

        token_request = [r for r in intuit.requests if str(r.url) == DISCOVERY["token_endpoint"]][0]
        form = parse_qs(token_request.content.decode())
        assert form["grant_type"] == ["authorization_code"]
        assert form["code"] == ["auth-code"]
        assert form["redirect_uri"] == ["http://localhost:8000/callback"]
        expected = base64.b64encode(b"client-id:client-secret").decode()
        assert token_request.headers["Authorization"] == f"Basic {expected}"

    @pytest.mark.asyncio
    async def test_blank_code_rejected_without_network(self, oauth, intuit):
        with pytest.raises(ValidationError):
            await oauth.exchange_code("  ", "123")
        assert intuit.requests == []

    @pytest.mark.asyncio
    async def test_invalid_grant(self, test_settings, make_transport):
        intuit = FakeIntuit(token_status=400, token_body={"error": "invalid_grant"})
        service = QuickBooksOAuthService(test_settings, make_transport(intuit))

        with pytest.raises(AuthorizationError) as exc_info:
            await service.exchange_code("used-code", "123")

        assert exc_info.value.kind == AuthorizationErrorKind.EXPIRED_OR_INVALID_CODE
        assert exc_info.value.clears_callback_marker is True
        assert exc_info.value.message == (
            "Authorization code expired or already used. Please try connecting again."
        )

    @pytest.mark.asyncio
    async def test_invalid_client(self, test_settings, make_transport):
        intuit = FakeIntuit(token_status=401, token_body={"error": "invalid_client"})
        service = QuickBooksOAuthService(test_settings, make_transport(intuit))

        with pytest.raises(AuthorizationError) as exc_info:
            await service.exchange_code("code", "123")
        assert exc_info.value.kind == AuthorizationErrorKind.INVALID_CLIENT
        assert exc_info.value.clears_callback_marker is False

    @pytest.mark.asyncio
    async def test_invalid_scope(self, test_settings, make_transport):
        intuit = FakeIntuit(token_status=400, token_body={"error": "invalid_scope"})
        service = QuickBooksOAuthService(test_settings, make_transport(intuit))

        with pytest.raises(AuthorizationError) as exc_info:
            await service.exchange_code("code", "123")
        assert exc_info.value.kind == AuthorizationErrorKind.INVALID_SCOPE

    @pytest.mark.asyncio
    async def test_malformed_token_body(self, test_settings, make_transport):
        intuit = FakeIntuit(token_body={"token_type": "bearer"})
        service = QuickBooksOAuthService(test_settings, make_transport(intuit))

        with pytest.raises(AuthorizationError) as exc_info:
            await service.exchange_code("code", "123")
        assert exc_info.value.kind == AuthorizationErrorKind.UNEXPECTED


class TestRefresh:
    """Refresh-token grant."""

    @pytest.mark.asyncio
    async def test_missing_refresh_token_makes_no_call(self, oauth, intuit):
        with pytest.raises(TokenRefreshError) as exc_info:
            await oauth.refresh(None)

        assert exc_info.value.kind == TokenRefreshErrorKind.MISSING_REFRESH_TOKEN
        assert exc_info.value.message == "No refresh token available. Please re-authenticate."
        assert intuit.requests == []

    @pytest.mark.asyncio
    async def test_rotated_refresh_token(self, oauth):
        grant = await oauth.refresh("old-refresh")
        assert grant.access_token == "new-access"
        assert grant.refresh_token == "new-refresh"

    @pytest.mark.asyncio
    async def test_previous_refresh_token_kept(self, test_settings, make_transport):
        """Without a rotated token the one passed in stays valid."""
        intuit = FakeIntuit(token_body={"access_token": "a2", "expires_in": 3600})
        service = QuickBooksOAuthService(test_settings, make_transport(intuit))

        grant = await service.refresh("old-refresh")
        assert grant.refresh_token == "old-refresh"

    @pytest.mark.asyncio
    async def test_expired_refresh_token(self, test_settings, make_transport):
        intuit = FakeIntuit(token_status=400, token_body={"error": "invalid_grant"})
        service = QuickBooksOAuthService(test_settings, make_transport(intuit))

        with pytest.raises(TokenRefreshError) as exc_info:
            await service.refresh("stale")
        assert exc_info.value.kind == TokenRefreshErrorKind.INVALID_OR_EXPIRED_REFRESH_TOKEN


class TestRevoke:
    """Best-effort revocation."""

    @pytest.mark.asyncio
    async def test_posts_token(self, oauth, intuit):
        await oauth.revoke("some-token")

        revoke_request = [r for r in intuit.requests if str(r.url) == DISCOVERY["revocation_endpoint"]][0]
        assert json.loads(revoke_request.content) == {"token": "some-token"}

    @pytest.mark.asyncio
    async def test_empty_token_is_noop(self, oauth, intuit):
        await oauth.revoke("")
        assert intuit.requests == []

    @pytest.mark.asyncio
    async def test_failure_is_swallowed(self, test_settings, make_transport):
        intuit = FakeIntuit(revoke_status=500)
        service = QuickBooksOAuthService(test_settings, make_transport(intuit))

        # Must not raise
        await service.revoke("some-token")
        assert intuit.count("revoke") == 3


class TestSandboxScenario:
    @pytest.mark.asyncio
    async def test_invalid_configuration_makes_no_request(self, make_transport, intuit):
        service = QuickBooksOAuthService(Settings(QBO_CLIENT_ID=None), make_transport(intuit))

        with pytest.raises(ConfigurationError):
            await service.build_authorization_url()
        assert intuit.requests == []

    @pytest.mark.asyncio
    async def test_sandbox_discovery_and_default_scopes(self, oauth, intuit):
        request = await oauth.build_authorization_url()

        assert intuit.requests[0].url.path == "/.well-known/openid_sandbox_configuration"
        params = parse_qs(urlparse(request.url).query)
        assert params["client_id"] == ["client-id"]
        assert len(params["redirect_uri"]) == 1
        assert params["scope"][0].split() == [
            "com.intuit.quickbooks.accounting",
            "project-management.project",
        ]
