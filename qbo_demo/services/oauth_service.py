"""
QuickBooks OAuth 2.0 lifecycle.

Authorization URL -> code exchange -> refresh -> revoke, against the
endpoints published in Intuit's OpenID discovery document for the
configured environment. Failures are classified from the HTTP status and
the OAuth ``error`` field of the token endpoint's answer.

The service never reads or writes the browser session; the callback route
owns the idempotency marker and the stored tokens.
"""
import logging
import secrets
from typing import Optional
from urllib.parse import quote, urlencode

import httpx
from pydantic import ValidationError as SchemaValidationError

from qbo_demo.config import PRODUCTION, SANDBOX, Settings, settings as default_settings
from qbo_demo.exceptions import (
    AuthorizationError,
    AuthorizationErrorKind,
    ConfigurationError,
    QuickBooksError,
    TokenRefreshError,
    TokenRefreshErrorKind,
    TransientTransportError,
    ValidationError,
)
from qbo_demo.schemas.oauth import (
    AuthorizationRequest,
    DiscoveryDocument,
    TokenErrorResponse,
    TokenGrant,
    TokenResponse,
)
from qbo_demo.services.transport import QuickBooksTransport

logger = logging.getLogger(__name__)

DISCOVERY_URLS = {
    SANDBOX: "https://developer.api.intuit.com/.well-known/openid_sandbox_configuration",
    PRODUCTION: "https://developer.api.intuit.com/.well-known/openid_configuration",
}


def _oauth_error(response: httpx.Response) -> str:
    """The RFC 6749 ``error`` code of a failed token response, or ""."""
    try:
        return TokenErrorResponse.model_validate(response.json()).error
    except (ValueError, SchemaValidationError):
        return ""


def append_prompts(url: str) -> str:
    """Force the consent screen and a fresh login on every attempt."""
    if "prompt=" not in url:
        url += ("&" if "?" in url else "?") + "prompt=consent"
    if "prompt=login" not in url:
        url += "&prompt=login"
    return url


class QuickBooksOAuthService:
    """Intuit OAuth2 client for the single-session demo flow."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[QuickBooksTransport] = None,
    ):
        self.settings = settings or default_settings
        self.transport = transport or QuickBooksTransport(self.settings)
        # environment -> discovery document
        self._discovery: dict[str, DiscoveryDocument] = {}

    # ── Configuration ───────────────────────────────────────────

    def validate_configuration(self) -> None:
        """Raise ConfigurationError naming the first missing/invalid field."""
        s = self.settings
        if not s.QBO_CLIENT_ID or not s.QBO_CLIENT_ID.strip():
            raise ConfigurationError("QBO_CLIENT_ID", "Client ID is required but not configured")
        if not s.QBO_CLIENT_SECRET or not s.QBO_CLIENT_SECRET.strip():
            raise ConfigurationError("QBO_CLIENT_SECRET", "Client Secret is required but not configured")
        redirect_uri = (s.QBO_REDIRECT_URI or "").strip()
        if not redirect_uri:
            raise ConfigurationError("QBO_REDIRECT_URI", "Redirect URI is required but not configured")
        if not redirect_uri.startswith(("http://", "https://")):
            raise ConfigurationError("QBO_REDIRECT_URI", "Redirect URI must start with http:// or https://")
        if s.QBO_ENVIRONMENT not in (SANDBOX, PRODUCTION):
            raise ConfigurationError("QBO_ENVIRONMENT", "Environment must be 'sandbox' or 'production'")

    @property
    def _client_auth(self) -> tuple[str, str]:
        return (self.settings.QBO_CLIENT_ID.strip(), self.settings.QBO_CLIENT_SECRET.strip())

    @property
    def _redirect_uri(self) -> str:
        return self.settings.QBO_REDIRECT_URI.strip()

    async def get_discovery(self) -> DiscoveryDocument:
        """
        Discovery document for the configured environment, fetched once.

        Raises:
            TransientTransportError: discovery endpoint unreachable
            ConfigurationError: discovery answered with something unusable
        """
        environment = self.settings.QBO_ENVIRONMENT
        cached = self._discovery.get(environment)
        if cached is not None:
            return cached

        url = DISCOVERY_URLS[environment]
        response = await self.transport.get(url, headers={"Accept": "application/json"})
        if response.status_code != 200:
            raise ConfigurationError(
                "QBO_ENVIRONMENT",
                f"OAuth configuration error: discovery returned HTTP {response.status_code}",
            )
        try:
            document = DiscoveryDocument.model_validate(response.json())
        except (ValueError, SchemaValidationError) as e:
            raise ConfigurationError(
                "QBO_ENVIRONMENT", f"OAuth configuration error: invalid discovery document ({e})"
            ) from e

        logger.info(f"Loaded OAuth discovery document for {environment}")
        self._discovery[environment] = document
        return document

    # ── Authorization URL ───────────────────────────────────────

    async def build_authorization_url(self) -> AuthorizationRequest:
        """Consent-screen URL with a fresh state."""
        self.validate_configuration()

        try:
            discovery = await self.get_discovery()
        except TransientTransportError as e:
            raise AuthorizationError(
                AuthorizationErrorKind.NETWORK_ERROR,
                "Unable to connect to QuickBooks OAuth service. Please try again.",
                detail=e.detail,
            ) from e

        state = secrets.token_urlsafe(32)
        params = [
            ("client_id", self.settings.QBO_CLIENT_ID.strip()),
            ("response_type", "code"),
            ("scope", " ".join(self.settings.requested_scopes)),
            ("redirect_uri", self._redirect_uri),
            ("state", state),
        ]
        endpoint = discovery.authorization_endpoint
        url = endpoint + ("&" if "?" in endpoint else "?") + urlencode(params, quote_via=quote)
        return AuthorizationRequest(url=append_prompts(url), state=state)

    # ── Code exchange ───────────────────────────────────────────

    async def exchange_code(self, code: str, realm_id: str) -> TokenGrant:
        """
        Exchange an authorization code for tokens.

        Raises:
            ValidationError: code or realm id blank
            ConfigurationError: client credentials / redirect URI missing
            AuthorizationError: provider refused, or could not be reached
        """
        if not code or not code.strip():
            raise ValidationError("Authorization code is required")
        if not realm_id or not realm_id.strip():
            raise ValidationError("Realm ID is required")
        self.validate_configuration()

        try:
            discovery = await self.get_discovery()
            response = await self.transport.post(
                discovery.token_endpoint,
                data={
                    "grant_type": "authorization_code",
                    "code": code,
                    "redirect_uri": self._redirect_uri,
                },
                auth=self._client_auth,
                headers={"Accept": "application/json"},
            )
        except TransientTransportError as e:
            raise AuthorizationError(
                AuthorizationErrorKind.NETWORK_ERROR,
                "Network error during token exchange. Please try again.",
                detail=e.detail,
            ) from e

        if response.status_code != 200:
            raise self._classify_exchange_failure(response)

        token = self._parse_token_response(response)
        if token is None:
            raise AuthorizationError(
                AuthorizationErrorKind.UNEXPECTED,
                "Unexpected error during token exchange: malformed token response",
                detail=response.text[:500],
            )

        logger.info(f"Exchanged authorization code for realm {realm_id}")
        return TokenGrant(
            access_token=token.access_token,
            refresh_token=token.refresh_token,
            expires_in=token.expires_in,
            x_refresh_token_expires_in=token.x_refresh_token_expires_in,
            scope=token.scope,
            realm_id=realm_id,
        )

    def _classify_exchange_failure(self, response: httpx.Response) -> AuthorizationError:
        error = _oauth_error(response)
        detail = f"HTTP {response.status_code}: {response.text[:500]}"
        logger.warning(f"Token exchange failed: status={response.status_code} error={error or '-'}")

        if error == "invalid_grant":
            return AuthorizationError(
                AuthorizationErrorKind.EXPIRED_OR_INVALID_CODE,
                "Authorization code expired or already used. Please try connecting again.",
                detail=detail,
            )
        if error == "invalid_client" or response.status_code == 401:
            return AuthorizationError(
                AuthorizationErrorKind.INVALID_CLIENT,
                "Invalid client credentials (invalid_client). Check Client ID/Secret and Redirect URI.",
                detail=detail,
            )
        if error == "invalid_scope":
            return AuthorizationError(
                AuthorizationErrorKind.INVALID_SCOPE,
                "Invalid scope. Check the scopes configured for this app.",
                detail=detail,
            )
        return AuthorizationError(
            AuthorizationErrorKind.UNEXPECTED,
            f"OAuth token exchange failed (HTTP {response.status_code}).",
            detail=detail,
        )

    # ── Refresh ─────────────────────────────────────────────────

    async def refresh(self, refresh_token: Optional[str]) -> TokenGrant:
        """
        Refresh-token grant. The returned grant always carries a refresh
        token: the rotated one, or the one passed in.
        """
        if not refresh_token or not refresh_token.strip():
            raise TokenRefreshError(
                TokenRefreshErrorKind.MISSING_REFRESH_TOKEN,
                "No refresh token available. Please re-authenticate.",
            )
        self.validate_configuration()

        try:
            discovery = await self.get_discovery()
            response = await self.transport.post(
                discovery.token_endpoint,
                data={"grant_type": "refresh_token", "refresh_token": refresh_token},
                auth=self._client_auth,
                headers={"Accept": "application/json"},
            )
        except TransientTransportError as e:
            raise TokenRefreshError(
                TokenRefreshErrorKind.NETWORK_ERROR,
                "Network error during token refresh. Please try again.",
                detail=e.detail,
            ) from e

        if response.status_code != 200:
            error = _oauth_error(response)
            detail = f"HTTP {response.status_code}: {response.text[:500]}"
            logger.warning(f"Token refresh failed: status={response.status_code} error={error or '-'}")
            if error == "invalid_grant":
                raise TokenRefreshError(
                    TokenRefreshErrorKind.INVALID_OR_EXPIRED_REFRESH_TOKEN,
                    "Refresh token is invalid or expired. Please reconnect to QuickBooks.",
                    detail=detail,
                )
            if error == "invalid_client" or response.status_code == 401:
                raise TokenRefreshError(
                    TokenRefreshErrorKind.INVALID_CLIENT,
                    "Invalid client credentials during token refresh.",
                    detail=detail,
                )
            raise TokenRefreshError(
                TokenRefreshErrorKind.UNEXPECTED,
                f"Token refresh failed (HTTP {response.status_code}).",
                detail=detail,
            )

        token = self._parse_token_response(response)
        if token is None:
            raise TokenRefreshError(
                TokenRefreshErrorKind.UNEXPECTED,
                "Unexpected error during token refresh: malformed token response",
                detail=response.text[:500],
            )

        logger.info("Access token refreshed")
        return TokenGrant(
            access_token=token.access_token,
            refresh_token=token.refresh_token or refresh_token,
            expires_in=token.expires_in,
            x_refresh_token_expires_in=token.x_refresh_token_expires_in,
            scope=token.scope,
        )

    # ── Revoke ──────────────────────────────────────────────────

    async def revoke(self, token: Optional[str]) -> None:
        """Best-effort revocation; never raises."""
        if not token or not token.strip():
            return
        try:
            self.validate_configuration()
            discovery = await self.get_discovery()
            response = await self.transport.post(
                discovery.revocation_endpoint,
                json={"token": token},
                auth=self._client_auth,
                headers={"Accept": "application/json"},
            )
            if response.status_code != 200:
                logger.warning(f"Token revocation returned HTTP {response.status_code}")
        except (QuickBooksError, httpx.HTTPError) as e:
            logger.warning(f"Token revocation failed, continuing: {e}")

    @staticmethod
    def _parse_token_response(response: httpx.Response) -> Optional[TokenResponse]:
        try:
            return TokenResponse.model_validate(response.json())
        except (ValueError, SchemaValidationError):
            return None

    async def close(self) -> None:
        await self.transport.aclose()


# Singleton
_oauth_service: Optional[QuickBooksOAuthService] = None


def get_oauth_service() -> QuickBooksOAuthService:
    global _oauth_service
    if _oauth_service is None:
        _oauth_service = QuickBooksOAuthService()
    return _oauth_service
