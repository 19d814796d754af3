"""
OAuth2 Schemas

Pydantic schemas for the Intuit OAuth2 endpoints.
Follows RFC 6749 OAuth 2.0 specification.
"""

from pydantic import BaseModel, Field
from typing import Optional

from qbo_demo.session import BEARER_PREFIX


# ============================================================================
# Discovery (OpenID Connect)
# ============================================================================


class DiscoveryDocument(BaseModel):
    """Endpoints published in Intuit's OpenID discovery document."""

    issuer: Optional[str] = None
    authorization_endpoint: str = Field(..., description="Where the browser is sent to consent")
    token_endpoint: str = Field(..., description="Code and refresh-token grants")
    revocation_endpoint: str = Field(..., description="Token revocation")
    userinfo_endpoint: Optional[str] = None


# ============================================================================
# Authorization Request
# ============================================================================


class AuthorizationRequest(BaseModel):
    """Redirect target for the consent screen plus the state it carries."""

    url: str
    state: str = Field(..., min_length=32, description="URL-safe CSRF binding value")


# ============================================================================
# Token Response Schemas (RFC 6749)
# ============================================================================


class TokenResponse(BaseModel):
    """
    OAuth2 Token Response as returned by the bearer endpoint.

    Follows RFC 6749 Section 5.1 - Successful Response.
    """

    access_token: str = Field(..., description="The access token")
    token_type: str = Field(default="bearer", description="Token type")
    expires_in: Optional[int] = Field(None, description="Token lifetime in seconds")
    refresh_token: Optional[str] = Field(None, description="Refresh token for obtaining new access tokens")
    x_refresh_token_expires_in: Optional[int] = Field(None, description="Refresh token lifetime in seconds")
    scope: Optional[str] = Field(None, description="Space-separated list of granted scopes")


class TokenErrorResponse(BaseModel):
    """
    OAuth2 Error Response.

    Follows RFC 6749 Section 5.2 - Error Response.
    """

    error: str = Field(
        ...,
        description="Error code: invalid_request, invalid_client, invalid_grant, "
        "unauthorized_client, unsupported_grant_type, invalid_scope",
    )
    error_description: Optional[str] = Field(None, description="Human-readable error description")
    error_uri: Optional[str] = Field(None, description="URI for more information about the error")


class TokenGrant(BaseModel):
    """Tokens handed back to the caller after an exchange or refresh."""

    access_token: str
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    x_refresh_token_expires_in: Optional[int] = None
    scope: Optional[str] = None
    realm_id: Optional[str] = None

    @property
    def bearer_value(self) -> str:
        """Access token formatted for the Authorization header / session."""
        return BEARER_PREFIX + self.access_token
