from qbo_demo.schemas.oauth import (
    AuthorizationRequest,
    DiscoveryDocument,
    TokenErrorResponse,
    TokenGrant,
    TokenResponse,
)
