"""
FastAPI Dependencies

Session access, the connected-company AuthContext, and the service
singletons (overridable in tests through ``app.dependency_overrides``).

SECURITY NOTES:
- Token values are never logged
- The session cookie only carries an opaque session id
"""

from typing import Annotated
from fastapi import Depends, Request
import logging

from qbo_demo.exceptions import NotConnectedError
from qbo_demo.services.oauth_service import QuickBooksOAuthService, get_oauth_service
from qbo_demo.services.project_service import ProjectService, get_project_service
from qbo_demo.services.qbo_service import QuickBooksService, get_qbo_service
from qbo_demo.session import AuthContext, SessionStore

logger = logging.getLogger(__name__)


def get_session_store(request: Request) -> SessionStore:
    return SessionStore(request)


def require_auth_context(
    session: Annotated[SessionStore, Depends(get_session_store)],
) -> AuthContext:
    """AuthContext of the connected company; NotConnectedError otherwise."""
    ctx = session.auth_context()
    if ctx is None:
        raise NotConnectedError()
    return ctx


# Type aliases for cleaner route signatures
Session = Annotated[SessionStore, Depends(get_session_store)]
Auth = Annotated[AuthContext, Depends(require_auth_context)]
OAuthService = Annotated[QuickBooksOAuthService, Depends(get_oauth_service)]
QBOService = Annotated[QuickBooksService, Depends(get_qbo_service)]
Projects = Annotated[ProjectService, Depends(get_project_service)]
