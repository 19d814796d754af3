"""QuickBooks services: OAuth lifecycle, API clients and operations."""

from qbo_demo.services.oauth_service import QuickBooksOAuthService, get_oauth_service
from qbo_demo.services.project_resolver import ProjectResolver
from qbo_demo.services.project_service import ProjectService, get_project_service
from qbo_demo.services.qbo_service import QuickBooksService, get_qbo_service

__all__ = [
    "QuickBooksOAuthService",
    "get_oauth_service",
    "ProjectResolver",
    "ProjectService",
    "get_project_service",
    "QuickBooksService",
    "get_qbo_service",
]
