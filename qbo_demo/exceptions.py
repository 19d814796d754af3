"""
QuickBooks error taxonomy and FastAPI exception handling.

Every failure surfaced by the OAuth manager, the API clients and the
accounting operations is a QuickBooksError subclass carrying a machine
readable ErrorCode and a human-readable message. Browser routes turn these
into a flash message plus a redirect; JSON routes get an RFC 7807 body.

See: https://datatracker.ietf.org/doc/html/rfc7807
"""

from typing import Optional, Dict, Any, List
from enum import Enum
from pydantic import BaseModel, Field
from fastapi import Request
from fastapi.responses import JSONResponse, RedirectResponse
import logging
import uuid
from datetime import datetime

from qbo_demo.middleware.correlation import request_id_ctx

logger = logging.getLogger(__name__)


def _get_trace_id() -> str:
    """Get trace ID from the request context or generate a new one."""
    request_id = request_id_ctx.get()
    if request_id:
        return request_id
    return str(uuid.uuid4())[:12]


class ErrorCode(str, Enum):
    """Standardized error codes."""

    # Configuration
    CONFIGURATION_ERROR = "CFG_001"

    # OAuth
    AUTHORIZATION_ERROR = "AUTH_001"
    TOKEN_REFRESH_ERROR = "AUTH_002"
    NOT_CONNECTED = "AUTH_003"
    STATE_MISMATCH = "AUTH_004"

    # Validation
    VALIDATION_ERROR = "VAL_001"

    # External Services
    QUICKBOOKS_API_ERROR = "EXT_001"
    TRANSIENT_TRANSPORT_ERROR = "EXT_002"
    BACKEND_UNAVAILABLE = "EXT_003"

    # Server
    INTERNAL_ERROR = "SRV_001"


class AuthorizationErrorKind(str, Enum):
    """Why an authorization-code exchange (or URL build) failed."""

    EXPIRED_OR_INVALID_CODE = "expired_or_invalid_code"
    INVALID_CLIENT = "invalid_client"
    INVALID_SCOPE = "invalid_scope"
    NETWORK_ERROR = "network_error"
    UNEXPECTED = "unexpected"


class TokenRefreshErrorKind(str, Enum):
    """Why a refresh-token grant failed."""

    MISSING_REFRESH_TOKEN = "missing_refresh_token"
    INVALID_OR_EXPIRED_REFRESH_TOKEN = "invalid_or_expired_refresh_token"
    INVALID_CLIENT = "invalid_client"
    NETWORK_ERROR = "network_error"
    UNEXPECTED = "unexpected"


class ProblemDetail(BaseModel):
    """RFC 7807 Problem Details response schema."""

    type: str = Field(default="about:blank", description="URI reference identifying the problem type")
    title: str = Field(description="Short, human-readable summary of the problem")
    status: int = Field(description="HTTP status code")
    detail: str = Field(description="Human-readable explanation specific to this occurrence")
    instance: Optional[str] = Field(default=None, description="URI reference for this specific occurrence")
    code: str = Field(description="Machine-readable error code")
    timestamp: str = Field(description="ISO 8601 timestamp")
    trace_id: str = Field(description="Unique trace ID for debugging")
    errors: Optional[List[Dict[str, Any]]] = Field(default=None, description="Field-level errors")


class QuickBooksError(Exception):
    """
    Base exception for everything the QuickBooks integration can surface.

    Attributes:
        code: Machine-readable error code
        message: Message safe to show in the UI
        status_code: HTTP status used when rendered as JSON
    """

    code: ErrorCode = ErrorCode.INTERNAL_ERROR
    status_code: int = 500

    def __init__(self, message: str, *, detail: Optional[str] = None):
        super().__init__(message)
        self.message = message
        # Internal, log-worthy detail (vendor body, intuit_tid...)
        self.detail = detail
        self.trace_id = _get_trace_id()

    def to_problem_detail(self, instance: Optional[str] = None) -> ProblemDetail:
        """Convert to RFC 7807 ProblemDetail."""
        return ProblemDetail(
            type=f"about:blank#{self.code.value.lower()}",
            title=type(self).__name__,
            status=self.status_code,
            detail=self.message,
            instance=instance,
            code=self.code.value,
            timestamp=datetime.utcnow().isoformat() + "Z",
            trace_id=self.trace_id,
        )


class ConfigurationError(QuickBooksError):
    """Missing or invalid client id, secret, redirect URI or environment."""

    code = ErrorCode.CONFIGURATION_ERROR
    status_code = 500

    def __init__(self, field: str, message: str):
        super().__init__(message)
        self.field = field


class AuthorizationError(QuickBooksError):
    """Authorization URL or code exchange failure."""

    code = ErrorCode.AUTHORIZATION_ERROR
    status_code = 401

    def __init__(self, kind: AuthorizationErrorKind, message: str, *, detail: Optional[str] = None):
        super().__init__(message, detail=detail)
        self.kind = kind

    @property
    def clears_callback_marker(self) -> bool:
        """An expired or already-used code may be retried with a fresh one."""
        return self.kind == AuthorizationErrorKind.EXPIRED_OR_INVALID_CODE


class StateMismatchError(QuickBooksError):
    """OAuth callback state does not match the one issued for this session."""

    code = ErrorCode.STATE_MISMATCH
    status_code = 400


class NotConnectedError(QuickBooksError):
    """No access token / realm in the session."""

    code = ErrorCode.NOT_CONNECTED
    status_code = 401

    def __init__(self, message: str = "Please connect to QuickBooks first."):
        super().__init__(message)


class TokenRefreshError(QuickBooksError):
    """Refresh-token grant failure."""

    code = ErrorCode.TOKEN_REFRESH_ERROR
    status_code = 401

    def __init__(self, kind: TokenRefreshErrorKind, message: str, *, detail: Optional[str] = None):
        super().__init__(message, detail=detail)
        self.kind = kind


class TransientTransportError(QuickBooksError):
    """Connection, timeout or retryable HTTP status after all attempts."""

    code = ErrorCode.TRANSIENT_TRANSPORT_ERROR
    status_code = 503


class BackendUnavailableError(QuickBooksError):
    """Provider-side infrastructure failure reported inside an error payload."""

    code = ErrorCode.BACKEND_UNAVAILABLE
    status_code = 503


class ValidationError(QuickBooksError):
    """A required field of a write operation is missing or out of range."""

    code = ErrorCode.VALIDATION_ERROR
    status_code = 422


class QuickBooksAPIError(QuickBooksError):
    """Non-success answer from the Accounting or Project-Management API."""

    code = ErrorCode.QUICKBOOKS_API_ERROR
    status_code = 502

    def __init__(self, message: str, *, http_status: Optional[int] = None, detail: Optional[str] = None):
        super().__init__(message, detail=detail)
        self.http_status = http_status


# Exception handlers for FastAPI

def _wants_json(request: Request) -> bool:
    return request.url.path.startswith("/api/")


async def quickbooks_exception_handler(request: Request, exc: QuickBooksError):
    """Render a QuickBooksError as problem JSON or as a flash + redirect."""
    logger.warning(
        f"QuickBooksError: {exc.code.value} - {exc.message}",
        extra={"trace_id": exc.trace_id, "path": request.url.path, "detail": exc.detail},
    )

    if _wants_json(request):
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.to_problem_detail(instance=str(request.url.path)).model_dump(exclude_none=True),
            media_type="application/problem+json",
        )

    from qbo_demo.session import SessionStore

    SessionStore(request).flash("error", exc.message)
    return RedirectResponse("/", status_code=303)


async def unhandled_exception_handler(request: Request, exc: Exception):
    """Last resort: never let a fault reach the browser as a 500 page."""
    trace_id = _get_trace_id()
    logger.error(
        f"Unhandled exception: {type(exc).__name__}",
        exc_info=True,
        extra={"trace_id": trace_id, "path": request.url.path},
    )

    if _wants_json(request):
        problem = ProblemDetail(
            title="Internal Server Error",
            status=500,
            detail="An unexpected error occurred. Please try again.",
            instance=str(request.url.path),
            code=ErrorCode.INTERNAL_ERROR.value,
            timestamp=datetime.utcnow().isoformat() + "Z",
            trace_id=trace_id,
        )
        return JSONResponse(
            status_code=500,
            content=problem.model_dump(exclude_none=True),
            media_type="application/problem+json",
        )

    from qbo_demo.session import SessionKeys, SessionStore

    # Runs outside SessionMiddleware: a new cookie would never be sent, so
    # only a session the browser already holds can carry the message
    if "session" in request.scope and request.session.get(SessionKeys.SID):
        SessionStore(request).flash("error", "Something went wrong. Please try again.")
    return RedirectResponse("/", status_code=303)


def register_exception_handlers(app) -> None:
    """Attach the handlers above to a FastAPI app."""
    app.add_exception_handler(QuickBooksError, quickbooks_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
