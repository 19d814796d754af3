"""
QuickBooks Online Demo - Main Application

SECURITY FEATURES:
- Session cookie carries only an opaque id; tokens stay server-side
- Structured logging without token values
- Every log line carries the request id
"""

from contextlib import asynccontextmanager
from fastapi import FastAPI
from starlette.middleware.sessions import SessionMiddleware
import logging

from qbo_demo.api.router import api_router
from qbo_demo.config import settings
from qbo_demo.exceptions import register_exception_handlers
from qbo_demo.middleware import CorrelationIdMiddleware, RequestIdLogFilter
from qbo_demo.services import get_oauth_service, get_project_service, get_qbo_service
from qbo_demo.session import InMemorySessionBackend

# Configure secure logging
logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - [%(request_id)s] %(message)s",
)
for handler in logging.getLogger().handlers:
    handler.addFilter(RequestIdLogFilter())
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    logger.info("Starting QuickBooks demo...")
    logger.info(f"Environment: {settings.QBO_ENVIRONMENT}")
    logger.info(f"Accounting API: {settings.accounting_base_url}")
    if not settings.QBO_CLIENT_ID:
        logger.warning("QBO_CLIENT_ID is not set - connecting to QuickBooks will fail")
    yield
    # Shutdown
    logger.info("Shutting down QuickBooks demo...")
    await get_oauth_service().close()
    await get_qbo_service().close()
    await get_project_service().client.close()


app = FastAPI(
    title="QuickBooks Online Demo",
    description="Connect a QuickBooks company, manage projects and create project-linked transactions",
    version="1.0.0",
    lifespan=lifespan,
)

app.state.session_backend = InMemorySessionBackend(settings.SESSION_MAX_AGE)

# Added last runs first: the request id is set before the session loads
app.add_middleware(
    SessionMiddleware,
    secret_key=settings.SESSION_SECRET,
    session_cookie=settings.SESSION_COOKIE,
    max_age=settings.SESSION_MAX_AGE,
    https_only=settings.SESSION_COOKIE_SECURE,
    same_site="lax",
)
app.add_middleware(CorrelationIdMiddleware)

register_exception_handlers(app)

# Include routers
app.include_router(api_router)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "version": "1.0.0",
        "environment": settings.QBO_ENVIRONMENT,
    }


# For running with uvicorn directly (development only)
if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "qbo_demo.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
    )
