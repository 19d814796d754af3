from typing import Callable
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport

from qbo_demo.config import Settings
from qbo_demo.main import app
from qbo_demo.schemas.oauth import AuthorizationRequest, TokenGrant
from qbo_demo.services.oauth_service import get_oauth_service
from qbo_demo.services.project_service import get_project_service
from qbo_demo.services.qbo_service import get_qbo_service
from qbo_demo.services.transport import QuickBooksTransport
from qbo_demo.session import AuthContext

TEST_STATE = "s" * 43
TEST_ACCESS_TOKEN = "access-token-0123456789"
TEST_REFRESH_TOKEN = "refresh-token-abcdef"
TEST_REALM_ID = "9130347596"


@pytest.fixture
def test_settings() -> Settings:
    """Fully configured sandbox settings with retries that never sleep."""
    return Settings(
        QBO_CLIENT_ID="client-id",
        QBO_CLIENT_SECRET="client-secret",
        QBO_REDIRECT_URI="http://localhost:8000/callback",
        QBO_ENVIRONMENT="sandbox",
        QBO_SCOPES="",
        QBO_BASE_URL=None,
        HTTP_MAX_ATTEMPTS=3,
        HTTP_RETRY_BACKOFF=0,
    )


@pytest.fixture
def make_transport(test_settings: Settings) -> Callable[..., QuickBooksTransport]:
    """Build a QuickBooksTransport whose requests go to a handler function."""

    def factory(handler, settings: Settings = None) -> QuickBooksTransport:
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return QuickBooksTransport(settings or test_settings, client=client)

    return factory


@pytest.fixture
def ctx() -> AuthContext:
    return AuthContext(access_token="Bearer " + TEST_ACCESS_TOKEN, realm_id=TEST_REALM_ID)


# =============================================================================
# App fixtures
# =============================================================================


@pytest.fixture
def fake_oauth():
    """OAuth service double returning a fixed consent URL and token grant."""
    oauth = MagicMock()
    oauth.build_authorization_url = AsyncMock(
        return_value=AuthorizationRequest(
            url=f"https://appcenter.intuit.com/connect/oauth2?state={TEST_STATE}",
            state=TEST_STATE,
        )
    )
    oauth.exchange_code = AsyncMock(
        return_value=TokenGrant(
            access_token=TEST_ACCESS_TOKEN,
            refresh_token=TEST_REFRESH_TOKEN,
            scope="com.intuit.quickbooks.accounting project-management.project",
            realm_id=TEST_REALM_ID,
        )
    )
    oauth.refresh = AsyncMock()
    oauth.revoke = AsyncMock(return_value=None)
    return oauth


@pytest.fixture
def fake_qbo():
    qbo = MagicMock()
    qbo.get_customers = AsyncMock(
        return_value={
            "customers": [{"id": "1", "name": "Acme"}, {"id": "2", "name": "Globex"}],
            "customer_names": ["Acme", "Globex"],
            "customer_map": {"1": "Acme", "2": "Globex"},
        }
    )
    qbo.get_items = AsyncMock(
        return_value={
            "items": [{"id": "10", "name": "Design", "type": "Service"}],
            "item_names": ["Design"],
            "item_map": {"10": "Design"},
        }
    )
    qbo.get_vendors = AsyncMock(return_value={"vendors": [{"id": "50", "name": "Supply Co"}]})
    qbo.get_expense_accounts = AsyncMock(
        return_value={"accounts": [{"id": "70", "name": "Materials", "type": "Expense"}]}
    )
    qbo.resolver = MagicMock()
    qbo.resolver.resolve_accounting_project_id = AsyncMock(return_value=None)
    return qbo


@pytest.fixture
def fake_projects():
    return MagicMock()


@pytest_asyncio.fixture
async def client(fake_oauth, fake_qbo, fake_projects):
    """App client with the QuickBooks services replaced by doubles."""
    app.dependency_overrides[get_oauth_service] = lambda: fake_oauth
    app.dependency_overrides[get_qbo_service] = lambda: fake_qbo
    app.dependency_overrides[get_project_service] = lambda: fake_projects

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def connected_client(client: AsyncClient):
    """App client whose session went through login + callback."""
    await client.get("/qbo-login")
    response = await client.get(
        "/callback", params={"code": "auth-code", "realmId": TEST_REALM_ID, "state": TEST_STATE}
    )
    assert response.status_code == 303
    # Consume the connect flash
    await client.get("/")
    return client
