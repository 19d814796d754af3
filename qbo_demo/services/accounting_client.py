"""
QuickBooks Accounting REST v3 client.

Two calls: the ``query`` endpoint (SQL-like select, plain-text body) and
JSON entity creation. URL construction, minorversion and the bearer header
live here so the operations only shape payloads.
"""
import logging
from typing import Any, Optional

import httpx

from qbo_demo.config import Settings, settings as default_settings
from qbo_demo.exceptions import QuickBooksAPIError
from qbo_demo.services.transport import QuickBooksTransport
from qbo_demo.session import AuthContext

logger = logging.getLogger(__name__)


def fault_message(response: httpx.Response) -> str:
    """First Fault.Error message (+ detail) of an Accounting error body."""
    try:
        body = response.json()
    except ValueError:
        return response.text[:300] or f"HTTP {response.status_code}"
    errors = []
    if isinstance(body, dict):
        errors = (body.get("Fault") or {}).get("Error") or []
    if not errors:
        return response.text[:300] or f"HTTP {response.status_code}"
    first = errors[0]
    message = first.get("Message") or "Unknown error"
    if first.get("Detail"):
        message = f"{message}: {first['Detail']}"
    return message


class AccountingClient:
    """Accounting API calls scoped to one AuthContext per call."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[QuickBooksTransport] = None,
    ):
        self.settings = settings or default_settings
        self.transport = transport or QuickBooksTransport(self.settings)

    def company_url(self, realm_id: str, path: str) -> str:
        url = f"{self.settings.accounting_base_url}/v3/company/{realm_id}/{path.lstrip('/')}"
        minor = (self.settings.QBO_MINOR_VERSION or "").strip()
        if minor:
            url += ("&" if "?" in url else "?") + f"minorversion={minor}"
        return url

    async def query(self, ctx: AuthContext, query: str, operation: str = "query") -> dict[str, Any]:
        """Run a select statement; returns the ``QueryResponse`` object."""
        response = await self.transport.post(
            self.company_url(ctx.realm_id, "query"),
            content=query.encode("utf-8"),
            headers={
                "Authorization": ctx.bearer_value,
                "Content-Type": "application/text",
                "Accept": "application/json",
            },
        )
        self._raise_for_status(response, operation, ctx)
        return response.json().get("QueryResponse") or {}

    async def query_entities(
        self, ctx: AuthContext, query: str, entity: str, operation: str = "query"
    ) -> list[dict[str, Any]]:
        """Rows of one entity type from a select statement."""
        result = await self.query(ctx, query, operation=operation)
        return result.get(entity) or []

    async def create(
        self, ctx: AuthContext, entity: str, payload: dict[str, Any], operation: Optional[str] = None
    ) -> dict[str, Any]:
        """POST a new entity; returns the created object (e.g. body["Invoice"])."""
        response = await self.transport.post(
            self.company_url(ctx.realm_id, entity.lower()),
            json=payload,
            headers={
                "Authorization": ctx.bearer_value,
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
        )
        self._raise_for_status(response, operation or f"create {entity.lower()}", ctx)
        return response.json().get(entity) or {}

    def _raise_for_status(self, response: httpx.Response, operation: str, ctx: AuthContext) -> None:
        if response.is_success:
            return
        intuit_tid = response.headers.get("intuit_tid", "-")
        logger.error(
            f"Accounting API {operation} failed: status={response.status_code} intuit_tid={intuit_tid}"
        )
        if response.status_code == 401:
            message = "Unauthorized (401): Access token invalid or expired. Please reconnect to QuickBooks."
        else:
            message = (
                f"QuickBooks API Error ({operation}): {fault_message(response)}"
                f" [env={self.settings.QBO_ENVIRONMENT}, realmId={ctx.realm_id}]"
            )
        raise QuickBooksAPIError(
            message,
            http_status=response.status_code,
            detail=f"intuit_tid={intuit_tid} body={response.text[:500]}",
        )

    async def close(self) -> None:
        await self.transport.aclose()
