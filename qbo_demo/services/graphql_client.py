"""
QuickBooks Project-Management GraphQL client.

Posts ``{query, variables}`` documents and turns HTTP and GraphQL error
answers into QuickBooksError subclasses. Query documents and variable
templates ship as package data under ``qbo_demo/graphql``.
"""
import json
import logging
from functools import lru_cache
from pathlib import Path
from typing import Any, Optional

import httpx

from qbo_demo.config import Settings, settings as default_settings
from qbo_demo.exceptions import BackendUnavailableError, QuickBooksAPIError
from qbo_demo.services.transport import QuickBooksTransport
from qbo_demo.session import AuthContext

logger = logging.getLogger(__name__)

GRAPHQL_DIR = Path(__file__).resolve().parent.parent / "graphql"

# Provider-side database failures surfaced as GraphQL errors
BACKEND_FAILURE_MARKERS = (
    "Could not open JPA EntityManager",
    "Unable to acquire JDBC Connection",
)


@lru_cache()
def load_document(name: str) -> str:
    """Read a packaged .graphql document or variables template."""
    return (GRAPHQL_DIR / name).read_text(encoding="utf-8")


def load_variables(name: str) -> dict[str, Any]:
    """A fresh copy of a packaged variables template."""
    return json.loads(load_document(name))


def first_error_message(errors: Any) -> str:
    if isinstance(errors, list) and errors and isinstance(errors[0], dict):
        return errors[0].get("message") or "GraphQL error"
    return "GraphQL error"


class ProjectManagementClient:
    """Executes GraphQL documents against the Project-Management API."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[QuickBooksTransport] = None,
    ):
        self.settings = settings or default_settings
        self.transport = transport or QuickBooksTransport(self.settings)

    async def execute(
        self,
        ctx: AuthContext,
        query: str,
        variables: Optional[dict[str, Any]] = None,
        operation: str = "run GraphQL query",
    ) -> dict[str, Any]:
        """
        Run a document and return its ``data`` object.

        Raises:
            QuickBooksAPIError: non-2xx answer or GraphQL ``errors``
            BackendUnavailableError: provider reported a database outage
        """
        response = await self.transport.post(
            self.settings.QBO_GRAPHQL_URL,
            json={"query": query, "variables": variables or {}},
            headers={
                "Authorization": ctx.bearer_value,
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
        )
        self._raise_for_status(response, operation)

        try:
            body = response.json()
        except ValueError as e:
            raise QuickBooksAPIError(
                f"Failed to {operation}: response was not JSON",
                http_status=response.status_code,
                detail=response.text[:500],
            ) from e

        if not isinstance(body, dict):
            raise QuickBooksAPIError(
                f"Failed to {operation}: unexpected response shape",
                http_status=response.status_code,
                detail=response.text[:500],
            )

        if body.get("errors"):
            errors = body["errors"]
            message = first_error_message(errors)
            logger.warning(f"GraphQL {operation} returned errors: {errors}")
            if any(marker in message for marker in BACKEND_FAILURE_MARKERS):
                raise BackendUnavailableError(
                    "QuickBooks backend service is experiencing database connectivity issues. "
                    "Please try again later or contact QuickBooks Developer Support if the issue persists.",
                    detail=message,
                )
            raise QuickBooksAPIError(f"GraphQL error: {message}", detail=json.dumps(errors)[:1000])

        return body.get("data") or {}

    def _raise_for_status(self, response: httpx.Response, operation: str) -> None:
        if response.is_success:
            return
        status = response.status_code
        body = response.text[:500]
        logger.error(f"GraphQL {operation} failed: status={status}")
        if status == 401:
            message = "Unauthorized (401): Access token invalid or expired. Please reconnect to QuickBooks."
        elif status == 403:
            lower = body.lower()
            if "insufficient_scope" in lower or "insufficient scope" in lower or "permission" in lower:
                message = (
                    "Insufficient scope: missing 'project-management.project'. "
                    "Re-add this scope and re-authenticate."
                )
            else:
                message = "Forbidden (403): Missing scope 'project-management.project' or Projects not enabled."
        else:
            message = f"Failed to {operation}: HTTP {status} - {body}"
        raise QuickBooksAPIError(message, http_status=status, detail=body)

    async def close(self) -> None:
        await self.transport.aclose()
