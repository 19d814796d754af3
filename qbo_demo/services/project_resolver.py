"""
Project identifier resolution.

The Project-Management API and the Accounting API name the same project
differently: GraphQL hands out its own project id, while Accounting writes
expect the id of a Customer flagged ``IsProject = true``. The two are
joined on the project's display name (and parent customer when known).

Resolution is best-effort and read-only. A miss is a normal outcome
(``None``), never an error, and never blocks the write that needed it.
"""
import logging
from typing import Optional

from qbo_demo.exceptions import QuickBooksError
from qbo_demo.services.accounting_client import AccountingClient
from qbo_demo.services.project_service import ProjectService
from qbo_demo.session import AuthContext

logger = logging.getLogger(__name__)


def escape_query_literal(value: str) -> str:
    """Quote-escape a value for a query string literal."""
    return value.replace("'", "''")


def build_project_customer_query(project_name: str, parent_customer_id: Optional[str] = None) -> str:
    query = (
        "select Id, DisplayName, ParentRef from Customer "
        "where IsProject = true and Active = true "
        f"and DisplayName = '{escape_query_literal(project_name)}'"
    )
    if parent_customer_id and parent_customer_id.strip():
        query += f" and ParentRef = '{escape_query_literal(parent_customer_id.strip())}'"
    return query


class ProjectResolver:
    """Maps GraphQL project ids to Accounting project-customer ids."""

    def __init__(self, accounting: AccountingClient, projects: ProjectService):
        self.accounting = accounting
        self.projects = projects

    async def resolve_accounting_project_id(
        self,
        ctx: AuthContext,
        project_name: Optional[str],
        parent_customer_id: Optional[str] = None,
    ) -> Optional[str]:
        """Id of the first active project-customer with this name, or None."""
        if not project_name or not project_name.strip():
            return None

        query = build_project_customer_query(project_name, parent_customer_id)
        try:
            rows = await self.accounting.query_entities(
                ctx, query, "Customer", operation="resolve project"
            )
        except (QuickBooksError, ValueError) as e:
            logger.info(f"Project lookup for '{project_name}' failed, treating as not found: {e}")
            return None

        if not rows:
            return None
        # First match wins; backend order is not stable
        return str(rows[0].get("Id")) if rows[0].get("Id") is not None else None

    async def is_accounting_project_id(self, ctx: AuthContext, project_id: str) -> bool:
        query = (
            "select Id from Customer where IsProject = true "
            f"and Id = '{escape_query_literal(project_id)}'"
        )
        rows = await self.accounting.query_entities(ctx, query, "Customer", operation="probe project")
        return bool(rows)

    async def resolve_project_reference_for_write(self, provided_project_id: str, ctx: AuthContext) -> str:
        """
        Project reference to put on an Accounting write.

        1. The provided id is already a project-customer id: use it.
        2. Otherwise look the GraphQL project up and resolve by name/parent.
        3. Otherwise fall back to the provided id and let the write fail
           with the provider's own validation error if it is wrong.
        """
        try:
            if await self.is_accounting_project_id(ctx, provided_project_id):
                return provided_project_id

            project = await self.projects.get_project(ctx, provided_project_id)
            parent_customer_id = (project.get("customer") or {}).get("id")
            resolved = await self.resolve_accounting_project_id(ctx, project.get("name"), parent_customer_id)
            if resolved:
                logger.info(f"Resolved project {provided_project_id} to accounting project {resolved}")
                return resolved
        except (QuickBooksError, ValueError) as e:
            logger.info(f"Project reference resolution for {provided_project_id} failed: {e}")

        return provided_project_id
