"""
Project-Management operations (create, list, get, delete projects).

Results are flattened into plain dicts for the page.
"""
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from qbo_demo.exceptions import QuickBooksAPIError, ValidationError
from qbo_demo.services.graphql_client import (
    ProjectManagementClient,
    load_document,
    load_variables,
)
from qbo_demo.session import AuthContext

logger = logging.getLogger(__name__)

# Upper bound of aliases in one get_projects_by_ids request
MAX_PROJECTS_PER_REQUEST = 20
DEFAULT_PAGE_SIZE = 10

WIDE_MIN_DUE_DATE = "2000-01-01T00:00:00.000Z"
WIDE_MAX_DUE_DATE = "2100-12-31T23:59:59.000Z"


def format_graphql_datetime(value: datetime) -> str:
    """yyyy-MM-ddTHH:mm:ss.SSSZ"""
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def _add_years(value: datetime, years: int) -> datetime:
    try:
        return value.replace(year=value.year + years)
    except ValueError:
        # Feb 29 -> Feb 28
        return value.replace(year=value.year + years, day=28)


def _ref_id(node: dict[str, Any], key: str) -> Optional[str]:
    ref = node.get(key)
    if isinstance(ref, dict) and ref.get("id") is not None:
        return str(ref["id"])
    return None


def project_summary(node: dict[str, Any], fallback_id: Optional[str] = None) -> dict[str, Any]:
    """Common fields of a project node."""
    project = {
        "id": str(node.get("id") or fallback_id or ""),
        "name": node.get("name"),
        "status": node.get("status"),
        "description": node.get("description"),
        "start_date": node.get("startDate"),
        "due_date": node.get("dueDate"),
    }
    if "account" in node:
        project["account_id"] = _ref_id(node, "account")
    if "customer" in node:
        project["customer"] = {"id": _ref_id(node, "customer")}
    return project


def explain_projects_error(raw: Optional[str]) -> str:
    """Page-friendly explanation for a failed project listing."""
    if not raw:
        return "An unexpected error occurred."
    lower = raw.lower()
    if "cannot construct instance" in lower and "orderby" in lower:
        return (
            "Projects list error: The 'orderBy' variable format was invalid for this schema. "
            "Some environments expect enum strings like DUE_DATE_DESC instead of objects. "
            "We now send enum values; retry the request."
        )
    if "projectmanagementprojects" in lower and "exception while fetching data" in lower:
        return (
            "Projects list error: Backend returned a null fetch. Ensure Projects are enabled in QBO "
            "and the token includes scope 'project-management.project'."
        )
    return raw


class ProjectService:
    """Projects through the Project-Management GraphQL API."""

    def __init__(self, client: Optional[ProjectManagementClient] = None):
        self.client = client or ProjectManagementClient()

    def build_create_variables(
        self,
        customer_name: str,
        customer_id: str,
        project_name: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> dict[str, Any]:
        template = load_variables("project_variables.json")["template"]
        now = now or datetime.now(timezone.utc)

        if project_name and project_name.strip():
            name = project_name.strip()
        else:
            name = template["name"].replace("{uuid}", str(uuid.uuid4()))

        try:
            numeric_customer_id = int(customer_id)
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Customer ID must be numeric: {customer_id}") from e

        return {
            "name": name,
            "description": template["description"].replace("{customerName}", customer_name),
            "startDate": format_graphql_datetime(now),
            "dueDate": format_graphql_datetime(_add_years(now, 5)),
            "status": template["status"],
            "priority": int(template["priority"]),
            "pinned": bool(template["pinned"]),
            "customer": {"id": numeric_customer_id},
        }

    async def create_project(
        self,
        ctx: AuthContext,
        customer_name: str,
        customer_id: str,
        project_name: Optional[str] = None,
    ) -> dict[str, Any]:
        if not customer_name or not customer_name.strip():
            raise ValidationError("Customer name is required")
        if not customer_id or not str(customer_id).strip():
            raise ValidationError("Customer ID is required")

        variables = self.build_create_variables(customer_name, customer_id, project_name)
        data = await self.client.execute(
            ctx, load_document("project_create.graphql"), variables, operation="create project"
        )
        node = data.get("projectManagementCreateProject")
        if not node:
            raise QuickBooksAPIError("Failed to create project: empty response")

        logger.info(f"Created project {node.get('id')} for customer {customer_id}")
        return project_summary(node)

    async def list_projects(
        self,
        ctx: AuthContext,
        first: Optional[int] = None,
        after: Optional[str] = None,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
    ) -> dict[str, Any]:
        """
        One page of projects filtered by due date.

        start_date / end_date are yyyy-mm-dd; without either, a wide
        2000..2100 window is sent because some backends reject a missing
        filter.
        """
        template = load_variables("projects_list_variables.json")
        variables: dict[str, Any] = {
            "first": first if first and first > 0 else DEFAULT_PAGE_SIZE,
            "orderBy": template.get("orderBy") or ["DUE_DATE_DESC"],
        }
        if after:
            variables["after"] = after

        filter_ = template.get("filter") if isinstance(template.get("filter"), dict) else {}
        if start_date or end_date:
            between = {}
            if start_date:
                between["minDate"] = f"{start_date}T00:00:00.000Z"
            if end_date:
                between["maxDate"] = f"{end_date}T23:59:59.000Z"
        else:
            between = {"minDate": WIDE_MIN_DUE_DATE, "maxDate": WIDE_MAX_DUE_DATE}
        filter_["dueDate"] = {"between": between}
        variables["filter"] = filter_

        logger.debug(f"Listing projects with variables {variables}")
        data = await self.client.execute(
            ctx, load_document("projects_list.graphql"), variables, operation="list projects"
        )
        conn = data.get("projectManagementProjects") or {}

        result: dict[str, Any] = {"nodes": []}
        page_info = conn.get("pageInfo")
        if page_info is not None:
            result["page_info"] = {
                "has_next_page": bool(page_info.get("hasNextPage")),
                "end_cursor": page_info.get("endCursor"),
            }

        for edge in conn.get("edges") or []:
            node = edge.get("node") or {}
            project = project_summary(node)
            project["type"] = node.get("type")
            project["completed_date"] = node.get("completedDate")
            project["priority"] = node.get("priority")
            if "assignee" in node:
                project["assignee_id"] = _ref_id(node, "assignee")
            if isinstance(node.get("addresses"), list):
                project["addresses"] = [
                    {
                        "street_address_line1": a.get("streetAddressLine1"),
                        "street_address_line2": a.get("streetAddressLine2"),
                        "street_address_line3": a.get("streetAddressLine3"),
                        "state": a.get("state"),
                        "postal_code": a.get("postalCode"),
                    }
                    for a in node["addresses"]
                ]
            result["nodes"].append(project)
        return result

    async def get_project(self, ctx: AuthContext, project_id: str) -> dict[str, Any]:
        if not project_id or not project_id.strip():
            raise ValidationError("Project ID is required")

        data = await self.client.execute(
            ctx, load_document("project_get.graphql"), {"id": project_id}, operation="get project"
        )
        node = data.get("projectManagementProject")
        if not node:
            raise QuickBooksAPIError(f"Project not found: {project_id}")
        return project_summary(node, fallback_id=project_id)

    async def get_projects_by_ids(self, ctx: AuthContext, ids: list[str]) -> list[dict[str, Any]]:
        """
        Several projects in one aliased request (p1..pN).

        Only the first MAX_PROJECTS_PER_REQUEST ids are fetched. Unknown ids
        come back as stubs carrying just the id.
        """
        ids = [i.strip() for i in ids if i and i.strip()]
        if not ids:
            raise ValidationError("At least one project ID is required")
        batch = ids[:MAX_PROJECTS_PER_REQUEST]

        params = ", ".join(f"$v{n}: ID!" for n in range(1, len(batch) + 1))
        selections = " ".join(
            f"p{n}: projectManagementProject(id: $v{n}) "
            "{ id name status description startDate dueDate account { id } customer { id } }"
            for n in range(1, len(batch) + 1)
        )
        query = f"query Multi({params}) {{ {selections} }}"
        variables = {f"v{n}": project_id for n, project_id in enumerate(batch, start=1)}

        data = await self.client.execute(ctx, query, variables, operation="get projects")

        results = []
        for n, project_id in enumerate(batch, start=1):
            node = data.get(f"p{n}")
            if not node:
                results.append({"id": project_id, "name": None, "status": None})
                continue
            results.append(project_summary(node, fallback_id=project_id))
        return results

    async def delete_project(
        self, ctx: AuthContext, project_id: str, version: Optional[int] = None
    ) -> dict[str, Any]:
        if not project_id or not project_id.strip():
            raise ValidationError("Project ID is required")

        project_input: dict[str, Any] = {"id": project_id}
        if version is not None:
            project_input["version"] = version

        data = await self.client.execute(
            ctx,
            load_document("project_delete.graphql"),
            {"input": project_input},
            operation="delete project",
        )
        node = data.get("projectManagementDeleteProject")
        if not node:
            raise QuickBooksAPIError("No response for delete project")
        if "id" not in node and node.get("message"):
            raise QuickBooksAPIError(f"Delete failed: {node['message']}")

        logger.info(f"Deleted project {project_id}")
        return {
            "id": str(node.get("id") or project_id),
            "name": node.get("name"),
            "version": node.get("version") or 0,
            "deleted": bool(node.get("deleted")),
        }


# Singleton
_project_service: Optional[ProjectService] = None


def get_project_service() -> ProjectService:
    global _project_service
    if _project_service is None:
        _project_service = ProjectService()
    return _project_service
