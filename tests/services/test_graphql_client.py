"""Tests for the Project-Management GraphQL client."""

import json

import httpx
import pytest

from qbo_demo.exceptions import BackendUnavailableError, QuickBooksAPIError
from qbo_demo.services.graphql_client import ProjectManagementClient, load_document, load_variables


class TestDocuments:
    """Packaged query documents and variable templates."""

    def test_documents_load(self):
        assert "projectManagementCreateProject" in load_document("project_create.graphql")
        assert "ProjectManagement_Error" in load_document("project_delete.graphql")

    def test_variables_are_fresh_copies(self):
        first = load_variables("projects_list_variables.json")
        first["filter"]["changed"] = True
        second = load_variables("projects_list_variables.json")
        assert second["filter"] == {}
        assert second["orderBy"] == ["DUE_DATE_DESC"]


class TestProjectManagementClient:
    """Error mapping of GraphQL answers."""

    @pytest.mark.asyncio
    async def test_returns_data(self, test_settings, make_transport, ctx):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"data": {"projectManagementProject": {"id": "1"}}})

        client = ProjectManagementClient(test_settings, make_transport(handler))
        data = await client.execute(ctx, "query { x }", {"id": "1"})

        assert data == {"projectManagementProject": {"id": "1"}}
        assert str(seen[0].url) == test_settings.QBO_GRAPHQL_URL
        assert json.loads(seen[0].content) == {"query": "query { x }", "variables": {"id": "1"}}
        assert seen[0].headers["Authorization"].startswith("Bearer ")

    @pytest.mark.asyncio
    async def test_graphql_errors(self, test_settings, make_transport, ctx):
        def handler(request):
            return httpx.Response(200, json={"errors": [{"message": "Field 'x' undefined"}]})

        client = ProjectManagementClient(test_settings, make_transport(handler))
        with pytest.raises(QuickBooksAPIError) as exc_info:
            await client.execute(ctx, "query { x }")
        assert exc_info.value.message == "GraphQL error: Field 'x' undefined"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("payload", [b"[1, 2]", b"\"ok\"", b"null"])
    async def test_non_object_body(self, test_settings, make_transport, ctx, payload):
        def handler(request):
            return httpx.Response(200, content=payload, headers={"Content-Type": "application/json"})

        client = ProjectManagementClient(test_settings, make_transport(handler))
        with pytest.raises(QuickBooksAPIError) as exc_info:
            await client.execute(ctx, "query { x }")
        assert "unexpected response shape" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_backend_database_failure(self, test_settings, make_transport, ctx):
        def handler(request):
            return httpx.Response(
                200, json={"errors": [{"message": "Could not open JPA EntityManager for transaction"}]}
            )

        client = ProjectManagementClient(test_settings, make_transport(handler))
        with pytest.raises(BackendUnavailableError):
            await client.execute(ctx, "query { x }")

    @pytest.mark.asyncio
    async def test_forbidden_insufficient_scope(self, test_settings, make_transport, ctx):
        def handler(request):
            return httpx.Response(403, text='{"error":"insufficient_scope"}')

        client = ProjectManagementClient(test_settings, make_transport(handler))
        with pytest.raises(QuickBooksAPIError) as exc_info:
            await client.execute(ctx, "query { x }")
        assert "project-management.project" in exc_info.value.message
        assert exc_info.value.http_status == 403

    @pytest.mark.asyncio
    async def test_unauthorized(self, test_settings, make_transport, ctx):
        def handler(request):
            return httpx.Response(401)

        client = ProjectManagementClient(test_settings, make_transport(handler))
        with pytest.raises(QuickBooksAPIError) as exc_info:
            await client.execute(ctx, "query { x }")
        assert exc_info.value.message.startswith("Unauthorized (401)")
