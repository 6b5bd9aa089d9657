"""Async client for the Railway GraphQL API, used to provision dedicated tenant databases."""

from __future__ import annotations

import re
from typing import Any
from urllib.parse import quote_plus

import httpx
from pydantic import BaseModel

from tenancy.errors import InfraError
from tenancy.utils.config import (
    get_railway_api_token,
    get_railway_api_url,
    get_railway_request_timeout,
)
from tenancy.utils.logging import get_logger

logger = get_logger(__name__)

POSTGRES_IMAGE = "postgres:15"


class RailwayEnvironment(BaseModel):
    id: str
    name: str


class RailwayProject(BaseModel):
    id: str
    name: str
    description: str | None = None


class RailwayService(BaseModel):
    id: str
    name: str


def generate_project_name(slug: str, prefix: str = "wp-tenant") -> str:
    """Generate a Railway project name from an organization slug."""
    sanitized = re.sub(r"[^a-z0-9-]", "-", slug.lower())
    sanitized = re.sub(r"-+", "-", sanitized)[:50]
    return f"{prefix}-{sanitized}"


def _edges(connection: dict[str, Any] | None) -> list[dict[str, Any]]:
    """Unwrap a GraphQL relay connection ({edges: [{node: ...}]}) into its nodes."""
    if not connection:
        return []
    return [edge["node"] for edge in connection.get("edges", []) if edge.get("node")]


class RailwayClient:
    """A client for the Railway GraphQL API.

    Every GraphQL `errors` payload or non-2xx response raises InfraError carrying the
    provider's message, so callers can surface it to operators verbatim.
    """

    def __init__(
        self,
        token: str,
        api_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        if not token:
            raise ValueError("Railway token is required and cannot be empty")

        self.api_url = api_url or get_railway_api_url()
        self._client = httpx.AsyncClient(
            headers={
                "Authorization": f"Bearer {token}",
                "Content-Type": "application/json",
            },
            timeout=timeout or get_railway_request_timeout(),
            transport=transport,
        )

    async def __aenter__(self) -> RailwayClient:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _graphql(self, query: str, variables: dict[str, Any] | None = None) -> dict[str, Any]:
        """Make a GraphQL request and return its `data` object."""
        payload: dict[str, Any] = {"query": query}
        if variables:
            payload["variables"] = variables

        try:
            response = await self._client.post(self.api_url, json=payload)
        except httpx.HTTPError as e:
            logger.error("Railway API request error", error=str(e))
            raise InfraError(f"Railway API request failed: {e}") from e

        try:
            data = response.json()
        except ValueError:
            data = None

        if isinstance(data, dict) and data.get("errors"):
            message = data["errors"][0].get("message") or "Railway API error"
            logger.warning("Railway GraphQL error", error=message, status_code=response.status_code)
            raise InfraError(message)

        if response.is_error or not isinstance(data, dict):
            logger.error(
                f"Railway API HTTP error: {response.status_code} - {response.text[:500]}"
            )
            raise InfraError(f"Railway API returned HTTP {response.status_code}")

        return data.get("data") or {}

    async def create_project(self, name: str, description: str | None = None) -> RailwayProject:
        data = await self._graphql(
            """
            mutation CreateProject($name: String!, $description: String) {
                projectCreate(input: { name: $name, description: $description }) {
                    id
                    name
                    description
                }
            }
            """,
            {"name": name, "description": description},
        )
        project = data.get("projectCreate")
        if not project:
            raise InfraError("Railway did not return the created project")
        return RailwayProject(**project)

    async def delete_project(self, project_id: str) -> None:
        await self._graphql(
            """
            mutation DeleteProject($projectId: String!) {
                projectDelete(id: $projectId)
            }
            """,
            {"projectId": project_id},
        )

    async def get_environments(self, project_id: str) -> list[RailwayEnvironment]:
        data = await self._graphql(
            """
            query GetEnvironments($projectId: String!) {
                project(id: $projectId) {
                    environments { edges { node { id name } } }
                }
            }
            """,
            {"projectId": project_id},
        )
        project = data.get("project") or {}
        return [RailwayEnvironment(**node) for node in _edges(project.get("environments"))]

    async def get_production_environment_id(self, project_id: str) -> str:
        """Get the production environment id, or the first environment if none is named production."""
        environments = await self.get_environments(project_id)
        if not environments:
            raise InfraError(f"No environments found in Railway project {project_id}")
        for environment in environments:
            if environment.name.lower() == "production":
                return environment.id
        return environments[0].id

    async def create_postgres_service(self, project_id: str) -> RailwayService:
        """Attach a fresh PostgreSQL service to a project."""
        data = await self._graphql(
            """
            mutation AddPostgres($projectId: String!, $image: String!) {
                serviceCreate(input: {
                    projectId: $projectId,
                    name: "postgres",
                    source: { image: $image }
                }) {
                    id
                    name
                }
            }
            """,
            {"projectId": project_id, "image": POSTGRES_IMAGE},
        )
        service = data.get("serviceCreate")
        if not service:
            raise InfraError("Railway did not return the created PostgreSQL service")
        return RailwayService(**service)

    async def get_project_services(self, project_id: str) -> list[RailwayService]:
        data = await self._graphql(
            """
            query GetServices($projectId: String!) {
                project(id: $projectId) {
                    services { edges { node { id name } } }
                }
            }
            """,
            {"projectId": project_id},
        )
        project = data.get("project") or {}
        return [RailwayService(**node) for node in _edges(project.get("services"))]

    async def find_postgres_service(self, project_id: str) -> RailwayService | None:
        for service in await self.get_project_services(project_id):
            if "postgres" in service.name.lower():
                return service
        return None

    async def get_service_variables(
        self, project_id: str, environment_id: str, service_id: str
    ) -> dict[str, str]:
        data = await self._graphql(
            """
            query GetVariables($projectId: String!, $environmentId: String!, $serviceId: String!) {
                variables(projectId: $projectId, environmentId: $environmentId, serviceId: $serviceId)
            }
            """,
            {"projectId": project_id, "environmentId": environment_id, "serviceId": service_id},
        )
        return data.get("variables") or {}

    async def get_database_url(
        self, project_id: str, environment_id: str, service_id: str
    ) -> str | None:
        """Single attempt at reading the generated connection string.

        Returns None while Railway has not populated the service variables yet.
        """
        variables = await self.get_service_variables(project_id, environment_id, service_id)

        if variables.get("DATABASE_URL"):
            return variables["DATABASE_URL"]

        if all(variables.get(key) for key in ("PGHOST", "PGUSER", "PGPASSWORD", "PGDATABASE")):
            port = variables.get("PGPORT") or "5432"
            return (
                f"postgresql://{quote_plus(variables['PGUSER'])}:{quote_plus(variables['PGPASSWORD'])}"
                f"@{variables['PGHOST']}:{port}/{variables['PGDATABASE']}?sslmode=require"
            )

        return None


def create_railway_client() -> RailwayClient:
    """Create a Railway client from environment variables."""
    token = get_railway_api_token()
    if not token:
        raise InfraError(
            "Railway API token not configured. Set RAILWAY_API_TOKEN environment variable."
        )
    return RailwayClient(token)
