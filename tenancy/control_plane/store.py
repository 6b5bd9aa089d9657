"""Read/write access to organization routing metadata in the control database."""

from __future__ import annotations

import contextlib
from collections.abc import AsyncIterator, Awaitable, Callable

import asyncpg

from tenancy.control_plane.models import DatabaseState, OrganizationRow, RoutingInfo
from tenancy.errors import ControlPlaneUnavailableError
from tenancy.utils.logging import get_logger

logger = get_logger(__name__)

PoolGetter = Callable[[], Awaitable[asyncpg.Pool]]

ORGANIZATION_COLUMNS = """
    id, name, slug, tenant_database_provisioned, tenant_database_url,
    tenant_database_provisioned_at, tenant_railway_project_id,
    tenant_database_state, tenant_database_error
"""

# Errors meaning "could not talk to the database at all", as opposed to a bad query
CONNECTION_ERRORS: tuple[type[BaseException], ...] = (
    OSError,
    asyncpg.InterfaceError,
    asyncpg.exceptions.PostgresConnectionError,
    asyncpg.exceptions.CannotConnectNowError,
)


@contextlib.asynccontextmanager
async def _acquire(get_pool: PoolGetter, what: str) -> AsyncIterator[asyncpg.Connection]:
    try:
        pool = await get_pool()
        async with pool.acquire() as conn:
            yield conn
    except CONNECTION_ERRORS as e:
        logger.error(f"Could not reach {what} database", error=str(e))
        raise ControlPlaneUnavailableError(f"Could not reach {what} database: {e}") from e


class ControlPlaneStore:
    """Thin façade over the `organizations` and `agents` tables.

    Holds no routing decisions; it only shapes queries. Connection failures surface as
    ControlPlaneUnavailableError, any other database error propagates unchanged.
    """

    def __init__(self, get_control_pool: PoolGetter, get_shared_pool: PoolGetter | None = None):
        self._get_control_pool = get_control_pool
        self._get_shared_pool = get_shared_pool or get_control_pool

    async def get_organization(self, organization_id: str) -> OrganizationRow | None:
        async with _acquire(self._get_control_pool, "control") as conn:
            row = await conn.fetchrow(
                f"SELECT {ORGANIZATION_COLUMNS} FROM public.organizations WHERE id = $1",
                organization_id,
            )
        if row is None:
            return None
        return OrganizationRow(**dict(row))

    async def get_routing_info(self, organization_id: str) -> RoutingInfo | None:
        """Get routing metadata for an organization, or None if it does not exist."""
        org = await self.get_organization(organization_id)
        if org is None:
            return None
        return RoutingInfo.from_row(org)

    async def list_dedicated_organizations(self) -> list[RoutingInfo]:
        """All organizations that have started or finished dedicated database provisioning."""
        async with _acquire(self._get_control_pool, "control") as conn:
            rows = await conn.fetch(
                f"""
                SELECT {ORGANIZATION_COLUMNS} FROM public.organizations
                WHERE tenant_database_state <> $1 OR tenant_database_provisioned
                ORDER BY id
                """,
                DatabaseState.NONE.value,
            )
        return [RoutingInfo.from_row(OrganizationRow(**dict(row))) for row in rows]

    async def get_agent_organization_id(self, agent_id: str) -> str | None:
        """Look up the organization an agent belongs to. Agents live in the shared database."""
        async with _acquire(self._get_shared_pool, "shared") as conn:
            return await conn.fetchval(
                "SELECT organization_id FROM public.agents WHERE id = $1", agent_id
            )

    async def record_infra_project(self, organization_id: str, infra_project_id: str) -> None:
        """Checkpoint a freshly created infrastructure project before attaching a database."""
        await self._update(
            organization_id,
            ["tenant_railway_project_id = $2", "tenant_database_state = $3"],
            infra_project_id,
            DatabaseState.PROVISIONING.value,
        )

    async def clear_infra_project(self, organization_id: str) -> None:
        await self._update(
            organization_id,
            ["tenant_railway_project_id = NULL", "tenant_database_state = $2"],
            DatabaseState.NONE.value,
        )

    async def mark_provisioned(
        self, organization_id: str, connection_string: str, infra_project_id: str | None
    ) -> None:
        """Persist the dedicated database URL. Idempotent.

        The state stays `provisioning` until the schema has been applied, so the
        resolver keeps routing to the shared database in the meantime.
        """
        await self._update(
            organization_id,
            [
                "tenant_database_provisioned = true",
                "tenant_database_url = $2",
                "tenant_railway_project_id = COALESCE($3, tenant_railway_project_id)",
                "tenant_database_provisioned_at = COALESCE(tenant_database_provisioned_at, now())",
                "tenant_database_state = $4",
                "tenant_database_error = NULL",
            ],
            connection_string,
            infra_project_id,
            DatabaseState.PROVISIONING.value,
        )
        logger.info("Marked dedicated database provisioned", organization_id=organization_id)

    async def mark_ready(self, organization_id: str) -> None:
        await self._update(
            organization_id,
            ["tenant_database_state = $2", "tenant_database_error = NULL"],
            DatabaseState.READY.value,
        )

    async def mark_failed(self, organization_id: str, error_message: str) -> None:
        await self._update(
            organization_id,
            ["tenant_database_state = $2", "tenant_database_error = $3"],
            DatabaseState.FAILED.value,
            error_message,
        )

    async def record_sync_error(self, organization_id: str, error_message: str) -> None:
        """Store a schema sync error without changing the database state."""
        await self._update(organization_id, ["tenant_database_error = $2"], error_message)

    async def _update(self, organization_id: str, set_clauses: list[str], *params) -> None:
        query = (
            f"UPDATE public.organizations SET {', '.join(set_clauses)}, updated_at = now() "
            "WHERE id = $1"
        )
        async with _acquire(self._get_control_pool, "control") as conn:
            await conn.execute(query, organization_id, *params)
