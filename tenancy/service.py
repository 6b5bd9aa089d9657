"""Organization-aware database access for the rest of the application.

Usage:
    from tenancy import tenant_databases

    client = await tenant_databases.get_client(organization_id)
    async with client.acquire() as conn:
        contacts = await conn.fetch("SELECT * FROM contacts WHERE agent_id = $1", agent_id)

    async with tenant_databases.transaction(organization_id) as conn:
        ...
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncIterator, Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import asyncpg

from tenancy.clients.tenant_db import ConnectionCache, SharedPools, TenantPool, create_tenant_pool
from tenancy.control_plane.models import DatabaseState
from tenancy.control_plane.store import ControlPlaneStore
from tenancy.errors import OrganizationNotFoundError
from tenancy.provisioning.provisioner import Provisioner, ProvisionResult
from tenancy.routing.resolver import TenantResolver
from tenancy.routing.session import SessionTenantAdapter, TenantSession
from tenancy.utils.config import (
    get_control_database_url,
    get_database_url,
    get_strict_organization_lookup,
)
from tenancy.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class DatabaseInfo:
    organization_id: str
    has_dedicated_db: bool
    state: DatabaseState
    provisioned_at: datetime | None = None
    railway_project_id: str | None = None
    error_message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "organizationId": self.organization_id,
            "hasDedicatedDb": self.has_dedicated_db,
            "state": self.state.value,
            "provisionedAt": self.provisioned_at.isoformat() if self.provisioned_at else None,
            "railwayProjectId": self.railway_project_id,
            "error": self.error_message,
        }


class TenantDatabases:
    """Entry point composing the connection cache, control plane, resolver and provisioner."""

    def __init__(
        self,
        shared_pools: SharedPools,
        *,
        cache: ConnectionCache | None = None,
        store: ControlPlaneStore | None = None,
        provisioner: Provisioner | None = None,
        pool_factory=create_tenant_pool,
        strict_organization_lookup: bool = True,
    ) -> None:
        self.shared_pools = shared_pools
        self.cache = cache or ConnectionCache()
        self.store = store or ControlPlaneStore(
            shared_pools.get_control_pool, shared_pools.get_shared_pool
        )
        self.resolver = TenantResolver(
            self.store,
            self.cache,
            shared_pools.get_shared,
            pool_factory=pool_factory,
            strict_organization_lookup=strict_organization_lookup,
        )
        self.sessions = SessionTenantAdapter(self.resolver, self.store)
        self._provisioner = provisioner

    @classmethod
    def from_env(cls) -> TenantDatabases:
        return cls(
            SharedPools(get_database_url(), get_control_database_url()),
            strict_organization_lookup=get_strict_organization_lookup(),
        )

    @property
    def provisioner(self) -> Provisioner:
        # Built on first use so routing-only processes never need Railway settings
        if self._provisioner is None:
            self._provisioner = Provisioner(self.store)
        return self._provisioner

    async def get_client(self, organization_id: str | None = None) -> TenantPool:
        """Get the database client for an organization (shared when it has no ready dedicated database)."""
        return await self.resolver.resolve(organization_id)

    async def get_client_for_session(
        self, session: TenantSession | Mapping[str, Any] | None
    ) -> TenantPool:
        return await self.sessions.client_for(session)

    async def provision_dedicated_database(self, organization_id: str) -> ProvisionResult:
        return await self.provisioner.provision(organization_id)

    async def resync_dedicated_database(self, organization_id: str) -> ProvisionResult:
        return await self.provisioner.resync_schema(organization_id)

    async def get_database_info(self, organization_id: str) -> DatabaseInfo:
        """Routing status for an organization, raising OrganizationNotFoundError if unknown."""
        info = await self.store.get_routing_info(organization_id)
        if info is None:
            raise OrganizationNotFoundError(organization_id)
        return DatabaseInfo(
            organization_id=organization_id,
            has_dedicated_db=info.is_routable,
            state=info.state,
            provisioned_at=info.provisioned_at,
            railway_project_id=info.infra_project_id,
            error_message=info.error_message,
        )

    @contextlib.asynccontextmanager
    async def acquire_connection(
        self, organization_id: str | None = None
    ) -> AsyncIterator[asyncpg.Connection]:
        """Context manager to acquire a connection from the organization's database.

        Usage:
            async with tenant_databases.acquire_connection(organization_id) as conn:
                ...
        """
        client = await self.get_client(organization_id)
        async with client.acquire() as conn:
            yield conn

    @contextlib.asynccontextmanager
    async def transaction(self, organization_id: str | None) -> AsyncIterator[asyncpg.Connection]:
        """Run a block inside a transaction on the organization's database."""
        async with self.acquire_connection(organization_id) as conn, conn.transaction():
            yield conn

    async def verify_dedicated_database(self, organization_id: str, timeout: float = 10) -> bool:
        """Check that an organization's dedicated database accepts connections and queries."""
        info = await self.store.get_routing_info(organization_id)
        if info is None:
            raise OrganizationNotFoundError(organization_id)
        if not info.connection_string:
            return False
        try:
            conn = await asyncio.wait_for(asyncpg.connect(info.connection_string), timeout=timeout)
        except (OSError, asyncpg.PostgresError) as e:
            logger.warning(
                "Dedicated database unreachable", organization_id=organization_id, error=str(e)
            )
            return False
        try:
            return await conn.fetchval("SELECT 1") == 1
        finally:
            await conn.close()

    async def close_client(self, organization_id: str) -> None:
        await self.cache.remove(organization_id)

    async def close_all_clients(self) -> None:
        """Close every dedicated pool plus the shared and control pools (graceful shutdown)."""
        await self.cache.remove_all()
        await self.shared_pools.close()


class _LazyTenantDatabases:
    """Module-level default built from the environment on first attribute access."""

    def __init__(self) -> None:
        self._instance: TenantDatabases | None = None

    def configure(self, instance: TenantDatabases | None) -> None:
        self._instance = instance

    def __getattr__(self, name: str) -> Any:
        if self._instance is None:
            self._instance = TenantDatabases.from_env()
        return getattr(self._instance, name)


# Export the default manager for application code; tests build their own TenantDatabases
tenant_databases = _LazyTenantDatabases()
