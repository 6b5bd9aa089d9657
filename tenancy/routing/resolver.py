"""Map an organization id to the database client it should use."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Protocol

from tenancy.clients.tenant_db import ConnectionCache, TenantPool, create_tenant_pool
from tenancy.control_plane.models import RoutingInfo
from tenancy.errors import OrganizationNotFoundError
from tenancy.utils.logging import get_logger

logger = get_logger(__name__)


class RoutingSource(Protocol):
    async def get_routing_info(self, organization_id: str) -> RoutingInfo | None: ...


class TenantResolver:
    """Routes organizations to the shared database or their dedicated database.

    Resolution order:
      1. No organization id: shared client.
      2. Cached dedicated handle: returned without touching the control plane.
      3. Control-plane lookup: shared client unless the dedicated database is ready,
         in which case a pool is opened, cached and returned.

    Control-plane failures propagate; there is no safe default when we cannot tell
    which database an organization lives in.
    """

    def __init__(
        self,
        store: RoutingSource,
        cache: ConnectionCache,
        get_shared: Callable[[], Awaitable[TenantPool]],
        *,
        pool_factory=create_tenant_pool,
        strict_organization_lookup: bool = True,
    ) -> None:
        self._store = store
        self._cache = cache
        self._get_shared = get_shared
        self._pool_factory = pool_factory
        self.strict_organization_lookup = strict_organization_lookup

    async def resolve_shared(self) -> TenantPool:
        return await self._get_shared()

    async def resolve(self, organization_id: str | None = None) -> TenantPool:
        if not organization_id:
            return await self._get_shared()

        cached = self._cache.get(organization_id)
        if cached is not None:
            return cached

        info = await self._store.get_routing_info(organization_id)
        if info is None:
            if self.strict_organization_lookup:
                raise OrganizationNotFoundError(organization_id)
            logger.warning(
                "Organization not found, using shared database", organization_id=organization_id
            )
            return await self._get_shared()

        if not info.is_routable:
            if info.provisioned:
                # URL stored but schema sync has not completed (or failed)
                logger.warning(
                    "Dedicated database not ready, using shared database",
                    organization_id=organization_id,
                    state=info.state.value,
                )
            return await self._get_shared()

        database_url = info.connection_string
        assert database_url is not None  # guaranteed by is_routable

        async def _open() -> TenantPool:
            pool = await self._pool_factory(database_url)
            return TenantPool(
                pool=pool,
                database_url=database_url,
                organization_id=organization_id,
                dedicated=True,
            )

        return await self._cache.get_or_create(organization_id, _open)
