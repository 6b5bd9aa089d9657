import asyncio
import contextlib
import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

import asyncpg

from tenancy.utils.config import get_tenant_pool_max_size
from tenancy.utils.logging import get_logger

logger = get_logger(__name__)


async def init_connection(conn: asyncpg.Connection) -> None:
    """An initializer run on every new connection from any pool created here."""
    await conn.set_type_codec(
        "jsonb",
        # Callsites json.dumps() explicitly, so encoding is a no-op
        encoder=lambda x: x,
        decoder=json.loads,
        schema="pg_catalog",
    )


async def create_tenant_pool(database_url: str, max_size: int | None = None) -> asyncpg.Pool:
    """Open a connection pool bound to one database (shared, control or dedicated)."""
    return await asyncpg.create_pool(
        database_url,
        min_size=0,
        max_size=max_size or get_tenant_pool_max_size(),
        timeout=30,  # connection acquisition timeout
        command_timeout=60,
        init=init_connection,
    )


@dataclass
class TenantPool:
    """A live database client bound to either the shared or a dedicated database.

    Borrowed by callers; only the ConnectionCache (or the owner of the shared pool) closes it.
    """

    pool: asyncpg.Pool
    database_url: str
    organization_id: str | None = None
    dedicated: bool = False

    def acquire(self):
        return self.pool.acquire()

    async def close(self) -> None:
        await self.pool.close()


PoolFactory = Callable[[], Awaitable[TenantPool]]


class ConnectionCache:
    """Process-lifetime registry of dedicated database pools keyed by organization id.

    At most one pool is cached per organization. There is no TTL or size bound: the number
    of organizations with dedicated databases is small.
    """

    def __init__(self) -> None:
        self._pools: dict[str, TenantPool] = {}
        # Created on first use, one per organization
        self._locks: dict[str, asyncio.Lock] = {}

    def __len__(self) -> int:
        return len(self._pools)

    def __contains__(self, organization_id: object) -> bool:
        return organization_id in self._pools

    def get(self, organization_id: str) -> TenantPool | None:
        return self._pools.get(organization_id)

    def put(self, organization_id: str, handle: TenantPool) -> None:
        """Store a handle, silently replacing any existing one.

        A replaced handle is not closed since another request may still be using it.
        """
        if organization_id in self._pools:
            logger.warning("Replacing cached tenant pool", organization_id=organization_id)
        self._pools[organization_id] = handle

    async def get_or_create(self, organization_id: str, factory: PoolFactory) -> TenantPool:
        """Return the cached handle or build one with `factory`.

        Creation runs under a per-organization lock so concurrent first-time lookups for the
        same organization share one pool while other organizations proceed independently.
        """
        handle = self._pools.get(organization_id)
        if handle is not None:
            return handle

        async with self._locks.setdefault(organization_id, asyncio.Lock()):
            # Double-check in case another request created it while we waited
            handle = self._pools.get(organization_id)
            if handle is not None:
                return handle

            handle = await factory()
            self._pools[organization_id] = handle
            logger.info(
                f"Created dedicated pool for org {organization_id}, new total {len(self._pools)} pools",
                organization_id=organization_id,
            )
            return handle

    async def remove(self, organization_id: str) -> None:
        """Close and evict a handle. Safe to call when nothing is cached."""
        handle = self._pools.pop(organization_id, None)
        if handle is None:
            return
        logger.info("Closing dedicated pool", organization_id=organization_id)
        await handle.close()

    async def remove_all(self) -> None:
        """Close and evict every cached handle, e.g. at process shutdown."""
        handles = list(self._pools.items())
        self._pools.clear()
        for organization_id, handle in handles:
            logger.info("Closing dedicated pool", organization_id=organization_id)
            try:
                await handle.close()
            except Exception as e:  # noqa: BLE001 - keep closing the remaining pools
                logger.error(
                    "Error closing dedicated pool", organization_id=organization_id, error=str(e)
                )
        # Recreated lazily in whichever event loop uses the cache next
        self._locks.clear()


class SharedPools:
    """Owns the shared application pool and the control-plane pool.

    When both URLs are equal (the default deployment) one pool serves both roles.
    """

    def __init__(
        self,
        database_url: str,
        control_database_url: str | None = None,
        pool_factory: Callable[[str], Awaitable[asyncpg.Pool]] = create_tenant_pool,
    ) -> None:
        self.database_url = database_url
        self.control_database_url = control_database_url or database_url
        self._pool_factory = pool_factory
        self._shared: TenantPool | None = None
        self._control_pool: asyncpg.Pool | None = None
        self._lock: asyncio.Lock | None = None

    @property
    def _init_lock(self) -> asyncio.Lock:
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    async def get_shared(self) -> TenantPool:
        """Get the shared database client, initializing it if needed."""
        if self._shared is None:
            async with self._init_lock:
                if self._shared is None:
                    pool = await self._pool_factory(self.database_url)
                    self._shared = TenantPool(pool=pool, database_url=self.database_url)
                    logger.info("Shared database pool initialized")
        return self._shared

    async def get_shared_pool(self) -> asyncpg.Pool:
        return (await self.get_shared()).pool

    async def get_control_pool(self) -> asyncpg.Pool:
        """Get the control database pool, reusing the shared pool when the URLs match."""
        if self.control_database_url == self.database_url:
            return await self.get_shared_pool()
        if self._control_pool is None:
            async with self._init_lock:
                if self._control_pool is None:
                    self._control_pool = await self._pool_factory(self.control_database_url)
                    logger.info("Control database pool initialized")
        return self._control_pool

    async def close(self) -> None:
        if self._control_pool is not None:
            with contextlib.suppress(Exception):
                await self._control_pool.close()
            self._control_pool = None
            logger.info("Control database pool closed")
        if self._shared is not None:
            with contextlib.suppress(Exception):
                await self._shared.close()
            self._shared = None
            logger.info("Shared database pool closed")
        self._lock = None
