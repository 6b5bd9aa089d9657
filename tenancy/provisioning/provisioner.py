"""Dedicated database provisioning.

Creates an isolated PostgreSQL instance for one organization on Railway:
- Creates a Railway project (checkpointed on the organization row)
- Attaches a PostgreSQL service, deleting the project again if that fails
- Polls with backoff until Railway exposes the connection string
- Stores the connection string, applies the schema, then marks the database ready

Routing only switches to the dedicated database once it is `ready`, so a schema sync
failure never sends traffic to a half-built database. A retry resumes from the last
checkpoint: a stored URL resumes at schema sync, a stored project id resumes at polling.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

import newrelic.agent

from tenancy.clients.railway import (
    RailwayClient,
    RailwayService,
    create_railway_client,
    generate_project_name,
)
from tenancy.control_plane.models import DatabaseState, OrganizationRow
from tenancy.control_plane.store import ControlPlaneStore
from tenancy.errors import (
    AlreadyProvisionedError,
    InfraError,
    NotProvisionedError,
    NotYetAvailableError,
    OrganizationNotFoundError,
    SchemaSyncError,
    TenancyError,
)
from tenancy.provisioning.schema_sync import SchemaSync, schema_sync_from_env
from tenancy.utils.config import (
    get_tenant_database_poll_initial_delay,
    get_tenant_database_poll_max_delay,
    get_tenant_database_ready_timeout,
    get_tenant_project_prefix,
)
from tenancy.utils.logging import LogContext, get_logger

logger = get_logger(__name__)

UNEXPECTED_ERROR = "UnexpectedError"


@dataclass
class ProvisionResult:
    success: bool
    organization_id: str
    database_url: str | None = None
    reason: str | None = None
    error_code: str | None = None

    @property
    def retryable(self) -> bool:
        return self.error_code == NotYetAvailableError.code

    @classmethod
    def failed(cls, organization_id: str, error: TenancyError) -> ProvisionResult:
        return cls(
            success=False,
            organization_id=organization_id,
            reason=str(error),
            error_code=error.code,
        )


@dataclass
class ProvisionerSettings:
    project_prefix: str = "wp-tenant"
    ready_timeout: float = 120.0
    poll_initial_delay: float = 2.0
    poll_max_delay: float = 15.0

    @classmethod
    def from_env(cls) -> ProvisionerSettings:
        return cls(
            project_prefix=get_tenant_project_prefix(),
            ready_timeout=get_tenant_database_ready_timeout(),
            poll_initial_delay=get_tenant_database_poll_initial_delay(),
            poll_max_delay=get_tenant_database_poll_max_delay(),
        )


class Provisioner:
    def __init__(
        self,
        store: ControlPlaneStore,
        *,
        railway_factory: Callable[[], RailwayClient] = create_railway_client,
        schema_sync: SchemaSync | None = None,
        settings: ProvisionerSettings | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._railway_factory = railway_factory
        self._schema_sync = schema_sync or schema_sync_from_env()
        self.settings = settings or ProvisionerSettings.from_env()
        self._sleep = sleep
        self._clock = clock

    @newrelic.agent.background_task(name="Provisioner/provision_dedicated_database")
    async def provision(self, organization_id: str) -> ProvisionResult:
        """Provision a dedicated database. Failures are returned, never raised."""
        newrelic.agent.add_custom_attribute("organization_id", organization_id)
        with LogContext(organization_id=organization_id):
            logger.info(f"Starting dedicated database provisioning for org {organization_id}")
            return await self._run(organization_id, self._provision)

    async def resync_schema(self, organization_id: str) -> ProvisionResult:
        """Re-apply the schema to an organization's stored dedicated database and mark it ready."""
        with LogContext(organization_id=organization_id):
            return await self._run(organization_id, self._resync)

    async def _run(
        self, organization_id: str, step: Callable[[str], Awaitable[str]]
    ) -> ProvisionResult:
        try:
            database_url = await step(organization_id)
        except NotYetAvailableError as e:
            logger.warning("Dedicated database not reachable yet, retry later", error=str(e))
            return ProvisionResult.failed(organization_id, e)
        except TenancyError as e:
            newrelic.agent.notice_error()
            logger.error(
                f"Failed to provision dedicated database for org {organization_id}",
                error=str(e),
                error_code=e.code,
            )
            return ProvisionResult.failed(organization_id, e)
        except Exception as e:  # noqa: BLE001 - provisioning reports failures as results
            newrelic.agent.notice_error()
            logger.error(
                f"Unexpected error provisioning dedicated database for org {organization_id}",
                error=str(e),
                exc_info=True,
            )
            return ProvisionResult(
                success=False,
                organization_id=organization_id,
                reason=str(e) or "Failed to provision database",
                error_code=UNEXPECTED_ERROR,
            )

        logger.info(f"Dedicated database ready for org {organization_id}")
        return ProvisionResult(
            success=True, organization_id=organization_id, database_url=database_url
        )

    async def _load_organization(self, organization_id: str) -> OrganizationRow:
        org = await self._store.get_organization(organization_id)
        if org is None:
            raise OrganizationNotFoundError(organization_id)
        return org

    async def _provision(self, organization_id: str) -> str:
        # Step 1: Look up the organization and pick up any checkpoint
        org = await self._load_organization(organization_id)
        if org.state == DatabaseState.READY and org.tenant_database_provisioned:
            raise AlreadyProvisionedError(organization_id)

        if org.tenant_database_provisioned and org.tenant_database_url:
            logger.info("Connection string already stored, resuming at schema sync")
            await self._sync_schema(organization_id, org.tenant_database_url)
            return org.tenant_database_url

        async with self._railway_factory() as railway:
            project_id = (
                org.tenant_railway_project_id if org.state == DatabaseState.PROVISIONING else None
            )
            if project_id:
                logger.info("Resuming with existing Railway project", project_id=project_id)
                environment_id, service = await self._resume_project(
                    railway, organization_id, project_id
                )
            else:
                # Step 2: Create the Railway project
                project_name = generate_project_name(
                    org.slug or org.id, prefix=self.settings.project_prefix
                )
                logger.info("Creating Railway project", project_name=project_name)
                project = await railway.create_project(
                    project_name, description=f"Dedicated database for {org.name or org.id}"
                )
                project_id = project.id
                await self._store.record_infra_project(organization_id, project_id)

                # Step 3: Attach a PostgreSQL service
                environment_id, service = await self._attach_database(
                    railway, organization_id, project_id
                )

            # Steps 4-5: Wait until Railway exposes the connection string
            database_url = await self._wait_for_database_url(
                railway, project_id, environment_id, service.id
            )

        # Step 6: Persist the connection string (not routable until the schema is in place)
        await self._store.mark_provisioned(organization_id, database_url, project_id)

        # Step 7: Apply the schema and flip the organization to ready
        await self._sync_schema(organization_id, database_url)
        return database_url

    async def _resync(self, organization_id: str) -> str:
        org = await self._load_organization(organization_id)
        if not org.tenant_database_url:
            raise NotProvisionedError(organization_id)
        await self._sync_schema(
            organization_id,
            org.tenant_database_url,
            serving=org.state == DatabaseState.READY and org.tenant_database_provisioned,
        )
        return org.tenant_database_url

    async def _attach_database(
        self, railway: RailwayClient, organization_id: str, project_id: str
    ) -> tuple[str, RailwayService]:
        logger.info("Attaching PostgreSQL service", project_id=project_id)
        try:
            environment_id = await railway.get_production_environment_id(project_id)
            service = await railway.create_postgres_service(project_id)
        except InfraError:
            await self._rollback_project(railway, organization_id, project_id)
            raise
        return environment_id, service

    async def _resume_project(
        self, railway: RailwayClient, organization_id: str, project_id: str
    ) -> tuple[str, RailwayService]:
        environment_id = await railway.get_production_environment_id(project_id)
        service = await railway.find_postgres_service(project_id)
        if service is None:
            return await self._attach_database(railway, organization_id, project_id)
        return environment_id, service

    async def _rollback_project(
        self, railway: RailwayClient, organization_id: str, project_id: str
    ) -> None:
        """Delete a project whose database could not be attached, then clear the checkpoint."""
        logger.warning("Deleting partially provisioned Railway project", project_id=project_id)
        try:
            await railway.delete_project(project_id)
            await self._store.clear_infra_project(organization_id)
        except Exception as e:  # noqa: BLE001 - cleanup must not mask the attach error
            newrelic.agent.notice_error()
            logger.error(
                "Failed to clean up Railway project, it must be removed manually",
                project_id=project_id,
                error=str(e),
            )

    async def _wait_for_database_url(
        self, railway: RailwayClient, project_id: str, environment_id: str, service_id: str
    ) -> str:
        """Poll for the generated connection string with exponential backoff, up to ready_timeout."""
        deadline = self._clock() + self.settings.ready_timeout
        delay = self.settings.poll_initial_delay
        attempt = 0

        while True:
            attempt += 1
            try:
                database_url = await railway.get_database_url(
                    project_id, environment_id, service_id
                )
            except InfraError as e:
                # Variables are often not queryable right after the service is created
                logger.info("Database URL lookup failed, will retry", attempt=attempt, error=str(e))
                database_url = None

            if database_url:
                logger.info("Database URL available", attempt=attempt)
                return database_url

            remaining = deadline - self._clock()
            if remaining <= 0:
                raise NotYetAvailableError()

            await self._sleep(min(delay, remaining))
            delay = min(delay * 2, self.settings.poll_max_delay)

    async def _sync_schema(
        self, organization_id: str, database_url: str, serving: bool = False
    ) -> None:
        """Apply the schema, then mark the database ready.

        When `serving` is set the database already holds the organization's data, so a
        failed sync only records the error and the organization keeps routing to it.
        """
        logger.info(f"Applying schema to dedicated database for org {organization_id}")
        try:
            await self._schema_sync.sync(database_url)
        except SchemaSyncError as e:
            if serving:
                logger.warning("Schema sync failed on a serving database, routing unchanged")
                await self._store.record_sync_error(organization_id, str(e))
            else:
                await self._store.mark_failed(organization_id, str(e))
            raise
        await self._store.mark_ready(organization_id)
