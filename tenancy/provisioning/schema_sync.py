"""Bring a freshly provisioned tenant database up to the application schema."""

from __future__ import annotations

import asyncio
import os
import shlex
from pathlib import Path
from typing import Protocol

from tenancy.errors import SchemaSyncError
from tenancy.migrations.core import MigrationError, get_tenant_migrations_dir, migrate_database
from tenancy.utils.config import get_schema_sync_command, get_schema_sync_timeout
from tenancy.utils.logging import get_logger

logger = get_logger(__name__)


class SchemaSync(Protocol):
    async def sync(self, database_url: str) -> None:
        """Apply the schema, raising SchemaSyncError on failure."""
        ...


class MigrationSchemaSync:
    """Applies the tenant SQL migrations directly over asyncpg."""

    def __init__(self, migrations_dir: Path | None = None, timeout: int | None = None, retries: int = 3):
        self.migrations_dir = migrations_dir or get_tenant_migrations_dir()
        self.timeout = timeout or get_schema_sync_timeout()
        self.retries = retries

    async def sync(self, database_url: str) -> None:
        try:
            result = await migrate_database(
                database_url, self.migrations_dir, timeout=self.timeout, retries=self.retries
            )
        except MigrationError as e:
            raise SchemaSyncError(str(e)) from e
        except Exception as e:  # noqa: BLE001 - any sync failure must leave the database unroutable
            logger.error("Tenant migrations failed unexpectedly", error=str(e), exc_info=True)
            raise SchemaSyncError(f"Failed to apply tenant migrations: {e}") from e

        if not result.success:
            raise SchemaSyncError(
                f"Failed to apply tenant migrations ({result.applied}/{result.total} applied): {result.error}"
            )
        logger.info(
            f"Tenant migrations completed: {result.applied}/{result.total} applied",
            database=result.database,
        )


class CommandSchemaSync:
    """Runs an external schema tool (e.g. `npx prisma db push --skip-generate`).

    The target URL is passed as DATABASE_URL in the child environment, never on the command line.
    """

    def __init__(self, command: str, timeout: int | None = None, cwd: str | None = None):
        self.argv = shlex.split(command)
        if not self.argv:
            raise ValueError("Schema sync command cannot be empty")
        self.timeout = timeout or get_schema_sync_timeout()
        self.cwd = cwd

    async def sync(self, database_url: str) -> None:
        env = {**os.environ, "DATABASE_URL": database_url}
        try:
            process = await asyncio.create_subprocess_exec(
                *self.argv,
                env=env,
                cwd=self.cwd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise SchemaSyncError(f"Could not start schema sync command {self.argv[0]}: {e}") from e

        try:
            _, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except TimeoutError as e:
            process.kill()
            await process.wait()
            raise SchemaSyncError(f"Schema sync timed out after {self.timeout}s") from e

        if process.returncode != 0:
            tail = stderr.decode(errors="replace").strip()[-500:]
            logger.error("Schema sync command failed", returncode=process.returncode, stderr=tail)
            raise SchemaSyncError(
                f"Schema sync command exited with status {process.returncode}: {tail}"
            )


def schema_sync_from_env() -> SchemaSync:
    command = get_schema_sync_command()
    if command:
        return CommandSchemaSync(command)
    return MigrationSchemaSync()
