"""SQL-file migrations shared by the migrations CLI and dedicated database provisioning.

Migration files live in `sql/control` (the control plane / shared database) and
`sql/tenant` (applied to every dedicated tenant database). File names start with a
timestamp version, e.g. `20250301120000_add_tenant_database_routing.sql`; applied versions
are tracked in `public.schema_migrations`.
"""

import asyncio
import os
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import urlparse

import asyncpg
import sqlparse

from tenancy.utils.logging import get_logger

logger = get_logger(__name__)

MIGRATION_TABLE = "schema_migrations"

# Unreachable host, refused auth, broken connection or a malformed DSN
CONNECT_ERRORS: tuple[type[Exception], ...] = (
    OSError,
    ValueError,
    asyncpg.PostgresError,
    asyncpg.InterfaceError,
)


class MigrationError(Exception):
    """Raised for migration setup problems (missing directories, bad environment)."""


@dataclass
class MigrationResult:
    database: str
    applied: int = 0
    total: int = 0
    success: bool = True
    failed_version: str | None = None
    error: str | None = None


def get_migrations_dir() -> Path:
    """Get the migrations directory path (the bundled `sql/` directory unless MIGRATIONS_DIR is set)."""
    default_path = Path(__file__).parent / "sql"
    return Path(os.getenv("MIGRATIONS_DIR", str(default_path)))


def get_tenant_migrations_dir() -> Path:
    return get_migrations_dir() / "tenant"


def get_control_migrations_dir() -> Path:
    return get_migrations_dir() / "control"


def get_migration_files(directory: Path) -> list[Path]:
    """Get all migration files from a directory, sorted by timestamp."""
    if not directory.exists():
        return []
    # Timestamp prefix ensures correct order
    return sorted(directory.glob("*.sql"))


def extract_version_from_filename(filename: str) -> str:
    return filename.split("_")[0]


def parse_sql_statements(sql_content: str) -> list[str]:
    """Parse SQL content into individual statements."""
    return [stmt.strip() for stmt in sqlparse.split(sql_content) if stmt.strip()]


def database_name(db_url: str) -> str:
    """Database name from a connection URL, for logging without leaking credentials."""
    return urlparse(db_url).path.lstrip("/") or "postgres"


async def ensure_migrations_table(conn: asyncpg.Connection) -> None:
    await conn.execute(f"""
        CREATE TABLE IF NOT EXISTS public.{MIGRATION_TABLE} (
            version VARCHAR(255) PRIMARY KEY,
            applied_at TIMESTAMP WITH TIME ZONE DEFAULT NOW()
        );
    """)


async def get_applied_migrations(conn: asyncpg.Connection) -> set[str]:
    """Get set of applied migration versions."""
    exists = await conn.fetchval(
        """
        SELECT EXISTS (
            SELECT FROM information_schema.tables
            WHERE table_schema = 'public' AND table_name = $1
        )
        """,
        MIGRATION_TABLE,
    )
    if not exists:
        return set()

    rows = await conn.fetch(f"SELECT version FROM public.{MIGRATION_TABLE}")
    return {row["version"] for row in rows}


async def apply_migration_file(
    conn: asyncpg.Connection, migration_file: Path, timeout: int = 300
) -> None:
    """Apply a single migration file and record it, in one transaction."""
    version = extract_version_from_filename(migration_file.name)
    migration_sql = migration_file.read_text()

    async with conn.transaction():
        await conn.execute(f"SET LOCAL statement_timeout = '{timeout}s'")
        await conn.execute(migration_sql)
        await conn.execute(f"INSERT INTO public.{MIGRATION_TABLE} (version) VALUES ($1)", version)

    logger.info(f"Applied migration {migration_file.name}")


async def connect_with_retries(db_url: str, retries: int = 3) -> asyncpg.Connection:
    """Connect with exponential backoff. A freshly provisioned database may refuse connections briefly."""
    for attempt in range(retries):
        try:
            return await asyncpg.connect(db_url)
        except CONNECT_ERRORS as e:
            if attempt == retries - 1:
                raise
            wait_time = 2**attempt
            logger.warning(
                f"Connection to {database_name(db_url)} failed, retrying in {wait_time}s",
                error=str(e),
            )
            await asyncio.sleep(wait_time)
    raise MigrationError("retries must be at least 1")


async def migrate_database(
    db_url: str,
    migrations_dir: Path,
    timeout: int = 300,
    retries: int = 3,
    dry_run: bool = False,
) -> MigrationResult:
    """Apply every pending migration in `migrations_dir` to one database.

    Stops at the first failing file; the failure is reported in the result rather than raised.
    """
    db_name = database_name(db_url)
    result = MigrationResult(database=db_name)

    if not migrations_dir.exists():
        raise MigrationError(f"Migration directory {migrations_dir} not found")

    migration_files = get_migration_files(migrations_dir)
    result.total = len(migration_files)
    if not migration_files:
        logger.info(f"No migrations found for {db_name}")
        return result

    if dry_run:
        for migration_file in migration_files:
            statements = parse_sql_statements(migration_file.read_text())
            logger.info(
                f"DRY RUN: Would apply {migration_file.name} to {db_name}",
                statement_count=len(statements),
            )
        return result

    try:
        conn = await connect_with_retries(db_url, retries)
    except CONNECT_ERRORS as e:
        logger.error(f"Failed to connect to {db_name} after {retries} attempts: {e}")
        result.success = False
        result.error = f"Could not connect to {db_name}: {e}"
        return result

    try:
        await ensure_migrations_table(conn)
        applied_migrations = await get_applied_migrations(conn)

        for migration_file in migration_files:
            version = extract_version_from_filename(migration_file.name)
            if version in applied_migrations:
                logger.debug(f"Skipping {migration_file.name} (already applied to {db_name})")
                continue

            try:
                await apply_migration_file(conn, migration_file, timeout)
            except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
                logger.error(f"Failed to apply {migration_file.name} to {db_name}: {e}")
                result.success = False
                result.failed_version = version
                result.error = f"{migration_file.name}: {e}"
                break
            result.applied += 1

        return result
    finally:
        await conn.close()
