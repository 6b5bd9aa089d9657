#!/usr/bin/env python3
"""
Database migration CLI

Applies `sql/control` to the control/shared database and `sql/tenant` to
dedicated tenant databases whose connection strings are stored in the control plane.
"""

import asyncio
import re
from datetime import datetime

import asyncpg
import typer
from dotenv import load_dotenv
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskProgressColumn, TextColumn

from tenancy.control_plane.models import DatabaseState
from tenancy.migrations.core import (
    MigrationError,
    MigrationResult,
    get_control_migrations_dir,
    get_migration_files,
    get_tenant_migrations_dir,
    migrate_database,
)
from tenancy.utils.config import get_control_database_url
from tenancy.utils.console import console, log_error, log_info, log_success, log_warning

load_dotenv()

app = typer.Typer(
    name="migrations",
    help="Database migration management for control and dedicated tenant databases",
    add_completion=False,
)


def slugify(text: str) -> str:
    """Convert text to a slug suitable for filenames."""
    slug = re.sub(r"[^a-z0-9]+", "_", text.lower())
    return re.sub(r"_+", "_", slug).strip("_")


async def get_tenant_database_urls(
    control_db_url: str, organization_id: str | None = None
) -> dict[str, str]:
    """Map organization id -> dedicated database URL.

    Only organizations whose dedicated database finished provisioning are returned;
    `provisioning` and `failed` databases are brought up to date by the provisioner itself.
    """
    conn = await asyncpg.connect(control_db_url)
    try:
        query = """
            SELECT id, tenant_database_url FROM public.organizations
            WHERE tenant_database_provisioned
              AND tenant_database_url IS NOT NULL
              AND tenant_database_state = $1
        """
        params: list[str] = [DatabaseState.READY.value]
        if organization_id:
            query += " AND id = $2"
            params.append(organization_id)
        rows = await conn.fetch(query, *params)
        return {row["id"]: row["tenant_database_url"] for row in rows}
    finally:
        await conn.close()


@app.command()
def create(
    migration_type: str = typer.Argument(..., help="Migration type: 'control' or 'tenant'"),
    description: str = typer.Argument(..., help="Brief description of the migration"),
) -> None:
    """Create a new migration file with proper naming and template."""
    if migration_type not in ("control", "tenant"):
        log_error("Migration type must be 'control' or 'tenant'")
        raise typer.Exit(1)

    target_dir = (
        get_control_migrations_dir() if migration_type == "control" else get_tenant_migrations_dir()
    )
    target_dir.mkdir(parents=True, exist_ok=True)

    filepath = target_dir / f"{datetime.now().strftime('%Y%m%d%H%M%S')}_{slugify(description)}.sql"
    if filepath.exists():
        log_error(f"File already exists: {filepath}")
        raise typer.Exit(1)

    filepath.write_text(
        f"-- {migration_type.title()} DB Migration: {description}\n"
        f"-- Created: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}\n\n"
        "-- Each file runs inside a single transaction.\n"
    )
    log_success(f"Created migration file: {filepath}")


@app.command("list")
def list_command(
    control: bool = typer.Option(False, "--control", help="List control migrations only"),
    tenant: bool = typer.Option(False, "--tenant", help="List tenant migrations only"),
) -> None:
    """List available migration files."""
    if not control and not tenant:
        control = tenant = True

    for enabled, label, directory in (
        (control, "Control", get_control_migrations_dir()),
        (tenant, "Tenant", get_tenant_migrations_dir()),
    ):
        if not enabled:
            continue
        console.print(f"[blue]{label} Database Migrations:[/blue]")
        files = get_migration_files(directory)
        for file in files:
            console.print(f"  {file.name}")
        if not files:
            console.print("  No migrations found")
        console.print()


@app.command()
def migrate(
    control: bool = typer.Option(False, "--control", help="Migrate control database"),
    all_tenants: bool = typer.Option(
        False, "--all-tenants", help="Migrate all ready dedicated databases"
    ),
    tenant: str | None = typer.Option(
        None, "--tenant", help="Migrate one organization's dedicated database"
    ),
    dry_run: bool = typer.Option(
        False, "--dry-run", help="Show what would be done without executing"
    ),
    retries: int = typer.Option(3, "--retries", help="Number of connection attempts"),
    timeout: int = typer.Option(300, "--timeout", help="Statement timeout in seconds"),
    max_parallel: int = typer.Option(5, "--max-parallel", help="Maximum parallel tenant migrations"),
) -> None:
    """Run database migrations."""
    if not control and not all_tenants and not tenant:
        log_error("Must specify at least one target: --control, --all-tenants, or --tenant <id>")
        raise typer.Exit(1)

    ok = asyncio.run(
        run_migrations(
            control=control,
            all_tenants=all_tenants,
            tenant=tenant,
            dry_run=dry_run,
            retries=retries,
            timeout=timeout,
            max_parallel=max_parallel,
        )
    )
    if not ok:
        raise typer.Exit(1)


def _report(label: str, result: MigrationResult) -> None:
    if not result.success:
        log_error(f"{label}: {result.error}")
    elif result.applied:
        log_success(f"{label}: {result.applied} migrations applied")
    else:
        log_info(f"{label}: No new migrations to apply")


async def run_migrations(
    control: bool,
    all_tenants: bool,
    tenant: str | None,
    dry_run: bool,
    retries: int,
    timeout: int,
    max_parallel: int,
) -> bool:
    """Main migration execution logic. Returns False if any database failed."""
    if dry_run:
        console.print("[yellow]DRY RUN MODE - No changes will be made[/yellow]")

    try:
        control_db_url = get_control_database_url()
    except ValueError as e:
        log_error(str(e))
        return False

    results: list[MigrationResult] = []

    try:
        if control:
            console.print("[blue]Migrating control database[/blue]")
            result = await migrate_database(
                control_db_url,
                get_control_migrations_dir(),
                timeout=timeout,
                retries=retries,
                dry_run=dry_run,
            )
            _report("Control database", result)
            results.append(result)

        if tenant or all_tenants:
            tenant_urls = await get_tenant_database_urls(control_db_url, tenant)
            if tenant and tenant not in tenant_urls:
                log_error(f"Organization {tenant} has no ready dedicated database")
                return False
            if not tenant_urls:
                log_warning("No ready dedicated databases found")
            else:
                log_info(f"Migrating {len(tenant_urls)} dedicated databases")
                semaphore = asyncio.Semaphore(max_parallel)

                async def migrate_tenant(organization_id: str, db_url: str) -> MigrationResult:
                    async with semaphore:
                        result = await migrate_database(
                            db_url,
                            get_tenant_migrations_dir(),
                            timeout=timeout,
                            retries=retries,
                            dry_run=dry_run,
                        )
                    _report(f"Tenant {organization_id}", result)
                    return result

                with Progress(
                    SpinnerColumn(),
                    TextColumn("[progress.description]{task.description}"),
                    BarColumn(),
                    TaskProgressColumn(),
                    console=console,
                ) as progress:
                    task = progress.add_task("Migrating tenants...", total=len(tenant_urls))
                    tenant_results = await asyncio.gather(
                        *(migrate_tenant(org_id, url) for org_id, url in tenant_urls.items())
                    )
                    progress.update(task, advance=len(tenant_urls))
                results.extend(tenant_results)
    except (MigrationError, OSError, asyncpg.PostgresError) as e:
        log_error(f"Migration aborted: {e}")
        return False

    failures = [r for r in results if not r.success]
    total_applied = sum(r.applied for r in results)
    console.print("=" * 50)
    if dry_run:
        log_info("DRY RUN COMPLETE")
    elif failures:
        log_error(
            f"Migration FAILED on {len(failures)} databases ({total_applied} migrations applied)"
        )
    else:
        log_success(f"Migration complete: {total_applied} migrations applied")
    return not failures


if __name__ == "__main__":
    app()
