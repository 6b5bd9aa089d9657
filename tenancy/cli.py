#!/usr/bin/env python3
"""
Dedicated tenant database administration CLI

Provision, inspect and verify white-label organizations' dedicated databases.
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

import typer
from dotenv import load_dotenv
from rich import box
from rich.table import Table

from tenancy.errors import OrganizationNotFoundError, TenancyError
from tenancy.provisioning.provisioner import ProvisionResult
from tenancy.service import TenantDatabases
from tenancy.utils.console import console, log_error, log_info, log_success, log_warning

load_dotenv()

app = typer.Typer(
    name="tenancy",
    help="Dedicated tenant database administration",
    add_completion=False,
)

T = TypeVar("T")


def run_with_databases(operation: Callable[[TenantDatabases], Awaitable[T]]) -> T:
    """Run one async operation against a fresh TenantDatabases, closing every pool afterwards."""

    async def _main() -> T:
        tenant_databases = TenantDatabases.from_env()
        try:
            return await operation(tenant_databases)
        finally:
            await tenant_databases.close_all_clients()

    try:
        return asyncio.run(_main())
    except OrganizationNotFoundError as e:
        log_error(str(e))
        raise typer.Exit(1) from e
    except TenancyError as e:
        log_error(f"{e.code}: {e}")
        raise typer.Exit(1) from e
    except ValueError as e:
        # Missing configuration (DATABASE_URL etc.)
        log_error(str(e))
        raise typer.Exit(1) from e


def report_result(result: ProvisionResult) -> None:
    if result.success:
        log_success(f"Dedicated database ready for {result.organization_id}")
        return

    if result.retryable:
        log_warning(result.reason or "Database not available yet")
        log_info(f"Run `tenancy provision {result.organization_id}` again shortly to resume")
    else:
        log_error(f"{result.error_code}: {result.reason}")
    raise typer.Exit(1)


@app.command()
def provision(organization_id: str = typer.Argument(..., help="Organization ID")) -> None:
    """Provision a dedicated database for an organization."""
    log_info(f"Provisioning dedicated database for {organization_id}...")
    with console.status("Waiting for Railway..."):
        result = run_with_databases(lambda dbs: dbs.provision_dedicated_database(organization_id))
    report_result(result)


@app.command()
def resync(organization_id: str = typer.Argument(..., help="Organization ID")) -> None:
    """Re-apply the schema to an organization's dedicated database and mark it ready."""
    log_info(f"Re-applying schema for {organization_id}...")
    result = run_with_databases(lambda dbs: dbs.resync_dedicated_database(organization_id))
    report_result(result)


@app.command()
def info(organization_id: str = typer.Argument(..., help="Organization ID")) -> None:
    """Show dedicated database status for an organization."""
    database_info = run_with_databases(lambda dbs: dbs.get_database_info(organization_id))

    table = Table(box=box.SIMPLE, show_header=False)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    table.add_row("Organization", database_info.organization_id)
    table.add_row("Dedicated database", "yes" if database_info.has_dedicated_db else "no")
    table.add_row("State", database_info.state.value)
    table.add_row(
        "Provisioned at",
        database_info.provisioned_at.isoformat() if database_info.provisioned_at else "-",
    )
    table.add_row("Railway project", database_info.railway_project_id or "-")
    if database_info.error_message:
        table.add_row("Last error", database_info.error_message)
    console.print(table)


@app.command("list")
def list_command() -> None:
    """List organizations with a dedicated database (in any state)."""
    organizations = run_with_databases(lambda dbs: dbs.store.list_dedicated_organizations())

    if not organizations:
        log_info("No organizations have a dedicated database")
        return

    table = Table(box=box.ROUNDED)
    table.add_column("Organization")
    table.add_column("State")
    table.add_column("Provisioned at")
    table.add_column("Railway project")
    for org in organizations:
        table.add_row(
            org.organization_id,
            org.state.value,
            org.provisioned_at.isoformat() if org.provisioned_at else "-",
            org.infra_project_id or "-",
        )
    console.print(table)


@app.command()
def verify(organization_id: str = typer.Argument(..., help="Organization ID")) -> None:
    """Check that an organization's dedicated database accepts connections."""
    reachable = run_with_databases(lambda dbs: dbs.verify_dedicated_database(organization_id))
    if reachable:
        log_success(f"Dedicated database for {organization_id} is reachable")
    else:
        log_error(f"Dedicated database for {organization_id} is missing or unreachable")
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
