"""Organization-aware database routing with optional dedicated tenant databases."""

from tenancy.clients.tenant_db import ConnectionCache, TenantPool
from tenancy.errors import (
    ControlPlaneUnavailableError,
    InfraError,
    NotYetAvailableError,
    OrganizationNotFoundError,
    SchemaSyncError,
    TenancyError,
)
from tenancy.provisioning.provisioner import ProvisionResult
from tenancy.routing.session import TenantSession
from tenancy.service import DatabaseInfo, TenantDatabases, tenant_databases

__all__ = [
    "ConnectionCache",
    "ControlPlaneUnavailableError",
    "DatabaseInfo",
    "InfraError",
    "NotYetAvailableError",
    "OrganizationNotFoundError",
    "ProvisionResult",
    "SchemaSyncError",
    "TenancyError",
    "TenantDatabases",
    "TenantPool",
    "TenantSession",
    "tenant_databases",
]
