from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum


class DatabaseState(StrEnum):
    """Lifecycle of an organization's dedicated database, stored in tenant_database_state."""

    NONE = "none"
    PROVISIONING = "provisioning"
    READY = "ready"
    FAILED = "failed"


@dataclass
class OrganizationRow:
    id: str
    name: str | None
    slug: str | None
    tenant_database_provisioned: bool
    tenant_database_url: str | None
    tenant_database_provisioned_at: datetime | None
    tenant_railway_project_id: str | None
    tenant_database_state: str
    tenant_database_error: str | None

    @property
    def state(self) -> DatabaseState:
        return DatabaseState(self.tenant_database_state or DatabaseState.NONE)


@dataclass
class RoutingInfo:
    """Routing metadata for one organization as read from the control plane."""

    organization_id: str
    provisioned: bool
    connection_string: str | None = None
    provisioned_at: datetime | None = None
    infra_project_id: str | None = None
    state: DatabaseState = DatabaseState.NONE
    error_message: str | None = None

    @property
    def is_routable(self) -> bool:
        """Only a provisioned database whose schema sync finished receives traffic."""
        return bool(
            self.provisioned and self.connection_string and self.state == DatabaseState.READY
        )

    @classmethod
    def from_row(cls, row: OrganizationRow) -> "RoutingInfo":
        return cls(
            organization_id=row.id,
            provisioned=bool(row.tenant_database_provisioned),
            connection_string=row.tenant_database_url,
            provisioned_at=row.tenant_database_provisioned_at,
            infra_project_id=row.tenant_railway_project_id,
            state=row.state,
            error_message=row.tenant_database_error,
        )
