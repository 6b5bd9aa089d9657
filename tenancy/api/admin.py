"""Admin endpoints for white-label dedicated databases.

The router carries no authentication of its own; the host application passes its admin
dependencies to `build_admin_router`, and stores a TenantDatabases instance on
`app.state.tenant_databases`.
"""

from collections.abc import Sequence

from fastapi import APIRouter, Depends, HTTPException, Request, params
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from tenancy.errors import (
    AlreadyProvisionedError,
    InfraError,
    NotYetAvailableError,
    OrganizationNotFoundError,
)
from tenancy.service import TenantDatabases
from tenancy.utils.logging import LogContext, get_logger

logger = get_logger(__name__)

# Provisioning error code -> HTTP status
ERROR_STATUS = {
    OrganizationNotFoundError.code: 404,
    AlreadyProvisionedError.code: 409,
    NotYetAvailableError.code: 503,
    InfraError.code: 502,
}


class ProvisionRequest(BaseModel):
    organization_id: str | None = Field(default=None, alias="organizationId")


def get_tenant_databases(request: Request) -> TenantDatabases:
    tenant_databases = getattr(request.app.state, "tenant_databases", None)
    if tenant_databases is None:
        raise HTTPException(status_code=500, detail="Tenant databases are not configured")
    return tenant_databases


def build_admin_router(dependencies: Sequence[params.Depends] | None = None) -> APIRouter:
    router = APIRouter(
        prefix="/admin/white-label", tags=["admin"], dependencies=list(dependencies or [])
    )

    @router.post("/provision")
    async def provision_database(
        body: ProvisionRequest,
        tenant_databases: TenantDatabases = Depends(get_tenant_databases),
    ):
        """Provision a dedicated database for an organization."""
        if not body.organization_id:
            raise HTTPException(status_code=400, detail="organizationId is required")

        with LogContext(organization_id=body.organization_id):
            result = await tenant_databases.provision_dedicated_database(body.organization_id)

            if not result.success:
                status_code = ERROR_STATUS.get(result.error_code or "", 500)
                logger.warning(
                    "Provisioning request failed",
                    error_code=result.error_code,
                    status_code=status_code,
                )
                return JSONResponse(
                    status_code=status_code,
                    content={
                        "success": False,
                        "error": result.reason,
                        "errorCode": result.error_code,
                        "retryable": result.retryable,
                    },
                )

            info = await tenant_databases.get_database_info(body.organization_id)
            return {
                "success": True,
                "message": "Database provisioned successfully",
                "data": info.to_dict(),
            }

    @router.get("/provision")
    async def get_database_status(
        organizationId: str | None = None,  # noqa: N803 - matches the public query parameter
        tenant_databases: TenantDatabases = Depends(get_tenant_databases),
    ):
        """Get dedicated database status for an organization."""
        if not organizationId:
            raise HTTPException(status_code=400, detail="organizationId is required")
        try:
            info = await tenant_databases.get_database_info(organizationId)
        except OrganizationNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e)) from e
        return {"success": True, "data": info.to_dict()}

    return router
