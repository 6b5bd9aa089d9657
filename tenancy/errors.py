"""
Exceptions raised by tenant database routing and provisioning.
"""


class TenancyError(Exception):
    """Base class for routing and provisioning errors.

    `code` is the stable identifier reported in provisioning results and admin responses.
    """

    code = "TenancyError"
    retryable = False


class OrganizationNotFoundError(TenancyError):
    code = "OrganizationNotFound"

    def __init__(self, organization_id: str):
        self.organization_id = organization_id
        super().__init__(f"Organization {organization_id} not found")


class InfraError(TenancyError):
    """The infrastructure API returned an explicit error, or could not be reached.

    Terminal: usually a configuration or quota problem (missing token, bad project id).
    """

    code = "InfraError"


class NotYetAvailableError(TenancyError):
    """Infrastructure accepted the request but has not exposed connection details yet."""

    code = "NotYetAvailable"
    retryable = True

    def __init__(
        self,
        message: str = "Database created but URL not yet available. Please try again in a few minutes.",
    ):
        super().__init__(message)


class SchemaSyncError(TenancyError):
    """Applying the application schema to a dedicated database failed."""

    code = "SchemaSyncError"


class ControlPlaneUnavailableError(TenancyError):
    """The control database holding routing metadata could not be reached."""

    code = "ControlPlaneUnavailable"


class AlreadyProvisionedError(TenancyError):
    code = "AlreadyProvisioned"

    def __init__(self, organization_id: str):
        self.organization_id = organization_id
        super().__init__("Organization already has a dedicated database")


class NotProvisionedError(TenancyError):
    code = "NotProvisioned"

    def __init__(self, organization_id: str):
        self.organization_id = organization_id
        super().__init__(f"Organization {organization_id} has no dedicated database")
