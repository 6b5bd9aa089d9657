"""Resolve the tenant database for a request from its session."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Protocol

from tenancy.clients.tenant_db import TenantPool
from tenancy.errors import OrganizationNotFoundError
from tenancy.routing.resolver import TenantResolver
from tenancy.utils.logging import get_logger

logger = get_logger(__name__)


class AgentDirectory(Protocol):
    async def get_agent_organization_id(self, agent_id: str) -> str | None: ...


@dataclass(frozen=True)
class TenantSession:
    """The identity fields of a request session that matter for routing."""

    organization_id: str | None = None
    agent_id: str | None = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "TenantSession":
        """Build from a decoded session payload (camelCase or snake_case keys)."""
        return cls(
            organization_id=data.get("organizationId") or data.get("organization_id"),
            agent_id=data.get("agentId") or data.get("agent_id"),
        )


class SessionTenantAdapter:
    def __init__(self, resolver: TenantResolver, agents: AgentDirectory) -> None:
        self._resolver = resolver
        self._agents = agents

    async def client_for(self, session: TenantSession | Mapping[str, Any] | None) -> TenantPool:
        """Get the database client for a session.

        An explicit organization id always wins over the acting agent's organization.
        Never raises for a missing organization; it degrades to the shared database.
        """
        if session is None:
            return await self._resolver.resolve_shared()
        if not isinstance(session, TenantSession):
            session = TenantSession.from_mapping(session)

        organization_id = session.organization_id
        if not organization_id and session.agent_id:
            organization_id = await self._agents.get_agent_organization_id(session.agent_id)
            if not organization_id:
                logger.debug("Agent has no organization, using shared database", agent_id=session.agent_id)

        if not organization_id:
            return await self._resolver.resolve_shared()

        try:
            return await self._resolver.resolve(organization_id)
        except OrganizationNotFoundError:
            logger.warning(
                "Session organization not found, using shared database",
                organization_id=organization_id,
                agent_id=session.agent_id,
            )
            return await self._resolver.resolve_shared()
