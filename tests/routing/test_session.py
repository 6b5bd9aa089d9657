"""Tests for session-based tenant resolution."""

import pytest

from tenancy.control_plane.models import DatabaseState
from tenancy.routing.resolver import TenantResolver
from tenancy.routing.session import SessionTenantAdapter, TenantSession

DEDICATED_URL = "postgresql://tenant:pw@org-b.railway.internal:5432/railway"


@pytest.fixture
def adapter(control_plane, cache, get_shared, pool_factory):
    control_plane.add_organization("org_a")
    control_plane.add_organization(
        "org_b", provisioned=True, url=DEDICATED_URL, state=DatabaseState.READY
    )
    control_plane.agents = {"agent_a": "org_a", "agent_b": "org_b", "agent_solo": None}
    resolver = TenantResolver(control_plane, cache, get_shared, pool_factory=pool_factory)
    return SessionTenantAdapter(resolver, control_plane)


class TestTenantSession:
    def test_from_mapping_accepts_camel_case(self):
        session = TenantSession.from_mapping({"organizationId": "org_b", "agentId": "agent_a"})
        assert session == TenantSession(organization_id="org_b", agent_id="agent_a")

    def test_from_mapping_accepts_snake_case(self):
        session = TenantSession.from_mapping({"organization_id": "org_b"})
        assert session.organization_id == "org_b"
        assert session.agent_id is None


class TestSessionTenantAdapter:
    """Test suite for SessionTenantAdapter.client_for."""

    @pytest.mark.asyncio
    async def test_missing_session_returns_shared(self, adapter, shared_client):
        assert await adapter.client_for(None) is shared_client
        assert await adapter.client_for({}) is shared_client

    @pytest.mark.asyncio
    async def test_explicit_organization_wins_over_agent(self, adapter, shared_client):
        """The agent belongs to org_a (shared) but the session names org_b (dedicated)."""
        client = await adapter.client_for(
            TenantSession(organization_id="org_b", agent_id="agent_a")
        )

        assert client is not shared_client
        assert client.organization_id == "org_b"

    @pytest.mark.asyncio
    async def test_agent_organization_used_when_no_explicit_organization(self, adapter):
        client = await adapter.client_for({"agentId": "agent_b"})
        assert client.organization_id == "org_b"

    @pytest.mark.asyncio
    async def test_agent_without_organization_returns_shared(self, adapter, shared_client):
        assert await adapter.client_for({"agentId": "agent_solo"}) is shared_client
        assert await adapter.client_for({"agentId": "agent_unknown"}) is shared_client

    @pytest.mark.asyncio
    async def test_unknown_organization_degrades_to_shared(self, adapter, shared_client):
        assert await adapter.client_for({"organizationId": "org_deleted"}) is shared_client
