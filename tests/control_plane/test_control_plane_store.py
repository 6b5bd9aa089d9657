"""Tests for ControlPlaneStore query shaping and error mapping."""

import contextlib
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import asyncpg
import pytest

from tenancy.control_plane.models import DatabaseState
from tenancy.control_plane.store import ControlPlaneStore
from tenancy.errors import ControlPlaneUnavailableError


def make_pool(conn):
    @contextlib.asynccontextmanager
    async def acquire():
        yield conn

    pool = MagicMock()
    pool.acquire = acquire
    return pool


def organization_record(**overrides):
    record = {
        "id": "org_b",
        "name": "Org B",
        "slug": "org-b",
        "tenant_database_provisioned": True,
        "tenant_database_url": "postgresql://tenant/railway",
        "tenant_database_provisioned_at": datetime(2025, 1, 1, tzinfo=UTC),
        "tenant_railway_project_id": "proj_1",
        "tenant_database_state": "ready",
        "tenant_database_error": None,
    }
    record.update(overrides)
    return record


@pytest.fixture
def conn():
    conn = MagicMock()
    conn.fetchrow = AsyncMock()
    conn.fetch = AsyncMock(return_value=[])
    conn.fetchval = AsyncMock()
    conn.execute = AsyncMock()
    return conn


@pytest.fixture
def store(conn):
    return ControlPlaneStore(AsyncMock(return_value=make_pool(conn)))


class TestReads:
    @pytest.mark.asyncio
    async def test_get_routing_info_maps_columns(self, store, conn):
        conn.fetchrow.return_value = organization_record()

        info = await store.get_routing_info("org_b")

        assert info.organization_id == "org_b"
        assert info.provisioned is True
        assert info.connection_string == "postgresql://tenant/railway"
        assert info.infra_project_id == "proj_1"
        assert info.state == DatabaseState.READY
        assert info.is_routable is True
        assert conn.fetchrow.await_args.args[1] == "org_b"

    @pytest.mark.asyncio
    async def test_get_routing_info_missing_returns_none(self, store, conn):
        conn.fetchrow.return_value = None
        assert await store.get_routing_info("org_missing") is None

    @pytest.mark.asyncio
    async def test_provisioned_but_failed_is_not_routable(self, store, conn):
        conn.fetchrow.return_value = organization_record(
            tenant_database_state="failed", tenant_database_error="push failed"
        )

        info = await store.get_routing_info("org_b")

        assert info.is_routable is False
        assert info.error_message == "push failed"

    @pytest.mark.asyncio
    async def test_agent_lookup_uses_shared_pool(self, conn):
        shared_conn = MagicMock()
        shared_conn.fetchval = AsyncMock(return_value="org_a")
        store = ControlPlaneStore(
            AsyncMock(return_value=make_pool(conn)), AsyncMock(return_value=make_pool(shared_conn))
        )

        assert await store.get_agent_organization_id("agent_1") == "org_a"
        shared_conn.fetchval.assert_awaited_once()
        conn.fetchval.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_list_dedicated_organizations(self, store, conn):
        conn.fetch.return_value = [
            organization_record(),
            organization_record(id="org_c", tenant_database_state="provisioning"),
        ]

        infos = await store.list_dedicated_organizations()

        assert [info.organization_id for info in infos] == ["org_b", "org_c"]
        assert infos[1].state == DatabaseState.PROVISIONING


class TestWrites:
    @pytest.mark.asyncio
    async def test_mark_provisioned_keeps_state_provisioning(self, store, conn):
        await store.mark_provisioned("org_b", "postgresql://tenant/railway", "proj_1")

        query, *params = conn.execute.await_args.args
        assert query.startswith("UPDATE public.organizations SET")
        assert "tenant_database_provisioned = true" in query
        assert "updated_at = now()" in query
        assert query.rstrip().endswith("WHERE id = $1")
        assert params == ["org_b", "postgresql://tenant/railway", "proj_1", "provisioning"]

    @pytest.mark.asyncio
    async def test_mark_ready_and_failed(self, store, conn):
        await store.mark_ready("org_b")
        assert conn.execute.await_args.args[1:] == ("org_b", "ready")

        await store.mark_failed("org_b", "boom")
        assert conn.execute.await_args.args[1:] == ("org_b", "failed", "boom")

    @pytest.mark.asyncio
    async def test_record_and_clear_infra_project(self, store, conn):
        await store.record_infra_project("org_b", "proj_9")
        assert conn.execute.await_args.args[1:] == ("org_b", "proj_9", "provisioning")

        await store.clear_infra_project("org_b")
        assert "tenant_railway_project_id = NULL" in conn.execute.await_args.args[0]
        assert conn.execute.await_args.args[1:] == ("org_b", "none")


class TestConnectionErrors:
    @pytest.mark.asyncio
    async def test_pool_creation_failure_is_control_plane_unavailable(self):
        store = ControlPlaneStore(AsyncMock(side_effect=OSError("connection refused")))

        with pytest.raises(ControlPlaneUnavailableError):
            await store.get_routing_info("org_b")

    @pytest.mark.asyncio
    async def test_connection_lost_during_query(self, store, conn):
        conn.fetchrow.side_effect = asyncpg.exceptions.ConnectionDoesNotExistError("closed")

        with pytest.raises(ControlPlaneUnavailableError):
            await store.get_routing_info("org_b")

    @pytest.mark.asyncio
    async def test_query_errors_propagate_unchanged(self, store, conn):
        conn.fetchrow.side_effect = asyncpg.exceptions.UndefinedColumnError("no such column")

        with pytest.raises(asyncpg.exceptions.UndefinedColumnError):
            await store.get_routing_info("org_b")
