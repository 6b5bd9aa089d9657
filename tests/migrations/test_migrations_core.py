"""Tests for migration file discovery and the migrate_database driver."""

import tomllib
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import asyncpg
import pytest

import tenancy.migrations
from tenancy.migrations.core import (
    MigrationError,
    database_name,
    extract_version_from_filename,
    get_control_migrations_dir,
    get_migration_files,
    get_migrations_dir,
    get_tenant_migrations_dir,
    migrate_database,
    parse_sql_statements,
)

DB_URL = "postgresql://u:p@db.internal:5432/railway"


@pytest.fixture
def migrations_dir(tmp_path):
    (tmp_path / "20250302000000_add_contacts.sql").write_text("CREATE TABLE contacts (id TEXT);")
    (tmp_path / "20250301000000_baseline.sql").write_text(
        "CREATE TABLE a (id TEXT); CREATE TABLE b (id TEXT);"
    )
    (tmp_path / "README.md").write_text("not a migration")
    return tmp_path


class TestDiscovery:
    def test_files_sorted_by_version(self, migrations_dir):
        names = [path.name for path in get_migration_files(migrations_dir)]
        assert names == ["20250301000000_baseline.sql", "20250302000000_add_contacts.sql"]

    def test_missing_directory_has_no_files(self, tmp_path):
        assert get_migration_files(tmp_path / "missing") == []

    def test_extract_version(self):
        assert extract_version_from_filename("20250301000000_baseline.sql") == "20250301000000"

    def test_parse_sql_statements(self):
        assert parse_sql_statements("SELECT 1;\n\nSELECT 2;\n") == ["SELECT 1;", "SELECT 2;"]

    def test_database_name_hides_credentials(self):
        assert database_name(DB_URL) == "railway"
        assert database_name("postgresql://u:p@host") == "postgres"

    def test_migrations_dir_env_override(self, monkeypatch, tmp_path):
        monkeypatch.setenv("MIGRATIONS_DIR", str(tmp_path))
        assert get_control_migrations_dir() == tmp_path / "control"
        assert get_tenant_migrations_dir() == tmp_path / "tenant"

    def test_bundled_migrations_exist(self, monkeypatch):
        monkeypatch.delenv("MIGRATIONS_DIR", raising=False)
        assert get_migration_files(get_control_migrations_dir())
        assert get_migration_files(get_tenant_migrations_dir())

    def test_bundled_migrations_ship_inside_the_package(self, monkeypatch):
        monkeypatch.delenv("MIGRATIONS_DIR", raising=False)
        package_dir = Path(tenancy.migrations.__file__).parent

        assert get_migrations_dir() == package_dir / "sql"

        pyproject = tomllib.loads((package_dir.parents[1] / "pyproject.toml").read_text())
        patterns = pyproject["tool"]["setuptools"]["package-data"]["tenancy.migrations"]
        for directory in (get_control_migrations_dir(), get_tenant_migrations_dir()):
            relative = directory.relative_to(package_dir).as_posix()
            assert f"{relative}/*.sql" in patterns


def make_conn(applied_versions=()):
    conn = MagicMock()
    conn.execute = AsyncMock()
    conn.fetchval = AsyncMock(return_value=True)
    conn.fetch = AsyncMock(return_value=[{"version": v} for v in applied_versions])
    conn.close = AsyncMock()
    transaction = MagicMock()
    transaction.__aenter__ = AsyncMock(return_value=None)
    transaction.__aexit__ = AsyncMock(return_value=False)
    conn.transaction = MagicMock(return_value=transaction)
    return conn


class TestMigrateDatabase:
    @pytest.mark.asyncio
    async def test_missing_directory_raises(self, tmp_path):
        with pytest.raises(MigrationError):
            await migrate_database(DB_URL, tmp_path / "missing")

    @pytest.mark.asyncio
    async def test_applies_only_pending(self, migrations_dir):
        conn = make_conn(applied_versions=["20250301000000"])
        with patch("tenancy.migrations.core.asyncpg.connect", AsyncMock(return_value=conn)):
            result = await migrate_database(DB_URL, migrations_dir)

        assert result.success is True
        assert result.applied == 1
        assert result.total == 2
        executed = [call.args[0] for call in conn.execute.await_args_list]
        assert "CREATE TABLE contacts (id TEXT);" in executed
        assert not any("CREATE TABLE a" in sql for sql in executed)
        conn.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_stops_at_first_failure(self, migrations_dir):
        conn = make_conn()

        async def execute(sql, *args):
            if sql.startswith("CREATE TABLE a"):
                raise asyncpg.exceptions.DuplicateTableError("relation a already exists")

        conn.execute = AsyncMock(side_effect=execute)
        with patch("tenancy.migrations.core.asyncpg.connect", AsyncMock(return_value=conn)):
            result = await migrate_database(DB_URL, migrations_dir)

        assert result.success is False
        assert result.applied == 0
        assert result.failed_version == "20250301000000"
        assert "already exists" in result.error

    @pytest.mark.asyncio
    async def test_connection_failure_reported(self, migrations_dir):
        with (
            patch(
                "tenancy.migrations.core.asyncpg.connect",
                AsyncMock(side_effect=OSError("connection refused")),
            ),
            patch("tenancy.migrations.core.asyncio.sleep", AsyncMock()),
        ):
            result = await migrate_database(DB_URL, migrations_dir, retries=2)

        assert result.success is False
        assert "Could not connect" in result.error

    @pytest.mark.asyncio
    async def test_malformed_url_reported(self, migrations_dir):
        result = await migrate_database(
            "postgresql://u:p@host:notaport/db", migrations_dir, retries=1
        )

        assert result.success is False
        assert "Could not connect" in result.error

    @pytest.mark.asyncio
    async def test_interface_error_on_connect_reported(self, migrations_dir):
        with patch(
            "tenancy.migrations.core.asyncpg.connect",
            AsyncMock(side_effect=asyncpg.InterfaceError("connection was closed")),
        ):
            result = await migrate_database(DB_URL, migrations_dir, retries=1)

        assert result.success is False
        assert "connection was closed" in result.error

    @pytest.mark.asyncio
    async def test_dry_run_does_not_connect(self, migrations_dir):
        connect = AsyncMock()
        with patch("tenancy.migrations.core.asyncpg.connect", connect):
            result = await migrate_database(DB_URL, migrations_dir, dry_run=True)

        connect.assert_not_awaited()
        assert result.success is True
        assert result.applied == 0
