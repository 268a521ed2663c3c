"""Unit tests for PostgresRepositoryStore.

All database interactions are mocked via AsyncMock so no real PostgreSQL
connection is needed.
"""

from __future__ import annotations

from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest

from github_deployer.models import DeployKind, TrackedRepository
from github_deployer.storage import PostgresRepositoryStore, check_fields

# ------------------------------------------------------------------
# Fixtures
# ------------------------------------------------------------------


@pytest.fixture
def mock_pool():
    """Create a mock asyncpg pool that yields an async connection context."""
    pool = MagicMock()
    conn = AsyncMock()
    ctx = AsyncMock()
    ctx.__aenter__ = AsyncMock(return_value=conn)
    ctx.__aexit__ = AsyncMock(return_value=False)
    pool.acquire.return_value = ctx
    return pool, conn


@pytest.fixture
def now():
    """A deterministic UTC timestamp for tests."""
    return datetime(2026, 10, 19, 12, 0, 0, tzinfo=UTC)


@pytest.fixture
def row(now):
    """A row shaped like the github_deployer_repositories columns."""
    return {
        "id": 1,
        "owner": "acme",
        "name": "widget",
        "ref": "main",
        "kind": "plugin",
        "target_dir": "widget",
        "auto_update": True,
        "last_checked_at": None,
        "last_deployed_at": now,
        "last_deployed_commit_sha": "abc123",
        "created_at": now,
    }


@pytest.fixture
async def store(mock_pool):
    pool, conn = mock_pool
    storage = PostgresRepositoryStore()
    await storage.initialize(pool)
    conn.reset_mock()
    return storage


# ------------------------------------------------------------------
# Schema
# ------------------------------------------------------------------


class TestInitialize:
    """Tests for PostgresRepositoryStore.initialize()."""

    @pytest.mark.asyncio
    async def test_initialize_creates_schema(self, mock_pool):
        pool, conn = mock_pool
        storage = PostgresRepositoryStore()

        await storage.initialize(pool)

        assert storage._pool is pool
        sql = conn.execute.call_args.args[0]
        assert "CREATE TABLE IF NOT EXISTS github_deployer_repositories" in sql
        assert "UNIQUE (owner, name)" in sql


# ------------------------------------------------------------------
# Reads
# ------------------------------------------------------------------


class TestReads:
    """Tests for get / get_by_name / list queries."""

    @pytest.mark.asyncio
    async def test_get(self, store, mock_pool, row, now):
        _, conn = mock_pool
        conn.fetchrow.return_value = row

        repo = await store.get(1)

        assert repo == TrackedRepository(
            id=1,
            owner="acme",
            name="widget",
            ref="main",
            kind=DeployKind.PLUGIN,
            target_dir="widget",
            auto_update=True,
            last_deployed_at=now,
            last_deployed_commit_sha="abc123",
            created_at=now,
        )
        assert conn.fetchrow.call_args.args[1] == 1

    @pytest.mark.asyncio
    async def test_get_missing(self, store, mock_pool):
        _, conn = mock_pool
        conn.fetchrow.return_value = None
        assert await store.get(99) is None

    @pytest.mark.asyncio
    async def test_get_by_name(self, store, mock_pool, row):
        _, conn = mock_pool
        conn.fetchrow.return_value = row

        repo = await store.get_by_name("acme", "widget")

        assert repo.full_name == "acme/widget"
        assert conn.fetchrow.call_args.args[1:] == ("acme", "widget")

    @pytest.mark.asyncio
    async def test_list_all(self, store, mock_pool, row):
        _, conn = mock_pool
        conn.fetch.return_value = [row, {**row, "id": 2, "name": "skin", "kind": "theme"}]

        repos = await store.list_all()

        assert [r.name for r in repos] == ["widget", "skin"]
        assert repos[1].kind is DeployKind.THEME

    @pytest.mark.asyncio
    async def test_list_auto_update_filters(self, store, mock_pool, row):
        _, conn = mock_pool
        conn.fetch.return_value = [row]

        repos = await store.list_auto_update()

        assert len(repos) == 1
        assert "auto_update = TRUE" in conn.fetch.call_args.args[0]


# ------------------------------------------------------------------
# Writes
# ------------------------------------------------------------------


class TestWrites:
    """Tests for add / update / delete."""

    @pytest.mark.asyncio
    async def test_add_upserts(self, store, mock_pool, row):
        _, conn = mock_pool
        conn.fetchrow.return_value = row

        repo = await store.add(
            TrackedRepository(owner="acme", name="widget", kind=DeployKind.PLUGIN, auto_update=True)
        )

        assert repo.id == 1
        args = conn.fetchrow.call_args.args
        assert "ON CONFLICT (owner, name) DO UPDATE" in args[0]
        assert args[1:7] == ("acme", "widget", "main", "plugin", "widget", True)

    @pytest.mark.asyncio
    async def test_update_builds_placeholders(self, store, mock_pool, row, now):
        _, conn = mock_pool
        conn.fetchrow.return_value = {**row, "ref": "v2.0.0", "kind": "theme"}

        repo = await store.update(1, ref="v2.0.0", kind="theme", last_checked_at=now)

        assert repo.ref == "v2.0.0"
        args = conn.fetchrow.call_args.args
        assert "kind = $2, last_checked_at = $3, ref = $4" in args[0]
        assert args[1:] == (1, "theme", now, "v2.0.0")

    @pytest.mark.asyncio
    async def test_update_missing_row(self, store, mock_pool):
        _, conn = mock_pool
        conn.fetchrow.return_value = None
        assert await store.update(5, ref="main") is None

    @pytest.mark.asyncio
    async def test_update_without_fields_reads(self, store, mock_pool, row):
        _, conn = mock_pool
        conn.fetchrow.return_value = row

        repo = await store.update(1)

        assert repo.id == 1
        assert conn.fetchrow.call_args.args[0].strip().startswith("SELECT")

    @pytest.mark.asyncio
    async def test_update_rejects_unknown_columns(self, store, mock_pool):
        _, conn = mock_pool
        with pytest.raises(ValueError):
            await store.update(1, owner="evil")
        conn.fetchrow.assert_not_called()

    @pytest.mark.asyncio
    async def test_delete(self, store, mock_pool):
        _, conn = mock_pool
        conn.execute.return_value = "DELETE 1"
        assert await store.delete(1) is True

        conn.execute.return_value = "DELETE 0"
        assert await store.delete(2) is False


class TestCheckFields:
    """Tests for check_fields()."""

    def test_normalises_kind(self):
        assert check_fields({"kind": "theme"}) == {"kind": DeployKind.THEME}

    def test_unknown_field(self):
        with pytest.raises(ValueError, match="id"):
            check_fields({"id": 3})

    def test_invalid_kind(self):
        with pytest.raises(ValueError):
            check_fields({"kind": "library"})
