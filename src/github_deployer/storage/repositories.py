"""Persistence for tracked repositories.

``RepositoryStore`` is the interface the engine depends on;
``PostgresRepositoryStore`` is the asyncpg implementation. Every write
after creation goes through ``update(repo_id, **fields)`` so concurrent
writers (deployer, change detector, operator toggles) only touch the
columns they own.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol

from github_deployer.logging import get_logger
from github_deployer.models import DeployKind, TrackedRepository

if TYPE_CHECKING:
    import asyncpg  # type: ignore[import-not-found,import-untyped]

log = get_logger("github_deployer.storage.repositories")

UPDATABLE_FIELDS = frozenset(
    {
        "ref",
        "kind",
        "target_dir",
        "auto_update",
        "last_checked_at",
        "last_deployed_at",
        "last_deployed_commit_sha",
    }
)


class RepositoryStore(Protocol):
    """CRUD on tracked repositories by id and by ``(owner, name)``."""

    async def get(self, repo_id: int) -> TrackedRepository | None: ...

    async def get_by_name(self, owner: str, name: str) -> TrackedRepository | None: ...

    async def list_all(self) -> list[TrackedRepository]: ...

    async def list_auto_update(self) -> list[TrackedRepository]: ...

    async def add(self, repo: TrackedRepository) -> TrackedRepository: ...

    async def update(self, repo_id: int, **fields: Any) -> TrackedRepository | None: ...

    async def delete(self, repo_id: int) -> bool: ...


def check_fields(fields: dict[str, Any]) -> dict[str, Any]:
    """Reject unknown column names and normalise enum values."""
    unknown = set(fields) - UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Cannot update fields: {', '.join(sorted(unknown))}")
    if "kind" in fields:
        fields = {**fields, "kind": DeployKind(fields["kind"])}
    return fields


# ------------------------------------------------------------------
# SQL schema
# ------------------------------------------------------------------

_SCHEMA = """
CREATE TABLE IF NOT EXISTS github_deployer_repositories (
    id SERIAL PRIMARY KEY,
    owner TEXT NOT NULL,
    name TEXT NOT NULL,
    ref TEXT NOT NULL DEFAULT 'main',
    kind TEXT NOT NULL DEFAULT 'plugin',
    target_dir TEXT NOT NULL,
    auto_update BOOLEAN NOT NULL DEFAULT FALSE,
    last_checked_at TIMESTAMPTZ,
    last_deployed_at TIMESTAMPTZ,
    last_deployed_commit_sha TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    UNIQUE (owner, name)
);

CREATE INDEX IF NOT EXISTS idx_github_deployer_repositories_auto_update
    ON github_deployer_repositories (auto_update);
"""

_COLUMNS = """
    id, owner, name, ref, kind, target_dir, auto_update,
    last_checked_at, last_deployed_at, last_deployed_commit_sha, created_at
"""


def _row_to_repo(row: Any) -> TrackedRepository:
    return TrackedRepository(
        id=row["id"],
        owner=row["owner"],
        name=row["name"],
        ref=row["ref"],
        kind=DeployKind(row["kind"]),
        target_dir=row["target_dir"],
        auto_update=row["auto_update"],
        last_checked_at=row["last_checked_at"],
        last_deployed_at=row["last_deployed_at"],
        last_deployed_commit_sha=row["last_deployed_commit_sha"],
        created_at=row["created_at"],
    )


# ------------------------------------------------------------------
# Storage class
# ------------------------------------------------------------------


class PostgresRepositoryStore:
    """asyncpg-backed ``RepositoryStore``.

    Usage::

        store = PostgresRepositoryStore()
        await store.initialize(pool)
        repo = await store.add(TrackedRepository(owner="acme", name="widget"))
    """

    def __init__(self) -> None:
        self._pool: asyncpg.Pool | None = None

    async def initialize(self, pool: asyncpg.Pool) -> None:
        """Create the table and store the connection pool reference."""
        self._pool = pool
        async with pool.acquire() as conn:
            await conn.execute(_SCHEMA)
        log.info("repository_store_initialized")

    async def get(self, repo_id: int) -> TrackedRepository | None:
        async with self._pool.acquire() as conn:  # type: ignore[union-attr]
            row = await conn.fetchrow(
                f"SELECT {_COLUMNS} FROM github_deployer_repositories WHERE id = $1",
                repo_id,
            )
        return _row_to_repo(row) if row else None

    async def get_by_name(self, owner: str, name: str) -> TrackedRepository | None:
        async with self._pool.acquire() as conn:  # type: ignore[union-attr]
            row = await conn.fetchrow(
                f"""
                SELECT {_COLUMNS} FROM github_deployer_repositories
                WHERE owner = $1 AND name = $2
                """,
                owner,
                name,
            )
        return _row_to_repo(row) if row else None

    async def list_all(self) -> list[TrackedRepository]:
        async with self._pool.acquire() as conn:  # type: ignore[union-attr]
            rows = await conn.fetch(
                f"SELECT {_COLUMNS} FROM github_deployer_repositories ORDER BY owner, name"
            )
        return [_row_to_repo(row) for row in rows]

    async def list_auto_update(self) -> list[TrackedRepository]:
        async with self._pool.acquire() as conn:  # type: ignore[union-attr]
            rows = await conn.fetch(
                f"""
                SELECT {_COLUMNS} FROM github_deployer_repositories
                WHERE auto_update = TRUE
                ORDER BY id
                """
            )
        return [_row_to_repo(row) for row in rows]

    async def add(self, repo: TrackedRepository) -> TrackedRepository:
        """Insert a repository, or refresh the settings of an existing one."""
        async with self._pool.acquire() as conn:  # type: ignore[union-attr]
            row = await conn.fetchrow(
                f"""
                INSERT INTO github_deployer_repositories
                    (owner, name, ref, kind, target_dir, auto_update,
                     last_deployed_at, last_deployed_commit_sha)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                ON CONFLICT (owner, name) DO UPDATE SET
                    ref = EXCLUDED.ref,
                    kind = EXCLUDED.kind,
                    target_dir = EXCLUDED.target_dir,
                    auto_update = EXCLUDED.auto_update
                RETURNING {_COLUMNS}
                """,
                repo.owner,
                repo.name,
                repo.ref,
                repo.kind.value,
                repo.target_dir,
                repo.auto_update,
                repo.last_deployed_at,
                repo.last_deployed_commit_sha,
            )
        log.info("repository_tracked", owner=repo.owner, name=repo.name, id=row["id"])
        return _row_to_repo(row)

    async def update(self, repo_id: int, **fields: Any) -> TrackedRepository | None:
        """Set the given columns on one row; returns the updated record."""
        fields = check_fields(fields)
        if not fields:
            return await self.get(repo_id)

        columns = sorted(fields)
        assignments = ", ".join(f"{column} = ${i}" for i, column in enumerate(columns, start=2))
        values = [
            fields[c].value if isinstance(fields[c], DeployKind) else fields[c] for c in columns
        ]
        async with self._pool.acquire() as conn:  # type: ignore[union-attr]
            row = await conn.fetchrow(
                f"""
                UPDATE github_deployer_repositories SET {assignments}
                WHERE id = $1
                RETURNING {_COLUMNS}
                """,
                repo_id,
                *values,
            )
        return _row_to_repo(row) if row else None

    async def delete(self, repo_id: int) -> bool:
        async with self._pool.acquire() as conn:  # type: ignore[union-attr]
            result = await conn.execute(
                "DELETE FROM github_deployer_repositories WHERE id = $1", repo_id
            )
        return str(result).endswith(" 1")
