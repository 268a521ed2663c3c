"""Shared fixtures: isolated settings, in-memory store, fake GitHub remote."""

from __future__ import annotations

import io
import zipfile
from dataclasses import replace
from datetime import UTC, datetime
from typing import Any
from unittest.mock import AsyncMock

import httpx
import pytest

from github_deployer.config import Settings
from github_deployer.context import EngineContext
from github_deployer.installer import ArchiveInstaller
from github_deployer.models import ApiResponse, CommitInfo, RepoMetadata, TrackedRepository
from github_deployer.notifications import Notification
from github_deployer.storage import check_fields

# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------


def build_zip(files: dict[str, str | bytes]) -> bytes:
    """Zip ``{member name: content}`` in memory."""
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as archive:
        for name, content in files.items():
            archive.writestr(name, content)
    return buf.getvalue()


class InMemoryRepositoryStore:
    """RepositoryStore backed by a dict; records every update call."""

    def __init__(self) -> None:
        self.rows: dict[int, TrackedRepository] = {}
        self.updates: list[tuple[int, dict[str, Any]]] = []
        self._next_id = 1

    async def get(self, repo_id: int) -> TrackedRepository | None:
        row = self.rows.get(repo_id)
        return replace(row) if row else None

    async def get_by_name(self, owner: str, name: str) -> TrackedRepository | None:
        for row in self.rows.values():
            if row.owner == owner and row.name == name:
                return replace(row)
        return None

    async def list_all(self) -> list[TrackedRepository]:
        return [replace(row) for row in self.rows.values()]

    async def list_auto_update(self) -> list[TrackedRepository]:
        return [replace(row) for row in self.rows.values() if row.auto_update]

    async def add(self, repo: TrackedRepository) -> TrackedRepository:
        existing = await self.get_by_name(repo.owner, repo.name)
        if existing is not None and existing.id is not None:
            return await self.update(  # type: ignore[return-value]
                existing.id,
                ref=repo.ref,
                kind=repo.kind,
                target_dir=repo.target_dir,
                auto_update=repo.auto_update,
            )
        row = replace(repo, id=self._next_id, created_at=datetime.now(UTC))
        self.rows[row.id] = row  # type: ignore[index]
        self._next_id += 1
        return replace(row)

    async def update(self, repo_id: int, **fields: Any) -> TrackedRepository | None:
        fields = check_fields(fields)
        row = self.rows.get(repo_id)
        if row is None:
            return None
        for key, value in fields.items():
            setattr(row, key, value)
        self.updates.append((repo_id, fields))
        return replace(row)

    async def delete(self, repo_id: int) -> bool:
        return self.rows.pop(repo_id, None) is not None


class RecordingSink:
    """Notification sink that keeps everything it is sent."""

    def __init__(self) -> None:
        self.notifications: list[Notification] = []

    async def send(self, notification: Notification) -> None:
        self.notifications.append(notification)

    @property
    def events(self) -> list[str]:
        return [n.event.value for n in self.notifications]


class FakeRemote:
    """Stands in for GitHub: repository metadata, commit SHAs and zip archives.

    Archives are served to a real ``ArchiveInstaller`` through
    ``httpx.MockTransport``.
    """

    def __init__(self) -> None:
        self.archives: dict[str, bytes] = {}
        self.commits: dict[tuple[str, str, str], str] = {}
        self.downloads: list[str] = []

    @staticmethod
    def url_for(owner: str, name: str, ref: str) -> str:
        return f"https://archives.test/{owner}/{name}/{ref}.zip"

    def add_archive(
        self,
        owner: str,
        name: str,
        ref: str,
        files: dict[str, str | bytes],
        *,
        sha: str | None = None,
    ) -> str:
        url = self.url_for(owner, name, ref)
        self.archives[url] = build_zip(files)
        self.commits[(owner, name, ref)] = sha or f"sha-{name}-{ref}"
        return url

    def handler(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        self.downloads.append(url)
        if url not in self.archives:
            return httpx.Response(404, text="Not Found")
        return httpx.Response(200, content=self.archives[url])

    def http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))

    def commit(self, owner: str, name: str, ref: str = "main") -> ApiResponse[CommitInfo]:
        sha = self.commits.get((owner, name, ref), f"sha-{name}-{ref}")
        return ApiResponse(CommitInfo(sha=sha, tree_sha=f"tree-{sha}"))

    def repository(self, owner: str, name: str) -> ApiResponse[RepoMetadata]:
        return ApiResponse(RepoMetadata(owner=owner, name=name, full_name=f"{owner}/{name}"))


# ------------------------------------------------------------------
# Fixtures
# ------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path, monkeypatch) -> Settings:
    """Settings rooted in a temp directory, isolated from the environment."""
    for var in ("GITHUB_TOKEN", "WEBHOOK_SECRET", "SLACK_WEBHOOK_URL", "ADMIN_SECRET"):
        monkeypatch.delenv(var, raising=False)
    return Settings(
        _env_file=None,
        plugins_dir=tmp_path / "plugins",
        themes_dir=tmp_path / "themes",
        backup_dir=tmp_path / "backups",
        lock_dir=tmp_path / "locks",
        work_dir=tmp_path / "work",
    )


@pytest.fixture
def store() -> InMemoryRepositoryStore:
    return InMemoryRepositoryStore()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def remote() -> FakeRemote:
    return FakeRemote()


@pytest.fixture
def zip_bytes():
    """Expose ``build_zip`` to tests."""
    return build_zip


@pytest.fixture
async def context(settings, store, sink, remote):
    """EngineContext with GitHub calls answered by ``remote``."""
    ctx = EngineContext.from_settings(settings, store, [sink])
    ctx.installer = ArchiveInstaller(
        timeout=5, work_dir=settings.work_dir, http_client=remote.http_client()
    )
    ctx.github.get_repository = AsyncMock(side_effect=remote.repository)  # type: ignore[method-assign]
    ctx.github.get_latest_commit = AsyncMock(side_effect=remote.commit)  # type: ignore[method-assign]
    ctx.github.resolve_download_url = AsyncMock(  # type: ignore[method-assign]
        side_effect=lambda owner, name, ref: remote.url_for(owner, name, ref)
    )
    yield ctx
    await ctx.close()
