"""Data models for tracked repositories, backups and deployment results.

All models are plain dataclasses with to_dict/from_dict for serialisation.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from pathlib import PurePath
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from github_deployer.errors import (
    ErrorKind,
    InvalidRepositoryReferenceError,
    InvalidRequestError,
)

if TYPE_CHECKING:
    from github_deployer.errors import DeployerError

T = TypeVar("T")


class DeployKind(StrEnum):
    """Category of deployable unit; selects the destination root."""

    PLUGIN = "plugin"
    THEME = "theme"


class DeployState(StrEnum):
    """States of a single orchestrator run."""

    RESOLVING = "resolving"
    DOWNLOADING = "downloading"
    EXTRACTING = "extracting"
    VALIDATING = "validating"
    BACKING_UP = "backing_up"
    SWAPPING = "swapping"
    FINALIZING = "finalizing"
    DONE = "done"
    FAILED = "failed"


def _parse_dt(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


# ------------------------------------------------------------------
# Tracked repository
# ------------------------------------------------------------------

_SEPARATORS = frozenset({"/", "\\", "\x00", os.sep, os.altsep or "/"})


def check_target_dir(target_dir: Any) -> str:
    """Return ``target_dir`` if it names a single directory entry.

    Target directories are joined onto a destination root, so anything
    that could point elsewhere (empty, ``.``/``..``, absolute, or holding
    a path separator) raises ``InvalidRequestError``.
    """
    if not isinstance(target_dir, str) or target_dir.strip() in ("", ".", ".."):
        raise InvalidRequestError(
            f"Invalid target directory: {target_dir!r}", target_dir=str(target_dir)
        )
    if any(sep in target_dir for sep in _SEPARATORS) or PurePath(target_dir).is_absolute():
        raise InvalidRequestError(
            f"Target directory must be a single directory name: {target_dir!r}",
            target_dir=target_dir,
        )
    return target_dir


@dataclass
class TrackedRepository:
    """A repository registered for deployment and optional auto-update."""

    owner: str
    name: str
    ref: str = "main"
    kind: DeployKind = DeployKind.PLUGIN
    target_dir: str = ""
    auto_update: bool = False
    last_checked_at: datetime | None = None
    last_deployed_at: datetime | None = None
    last_deployed_commit_sha: str | None = None
    created_at: datetime | None = None
    id: int | None = None

    def __post_init__(self) -> None:
        self.kind = DeployKind(self.kind)
        self.target_dir = check_target_dir(self.target_dir or self.name)

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "owner": self.owner,
            "name": self.name,
            "ref": self.ref,
            "kind": self.kind.value,
            "target_dir": self.target_dir,
            "auto_update": self.auto_update,
            "last_checked_at": _iso(self.last_checked_at),
            "last_deployed_at": _iso(self.last_deployed_at),
            "last_deployed_commit_sha": self.last_deployed_commit_sha,
            "created_at": _iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TrackedRepository:
        return cls(
            id=data.get("id"),
            owner=data["owner"],
            name=data["name"],
            ref=data.get("ref") or "main",
            kind=DeployKind(data.get("kind") or DeployKind.PLUGIN),
            target_dir=data.get("target_dir") or "",
            auto_update=bool(data.get("auto_update", False)),
            last_checked_at=_parse_dt(data.get("last_checked_at")),
            last_deployed_at=_parse_dt(data.get("last_deployed_at")),
            last_deployed_commit_sha=data.get("last_deployed_commit_sha"),
            created_at=_parse_dt(data.get("created_at")),
        )


# ------------------------------------------------------------------
# Backups
# ------------------------------------------------------------------


@dataclass
class BackupMetadata:
    """The ``metadata.json`` record stored inside every backup archive."""

    owner: str
    name: str
    ref: str
    kind: DeployKind
    directory: str
    created_at: datetime
    format_version: int = 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "owner": self.owner,
            "repo": self.name,
            "ref": self.ref,
            "type": self.kind.value,
            "directory": self.directory,
            "created_at": self.created_at.isoformat(),
            "format_version": self.format_version,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BackupMetadata:
        """Parse archive metadata; raises KeyError/ValueError on bad input."""
        return cls(
            owner=str(data["owner"]),
            name=str(data["repo"]),
            ref=str(data.get("ref") or ""),
            kind=DeployKind(data["type"]),
            directory=str(data["directory"]),
            created_at=datetime.fromisoformat(str(data["created_at"])),
            format_version=int(data.get("format_version", 1)),
        )


@dataclass
class BackupDescriptor:
    """A point-in-time backup of a target directory."""

    backup_id: str
    owner: str
    name: str
    kind: DeployKind
    source_ref: str
    created_at: datetime
    archive_path: str
    size_bytes: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "backup_id": self.backup_id,
            "owner": self.owner,
            "name": self.name,
            "kind": self.kind.value,
            "source_ref": self.source_ref,
            "created_at": self.created_at.isoformat(),
            "archive_path": self.archive_path,
            "size_bytes": self.size_bytes,
        }


# ------------------------------------------------------------------
# Deployment result
# ------------------------------------------------------------------


@dataclass
class DeploymentResult:
    """Outcome of one orchestrator run (deploy, update or rollback)."""

    success: bool
    owner: str
    name: str
    ref: str | None = None
    kind: DeployKind | None = None
    commit_sha: str | None = None
    target_path: str | None = None
    backup_id: str | None = None
    state: DeployState = DeployState.DONE
    error_kind: ErrorKind | None = None
    message: str | None = None
    cause: BaseException | None = field(default=None, repr=False, compare=False)

    @classmethod
    def succeeded(
        cls,
        owner: str,
        name: str,
        *,
        ref: str | None,
        kind: DeployKind | None,
        commit_sha: str | None,
        target_path: str,
        backup_id: str | None = None,
        message: str | None = None,
    ) -> DeploymentResult:
        return cls(
            success=True,
            owner=owner,
            name=name,
            ref=ref,
            kind=kind,
            commit_sha=commit_sha,
            target_path=target_path,
            backup_id=backup_id,
            state=DeployState.DONE,
            message=message,
        )

    @classmethod
    def failed(
        cls,
        owner: str,
        name: str,
        error: DeployerError,
        *,
        ref: str | None = None,
        kind: DeployKind | None = None,
        state: DeployState = DeployState.FAILED,
        backup_id: str | None = None,
    ) -> DeploymentResult:
        return cls(
            success=False,
            owner=owner,
            name=name,
            ref=ref,
            kind=kind,
            backup_id=backup_id,
            state=state,
            error_kind=error.kind,
            message=error.message,
            cause=error,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "owner": self.owner,
            "name": self.name,
            "ref": self.ref,
            "kind": self.kind.value if self.kind else None,
            "commit_sha": self.commit_sha,
            "target_path": self.target_path,
            "backup_id": self.backup_id,
            "state": self.state.value,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "message": self.message,
        }


# ------------------------------------------------------------------
# Remote host types
# ------------------------------------------------------------------


@dataclass
class ApiResponse(Generic[T]):
    """Uniform wrapper for every Source Client call."""

    data: T
    headers: dict[str, str] = field(default_factory=dict)
    status_code: int = 200


@dataclass
class RateLimit:
    """Quota information from ``x-ratelimit-*`` headers."""

    limit: int
    remaining: int
    reset: int
    used: int = 0

    @classmethod
    def from_headers(cls, headers: dict[str, str]) -> RateLimit | None:
        if "x-ratelimit-remaining" not in headers:
            return None
        try:
            return cls(
                limit=int(headers.get("x-ratelimit-limit", 0)),
                remaining=int(headers["x-ratelimit-remaining"]),
                reset=int(headers.get("x-ratelimit-reset", 0)),
                used=int(headers.get("x-ratelimit-used", 0)),
            )
        except ValueError:
            return None


@dataclass
class RepoMetadata:
    """Repository summary returned by the host."""

    owner: str
    name: str
    full_name: str
    private: bool = False
    default_branch: str = "main"
    description: str = ""
    html_url: str = ""
    updated_at: str | None = None

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> RepoMetadata:
        owner = data.get("owner") or {}
        return cls(
            owner=owner.get("login", "") if isinstance(owner, dict) else str(owner),
            name=data.get("name", ""),
            full_name=data.get("full_name", ""),
            private=bool(data.get("private", False)),
            default_branch=data.get("default_branch") or "main",
            description=data.get("description") or "",
            html_url=data.get("html_url", ""),
            updated_at=data.get("updated_at"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "owner": self.owner,
            "name": self.name,
            "full_name": self.full_name,
            "private": self.private,
            "default_branch": self.default_branch,
            "description": self.description,
            "html_url": self.html_url,
            "updated_at": self.updated_at,
        }


@dataclass
class GitRef:
    """A branch or tag."""

    name: str
    sha: str

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> GitRef:
        commit = data.get("commit") or {}
        return cls(name=data.get("name", ""), sha=commit.get("sha", ""))


@dataclass
class Release:
    tag_name: str
    name: str
    published_at: str | None
    draft: bool = False
    prerelease: bool = False
    html_url: str = ""

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> Release:
        return cls(
            tag_name=data.get("tag_name", ""),
            name=data.get("name") or data.get("tag_name", ""),
            published_at=data.get("published_at"),
            draft=bool(data.get("draft", False)),
            prerelease=bool(data.get("prerelease", False)),
            html_url=data.get("html_url", ""),
        )


@dataclass
class CommitInfo:
    sha: str
    tree_sha: str
    message: str = ""
    author: str = ""
    date: str | None = None

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> CommitInfo:
        commit = data.get("commit") or {}
        tree = commit.get("tree") or {}
        author = commit.get("author") or {}
        return cls(
            sha=data.get("sha", ""),
            tree_sha=tree.get("sha", ""),
            message=commit.get("message", ""),
            author=author.get("name", ""),
            date=author.get("date"),
        )


@dataclass
class ChangedFile:
    filename: str
    status: str
    additions: int = 0
    deletions: int = 0
    patch: str = ""


@dataclass
class Comparison:
    """Summary of the difference between two refs."""

    status: str
    ahead_by: int
    behind_by: int
    total_commits: int
    commits: list[CommitInfo] = field(default_factory=list)
    files: list[ChangedFile] = field(default_factory=list)

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> Comparison:
        return cls(
            status=data.get("status", ""),
            ahead_by=int(data.get("ahead_by", 0)),
            behind_by=int(data.get("behind_by", 0)),
            total_commits=int(data.get("total_commits", 0)),
            commits=[CommitInfo.from_api(c) for c in data.get("commits", [])],
            files=[
                ChangedFile(
                    filename=f.get("filename", ""),
                    status=f.get("status", ""),
                    additions=int(f.get("additions", 0)),
                    deletions=int(f.get("deletions", 0)),
                    patch=f.get("patch", ""),
                )
                for f in data.get("files", [])
            ],
        )


# ------------------------------------------------------------------
# Repository references
# ------------------------------------------------------------------

_NAME_PART = r"[A-Za-z0-9_.-]+"
_REFERENCE_PATTERNS = (
    re.compile(rf"^(?P<owner>{_NAME_PART})/(?P<name>{_NAME_PART})$"),
    re.compile(
        rf"^https?://(?:www\.)?github\.com/(?P<owner>{_NAME_PART})/(?P<name>{_NAME_PART})/?$"
    ),
    re.compile(rf"^git@github\.com:(?P<owner>{_NAME_PART})/(?P<name>{_NAME_PART})$"),
)


def parse_repository_reference(text: str) -> tuple[str, str]:
    """Split ``owner/name`` or a github.com URL into ``(owner, name)``."""
    candidate = text.strip()
    for pattern in _REFERENCE_PATTERNS:
        match = pattern.match(candidate)
        if match is None:
            continue
        name = match.group("name")
        if name.endswith(".git"):
            name = name[: -len(".git")]
        if name and name not in (".", ".."):
            return match.group("owner"), name
    raise InvalidRepositoryReferenceError(
        f"Not a GitHub repository reference: {text!r}", reference=text
    )
