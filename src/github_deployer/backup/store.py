"""Point-in-time zip backups of deployed directories.

Layout::

    backup_dir/
        {owner}-{name}/
            backup-20261019T120000123456Z.zip

Each archive holds ``metadata.json`` at its root and the backed-up tree
under ``tree/``, so a tree that ships its own top-level ``metadata.json``
survives a round trip. Format 1 archives stored the tree at the root and
are still restorable.

The backup id is the archive filename; it sorts chronologically.
"""

from __future__ import annotations

import asyncio
import json
import re
import tempfile
import zipfile
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path

from github_deployer.errors import (
    BackupFailedError,
    BackupNotFoundError,
    DeployerError,
    MetadataInvalidError,
    MetadataMissingError,
    TargetMissingError,
)
from github_deployer.fsutil import archive_tree, remove_tree, safe_extract, swap_directory
from github_deployer.logging import get_logger
from github_deployer.models import BackupDescriptor, BackupMetadata, DeployKind

log = get_logger("github_deployer.backup.store")

METADATA_FILE = "metadata.json"
TREE_DIR = "tree"
FORMAT_VERSION = 2
ROLLBACK_REF = "rollback"
_ID_FORMAT = "%Y%m%dT%H%M%S%fZ"
_ID_PATTERN = re.compile(r"^backup-\d{8}T\d{12}Z\.zip$")


def _backup_id(created_at: datetime) -> str:
    return f"backup-{created_at.strftime(_ID_FORMAT)}.zip"


def _created_at(backup_id: str) -> datetime:
    stamp = backup_id[len("backup-") : -len(".zip")]
    return datetime.strptime(stamp, _ID_FORMAT).replace(tzinfo=UTC)


@dataclass
class RestoreResult:
    """What a restore put back, and the backup taken just before it."""

    metadata: BackupMetadata
    target_path: Path
    rollback_backup: BackupDescriptor | None


class BackupStore:
    """Captures, lists, prunes and restores backups for tracked targets."""

    def __init__(
        self,
        backup_dir: Path,
        destination_roots: Mapping[DeployKind, Path],
        *,
        retention: int = 5,
    ) -> None:
        if retention < 1:
            raise ValueError("Backup retention must keep at least one backup")
        self._backup_dir = backup_dir
        self._roots = dict(destination_roots)
        self._retention = retention

    @property
    def retention(self) -> int:
        return self._retention

    def _repo_dir(self, owner: str, name: str) -> Path:
        return self._backup_dir / f"{owner}-{name}"

    def _archive_path(self, owner: str, name: str, backup_id: str) -> Path:
        if not _ID_PATTERN.match(backup_id):
            raise BackupNotFoundError(
                f"Not a backup id: {backup_id!r}", owner=owner, name=name, backup_id=backup_id
            )
        path = self._repo_dir(owner, name) / backup_id
        if not path.is_file():
            raise BackupNotFoundError(
                f"Backup {backup_id} not found for {owner}/{name}",
                owner=owner,
                name=name,
                backup_id=backup_id,
            )
        return path

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def capture(
        self,
        owner: str,
        name: str,
        ref: str,
        kind: DeployKind,
        target_dir: str | None = None,
    ) -> BackupDescriptor | None:
        """Back up the current target directory.

        Returns None when there is nothing to back up yet.
        """
        return await asyncio.to_thread(self._capture, owner, name, ref, kind, target_dir)

    async def list_backups(self, owner: str, name: str) -> list[BackupDescriptor]:
        """Backups for ``owner/name``, newest first."""
        return await asyncio.to_thread(self._list, owner, name)

    async def get(self, owner: str, name: str, backup_id: str) -> BackupDescriptor:
        return await asyncio.to_thread(self._get, owner, name, backup_id)

    async def delete(self, owner: str, name: str, backup_id: str) -> None:
        path = self._archive_path(owner, name, backup_id)
        path.unlink()
        log.info("backup_deleted", owner=owner, name=name, backup_id=backup_id)

    async def read_metadata(self, owner: str, name: str, backup_id: str) -> BackupMetadata:
        path = self._archive_path(owner, name, backup_id)
        return await asyncio.to_thread(self._read_metadata, path)

    async def restore(self, owner: str, name: str, backup_id: str) -> RestoreResult:
        """Put the tree stored in ``backup_id`` back in place.

        The current contents are captured first (as a ``rollback``
        backup) so that the restore can itself be undone.
        """
        return await asyncio.to_thread(self._restore, owner, name, backup_id)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _target_path(self, kind: DeployKind, target_dir: str) -> Path:
        return self._roots[kind] / target_dir

    def _capture(
        self,
        owner: str,
        name: str,
        ref: str,
        kind: DeployKind,
        target_dir: str | None,
        *,
        prune: bool = True,
    ) -> BackupDescriptor | None:
        source = self._target_path(kind, target_dir or name)
        if not source.is_dir():
            log.debug("backup_skipped_nothing_to_capture", owner=owner, name=name)
            return None

        repo_dir = self._repo_dir(owner, name)
        created_at = datetime.now(UTC)
        while (repo_dir / _backup_id(created_at)).exists():
            created_at += timedelta(microseconds=1)
        backup_id = _backup_id(created_at)

        metadata = BackupMetadata(
            owner=owner,
            name=name,
            ref=ref,
            kind=kind,
            directory=str(source.resolve()),
            created_at=created_at,
            format_version=FORMAT_VERSION,
        )
        archive_path = repo_dir / backup_id
        try:
            size = archive_tree(
                source,
                archive_path,
                prefix=TREE_DIR,
                extra={METADATA_FILE: json.dumps(metadata.to_dict(), indent=2).encode("utf-8")},
            )
        except (OSError, zipfile.LargeZipFile) as exc:
            raise BackupFailedError(
                f"Could not create backup of {source}: {exc}", cause=exc, owner=owner, name=name
            ) from exc

        log.info("backup_captured", owner=owner, name=name, backup_id=backup_id, size=size)
        if prune:
            self._apply_retention(owner, name)
        return BackupDescriptor(
            backup_id=backup_id,
            owner=owner,
            name=name,
            kind=kind,
            source_ref=ref,
            created_at=created_at,
            archive_path=str(archive_path),
            size_bytes=size,
        )

    def _apply_retention(self, owner: str, name: str) -> None:
        ids = self._backup_ids(owner, name)
        for stale in ids[self._retention :]:
            if remove_tree(self._repo_dir(owner, name) / stale):
                log.info("backup_pruned", owner=owner, name=name, backup_id=stale)

    def _backup_ids(self, owner: str, name: str) -> list[str]:
        repo_dir = self._repo_dir(owner, name)
        if not repo_dir.is_dir():
            return []
        ids = [p.name for p in repo_dir.iterdir() if p.is_file() and _ID_PATTERN.match(p.name)]
        return sorted(ids, reverse=True)

    def _list(self, owner: str, name: str) -> list[BackupDescriptor]:
        descriptors = []
        for backup_id in self._backup_ids(owner, name):
            try:
                descriptors.append(self._get(owner, name, backup_id))
            except DeployerError as exc:
                log.warning(
                    "backup_unreadable", owner=owner, name=name, backup_id=backup_id, error=exc.message
                )
        return descriptors

    def _get(self, owner: str, name: str, backup_id: str) -> BackupDescriptor:
        path = self._archive_path(owner, name, backup_id)
        metadata = self._read_metadata(path)
        return BackupDescriptor(
            backup_id=backup_id,
            owner=owner,
            name=name,
            kind=metadata.kind,
            source_ref=metadata.ref,
            created_at=_created_at(backup_id),
            archive_path=str(path),
            size_bytes=path.stat().st_size,
        )

    def _read_metadata(self, path: Path) -> BackupMetadata:
        try:
            with zipfile.ZipFile(path) as archive:
                raw = archive.read(METADATA_FILE)
        except KeyError as exc:
            raise MetadataMissingError(
                f"Backup {path.name} has no {METADATA_FILE}", backup_id=path.name
            ) from exc
        except (zipfile.BadZipFile, OSError) as exc:
            raise BackupFailedError(
                f"Backup {path.name} is not a readable archive", cause=exc, backup_id=path.name
            ) from exc

        try:
            data = json.loads(raw)
            if not isinstance(data, dict):
                raise ValueError("metadata is not an object")
            return BackupMetadata.from_dict(data)
        except (KeyError, ValueError, TypeError) as exc:
            raise MetadataInvalidError(
                f"Backup {path.name} has invalid metadata: {exc}", cause=exc, backup_id=path.name
            ) from exc

    def _check_directory(self, metadata: BackupMetadata, backup_id: str) -> Path:
        root = self._roots.get(metadata.kind)
        target = Path(metadata.directory)
        if root is None or target.parent.resolve() != root.resolve():
            raise MetadataInvalidError(
                f"Backup {backup_id} points outside the {metadata.kind} directory: {target}",
                backup_id=backup_id,
            )
        if not target.is_dir():
            raise TargetMissingError(
                f"Target directory {target} no longer exists", backup_id=backup_id
            )
        return target

    def _restore(self, owner: str, name: str, backup_id: str) -> RestoreResult:
        path = self._archive_path(owner, name, backup_id)
        metadata = self._read_metadata(path)
        target = self._check_directory(metadata, backup_id)

        rollback_backup = self._capture(
            owner, name, ROLLBACK_REF, metadata.kind, target_dir=target.name, prune=False
        )

        staging = Path(tempfile.mkdtemp(prefix=".restore-", dir=target.parent))
        try:
            safe_extract(path, staging, skip=frozenset({METADATA_FILE}))
            tree = staging / TREE_DIR if metadata.format_version >= 2 else staging
            if not tree.is_dir():
                raise BackupFailedError(
                    f"Backup {backup_id} has no {TREE_DIR}/ directory", backup_id=backup_id
                )
            swap_directory(tree, target)
        finally:
            remove_tree(staging)
        # Pruning waits until the restored archive has been extracted.
        self._apply_retention(owner, name)

        log.info("backup_restored", owner=owner, name=name, backup_id=backup_id, target=str(target))
        return RestoreResult(metadata=metadata, target_path=target, rollback_backup=rollback_backup)
