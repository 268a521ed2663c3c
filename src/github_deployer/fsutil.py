"""Filesystem primitives shared by the installer and the backup store.

Everything here is synchronous; async callers run it through
``asyncio.to_thread``.
"""

from __future__ import annotations

import glob
import hashlib
import os
import shutil
import uuid
import zipfile
from pathlib import Path

from github_deployer.errors import ExtractionFailedError, RenameFailedError
from github_deployer.logging import get_logger

log = get_logger("github_deployer.fsutil")

_CHUNK = 1024 * 64


def safe_extract(
    archive_path: Path, destination: Path, *, skip: frozenset[str] = frozenset()
) -> list[str]:
    """Extract a zip archive into ``destination``.

    Members resolving outside ``destination`` abort the extraction.
    Returns the names of the top-level entries that were written.
    """
    root = destination.resolve()
    top_level: list[str] = []
    try:
        with zipfile.ZipFile(archive_path) as archive:
            for member in archive.infolist():
                if member.filename in skip:
                    continue
                target = (root / member.filename).resolve()
                if target != root and root not in target.parents:
                    raise ExtractionFailedError(
                        f"Archive member escapes extraction root: {member.filename}",
                        member=member.filename,
                    )
                archive.extract(member, root)
                head = member.filename.split("/", 1)[0]
                if head and head not in top_level:
                    top_level.append(head)
    except zipfile.BadZipFile as exc:
        raise ExtractionFailedError(
            f"Not a readable zip archive: {archive_path.name}", cause=exc
        ) from exc
    except OSError as exc:
        raise ExtractionFailedError(f"Could not extract {archive_path.name}: {exc}", cause=exc) from exc
    return top_level


def archive_tree(
    source: Path,
    archive_path: Path,
    *,
    prefix: str = "",
    extra: dict[str, bytes] | None = None,
) -> int:
    """Write every file under ``source`` into a new zip at ``archive_path``.

    Entries are stored relative to ``source``, under the ``prefix``
    directory when one is given. ``extra`` members are appended verbatim
    at the archive root. The archive is written to a temp name first and
    moved into place, so a partial archive is never visible.
    Returns the final archive size in bytes.
    """
    archive_path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = archive_path.with_suffix(".tmp")
    head = f"{prefix.strip('/')}/" if prefix else ""
    try:
        with zipfile.ZipFile(tmp_path, "w", compression=zipfile.ZIP_DEFLATED) as archive:
            if head:
                archive.writestr(head, b"")
            for path in sorted(source.rglob("*")):
                relative = head + path.relative_to(source).as_posix()
                if path.is_dir():
                    archive.writestr(relative + "/", b"")
                elif path.is_file():
                    archive.write(path, relative)
            for name, payload in (extra or {}).items():
                archive.writestr(name, payload)
        tmp_path.replace(archive_path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise
    return archive_path.stat().st_size


def swap_directory(staged: Path, target: Path) -> None:
    """Replace ``target`` with ``staged``.

    The existing target is renamed aside, the staged tree renamed into
    place, and the old tree deleted afterwards. If the second rename
    fails the old tree is renamed back, so ``target`` is always either
    the previous tree or the new one.

    Aside directories left behind by earlier swaps of the same target are
    removed first.
    """
    _sweep_aside(target)
    aside: Path | None = None
    if target.exists():
        aside = target.with_name(f"{_aside_prefix(target)}{uuid.uuid4().hex[:8]}")
        try:
            os.rename(target, aside)
        except OSError as exc:
            raise RenameFailedError(
                f"Could not move existing {target} aside: {exc}", cause=exc, target=str(target)
            ) from exc

    try:
        os.rename(staged, target)
    except OSError as exc:
        if aside is not None:
            try:
                os.rename(aside, target)
            except OSError:
                log.exception("swap_restore_failed", target=str(target), aside=str(aside))
        raise RenameFailedError(
            f"Could not move new tree into {target}: {exc}", cause=exc, target=str(target)
        ) from exc

    if aside is not None:
        remove_tree(aside)


def _aside_prefix(target: Path) -> str:
    return f".{target.name}.old-"


def _sweep_aside(target: Path) -> None:
    if not target.parent.is_dir():
        return
    for stale in target.parent.glob(f"{glob.escape(_aside_prefix(target))}*"):
        if remove_tree(stale):
            log.info("swap_aside_swept", target=str(target), path=str(stale))


def remove_tree(path: Path) -> bool:
    """Delete a file or directory tree; missing paths are fine.

    Returns False (and logs) if something could not be removed.
    """
    try:
        if path.is_dir() and not path.is_symlink():
            shutil.rmtree(path)
        else:
            path.unlink(missing_ok=True)
    except OSError as exc:
        log.warning("remove_tree_failed", path=str(path), error=str(exc))
        return False
    return True


def tree_digest(root: Path) -> dict[str, str]:
    """Map each file's path relative to ``root`` to its sha256."""
    digest: dict[str, str] = {}
    for path in sorted(root.rglob("*")):
        if not path.is_file():
            continue
        sha = hashlib.sha256()
        with path.open("rb") as fh:
            for chunk in iter(lambda: fh.read(_CHUNK), b""):
                sha.update(chunk)
        digest[path.relative_to(root).as_posix()] = sha.hexdigest()
    return digest
