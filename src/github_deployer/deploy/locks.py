"""Advisory per-target locks so only one swap touches a directory at a time."""

from __future__ import annotations

import fcntl
import hashlib
import re
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

from github_deployer.errors import BusyError, LockFailedError
from github_deployer.logging import get_logger
from github_deployer.models import DeployKind

log = get_logger("github_deployer.deploy.locks")

_UNSAFE = re.compile(r"[^A-Za-z0-9_.-]")
_READABLE_PART = 48


class TargetLocks:
    """Non-blocking exclusive ``flock`` locks keyed by ``(kind, target_dir)``.

    Locks are held on files under ``lock_dir`` so they also exclude other
    processes (a CLI run racing the server, for example). A contended
    lock raises ``BusyError`` immediately instead of waiting.
    """

    def __init__(self, lock_dir: Path) -> None:
        self._lock_dir = lock_dir
        self.acquisitions = 0

    def lock_path(self, kind: DeployKind, target_dir: str) -> Path:
        # The digest keeps distinct targets apart after sanitising.
        readable = _UNSAFE.sub("_", target_dir)[:_READABLE_PART]
        digest = hashlib.sha256(target_dir.encode("utf-8")).hexdigest()[:12]
        return self._lock_dir / f"{kind.value}-{readable}-{digest}.lock"

    @asynccontextmanager
    async def hold(self, kind: DeployKind, target_dir: str) -> AsyncIterator[None]:
        path = self.lock_path(kind, target_dir)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fh = path.open("a+")
        except OSError as exc:
            raise LockFailedError(
                f"Could not open lock file {path}: {exc}",
                cause=exc,
                kind=kind.value,
                target_dir=target_dir,
                path=str(path),
            ) from exc
        try:
            fcntl.flock(fh.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as exc:
            fh.close()
            raise BusyError(
                f"Another operation is already in progress for {kind.value} '{target_dir}'",
                kind=kind.value,
                target_dir=target_dir,
            ) from exc
        except OSError as exc:
            fh.close()
            raise LockFailedError(
                f"Could not lock {path}: {exc}",
                cause=exc,
                kind=kind.value,
                target_dir=target_dir,
                path=str(path),
            ) from exc
        except BaseException:
            fh.close()
            raise

        self.acquisitions += 1
        log.debug("target_lock_acquired", kind=kind.value, target_dir=target_dir)
        try:
            yield
        finally:
            fcntl.flock(fh.fileno(), fcntl.LOCK_UN)
            fh.close()
            log.debug("target_lock_released", kind=kind.value, target_dir=target_dir)
