"""Download, extract, validate and swap a repository archive into place."""

from __future__ import annotations

import asyncio
import os
import tempfile
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any, TypeVar

import httpx

from github_deployer.errors import DownloadFailedError, ExtractionFailedError
from github_deployer.fsutil import remove_tree, safe_extract, swap_directory
from github_deployer.installer.validation import ValidationPolicy, wordpress_policy
from github_deployer.logging import get_logger
from github_deployer.models import DeployKind, DeployState

log = get_logger("github_deployer.installer.archive")

StateCallback = Callable[[DeployState], None]

T = TypeVar("T")


async def _in_thread(func: Callable[..., T], *args: Any) -> T:
    """Run ``func`` in a worker thread and wait for it even when cancelled.

    The thread cannot be stopped, so on cancellation this waits for it to
    finish before re-raising. Nothing is still writing into the staging
    directory by the time the caller cleans it up.
    """
    task = asyncio.ensure_future(asyncio.to_thread(func, *args))
    try:
        return await asyncio.shield(task)
    except asyncio.CancelledError:
        await asyncio.wait({task})
        if not task.cancelled() and task.exception() is not None:
            log.debug("worker_thread_failed_after_cancel", error=str(task.exception()))
        raise


class ArchiveInstaller:
    """Turns a downloadable zip into ``destination_root/target_dir``.

    The final path is only touched by the swap step, after the archive has
    been fully extracted and validated in a staging directory beside it.
    """

    def __init__(
        self,
        *,
        timeout: float = 30.0,
        work_dir: Path | None = None,
        policies: Mapping[DeployKind, ValidationPolicy] | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._timeout = timeout
        self._work_dir = work_dir
        self._policies = dict(policies or {})
        self._default_policy = wordpress_policy()
        self._client = http_client
        self._owns_client = http_client is None

    def policy_for(self, kind: DeployKind) -> ValidationPolicy:
        return self._policies.get(kind, self._default_policy)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    # ------------------------------------------------------------------
    # Install
    # ------------------------------------------------------------------

    async def install(
        self,
        download_url: str,
        destination_root: Path,
        owner: str,
        repo_name: str,
        target_dir: str,
        *,
        kind: DeployKind = DeployKind.PLUGIN,
        on_state: StateCallback | None = None,
    ) -> Path:
        """Install the archive at ``download_url`` and return the final path.

        Any directory already at the final path is replaced; callers that
        want a backup must capture it first.
        """

        def advance(state: DeployState) -> None:
            if on_state is not None:
                on_state(state)

        try:
            destination_root.mkdir(parents=True, exist_ok=True)
            if self._work_dir is not None:
                self._work_dir.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix="github-deployer-", suffix=".zip", dir=self._work_dir
            )
        except OSError as exc:
            raise DownloadFailedError(f"Could not prepare download location: {exc}", cause=exc) from exc
        os.close(fd)
        archive_path = Path(tmp_name)
        staging: Path | None = None
        final_path = destination_root / target_dir

        try:
            advance(DeployState.DOWNLOADING)
            await self._download(download_url, archive_path)

            advance(DeployState.EXTRACTING)
            try:
                staging = Path(tempfile.mkdtemp(prefix=".deploy-", dir=destination_root))
            except OSError as exc:
                raise ExtractionFailedError(
                    f"Could not create staging directory in {destination_root}: {exc}", cause=exc
                ) from exc
            top_level = await _in_thread(safe_extract, archive_path, staging)
            root = self._locate_root(staging, top_level, owner, repo_name)

            advance(DeployState.VALIDATING)
            shape = await _in_thread(self.policy_for(kind).validate, root)
            log.debug("archive_validated", repo=repo_name, shape=shape.description)

            advance(DeployState.SWAPPING)
            swap_directory(root, final_path)
        finally:
            archive_path.unlink(missing_ok=True)
            if staging is not None:
                remove_tree(staging)

        log.info("archive_installed", repo=repo_name, path=str(final_path))
        return final_path

    async def _download(self, url: str, archive_path: Path) -> None:
        client = await self._get_client()
        try:
            async with client.stream("GET", url, follow_redirects=True) as response:
                if response.status_code >= 400:
                    raise DownloadFailedError(
                        f"Archive download failed with HTTP {response.status_code}",
                        status_code=response.status_code,
                    )
                with archive_path.open("wb") as fh:
                    async for chunk in response.aiter_bytes():
                        fh.write(chunk)
        except httpx.HTTPError as exc:
            raise DownloadFailedError(f"Archive download failed: {exc}", cause=exc) from exc
        except OSError as exc:
            raise DownloadFailedError(
                f"Could not write downloaded archive: {exc}", cause=exc
            ) from exc

        if archive_path.stat().st_size == 0:
            raise DownloadFailedError("Downloaded archive is empty")

    @staticmethod
    def _locate_root(staging: Path, top_level: list[str], owner: str, repo_name: str) -> Path:
        """Find the single top-level directory the archive unpacked into.

        Public archives use ``{repo}-{ref}/``, API zipballs use
        ``{owner}-{repo}-{sha}/``; both prefixes are accepted.
        """
        prefixes = (repo_name.lower(), f"{owner}-{repo_name}".lower())
        candidates = [
            name
            for name in top_level
            if (staging / name).is_dir() and name.lower().startswith(prefixes)
        ]
        if not candidates:
            raise ExtractionFailedError(
                f"Could not locate extracted files for {repo_name}; "
                "the archive might have an unexpected structure",
                entries=", ".join(top_level),
            )
        if len(candidates) > 1:
            raise ExtractionFailedError(
                f"Archive for {repo_name} has several top-level directories "
                f"matching the repository name: {', '.join(sorted(candidates))}",
            )
        return staging / candidates[0]
