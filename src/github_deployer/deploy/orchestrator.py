"""Deployment orchestrator.

One ``deploy`` call walks through::

    RESOLVING -> DOWNLOADING -> EXTRACTING -> VALIDATING
        -> (BACKING_UP) -> SWAPPING -> FINALIZING -> DONE

and ends in ``FAILED`` from any step. Failures are returned as
``DeploymentResult`` objects carrying the error kind and the state the
run had reached; they are never raised to the caller.

The backup step runs before the archive is downloaded so that it happens
while the target lock is held and before anything destructive.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING

from github_deployer.backup.store import ROLLBACK_REF
from github_deployer.errors import (
    AlreadyExistsError,
    DeployerError,
    IncompatibleArchiveError,
    InvalidRequestError,
    NotFoundError,
)
from github_deployer.logging import get_logger
from github_deployer.models import (
    DeploymentResult,
    DeployKind,
    DeployState,
    TrackedRepository,
    check_target_dir,
)
from github_deployer.notifications import Notification, NotificationEvent

if TYPE_CHECKING:
    from github_deployer.context import EngineContext

log = get_logger("github_deployer.deploy.orchestrator")


def remediation_message(
    owner: str, name: str, ref: str, kind: DeployKind, error: IncompatibleArchiveError
) -> str:
    """Operator-facing explanation for an archive that failed validation."""
    expected = "; or ".join(error.checked) or "a recognised deployable layout"
    return (
        f"{owner}/{name}@{ref} does not look like a {kind.value}. "
        f"The repository root should contain {expected}. "
        "Files in sub-directories are not checked, so move the "
        f"{kind.value} files to the top level of the repository."
    )


@dataclass
class _Progress:
    owner: str
    name: str
    state: DeployState = DeployState.RESOLVING

    def advance(self, state: DeployState) -> None:
        self.state = state
        log.debug("deploy_state", owner=self.owner, name=self.name, state=state.value)


class Deployer:
    """Runs deployments, updates and rollbacks against one ``EngineContext``."""

    def __init__(self, context: EngineContext) -> None:
        self._ctx = context

    # ------------------------------------------------------------------
    # Deploy
    # ------------------------------------------------------------------

    async def deploy(
        self,
        owner: str,
        name: str,
        ref: str = "main",
        kind: DeployKind = DeployKind.PLUGIN,
        update_existing: bool = False,
        *,
        target_dir: str | None = None,
        auto_update: bool | None = None,
    ) -> DeploymentResult:
        """Deploy ``owner/name`` at ``ref`` into the destination root for ``kind``.

        Without ``update_existing`` an existing target directory is left
        untouched and the call fails with ``already_exists``.
        """
        kind = DeployKind(kind)
        target_dir = target_dir or name
        progress = _Progress(owner, name)
        backup_id: str | None = None
        log.info(
            "deploy_started",
            owner=owner,
            name=name,
            ref=ref,
            kind=kind.value,
            update_existing=update_existing,
        )

        try:
            root = self._ctx.destination_root(kind)
            final_path = self._target_path(root, target_dir)
            await self._ctx.github.get_repository(owner, name)
            self._guard_existing(final_path, update_existing)

            async with self._ctx.locks.hold(kind, target_dir):
                self._guard_existing(final_path, update_existing)
                if final_path.exists():
                    progress.advance(DeployState.BACKING_UP)
                    backup = await self._ctx.backups.capture(
                        owner, name, await self._current_ref(owner, name, ref), kind, target_dir
                    )
                    backup_id = backup.backup_id if backup else None

                progress.advance(DeployState.RESOLVING)
                download_url = await self._ctx.github.resolve_download_url(owner, name, ref)
                installed = await self._ctx.installer.install(
                    download_url,
                    root,
                    owner,
                    name,
                    target_dir,
                    kind=kind,
                    on_state=progress.advance,
                )
        except DeployerError as exc:
            exc.with_context(owner=owner, name=name, ref=ref, kind=kind.value)
            result = DeploymentResult.failed(
                owner, name, exc, ref=ref, kind=kind, state=progress.state, backup_id=backup_id
            )
            if isinstance(exc, IncompatibleArchiveError):
                result.message = remediation_message(owner, name, ref, kind, exc)
            log.warning(
                "deploy_failed",
                owner=owner,
                name=name,
                ref=ref,
                state=progress.state.value,
                error_kind=exc.kind.value,
                error=exc.message,
            )
            await self._notify(
                NotificationEvent.UPDATE_FAILED if update_existing else NotificationEvent.DEPLOY_FAILED,
                owner,
                name,
                ref,
                kind,
                detail=result.message or exc.message,
                error=exc,
            )
            return result

        progress.advance(DeployState.FINALIZING)
        commit_sha = await self._finalize(owner, name, ref, kind, target_dir, auto_update)

        progress.advance(DeployState.DONE)
        log.info(
            "deploy_succeeded",
            owner=owner,
            name=name,
            ref=ref,
            commit_sha=commit_sha,
            path=str(installed),
        )
        await self._notify(
            NotificationEvent.AFTER_UPDATE if update_existing else NotificationEvent.AFTER_DEPLOY,
            owner,
            name,
            ref,
            kind,
            detail=f"Installed to {installed}",
        )
        return DeploymentResult.succeeded(
            owner,
            name,
            ref=ref,
            kind=kind,
            commit_sha=commit_sha,
            target_path=str(installed),
            backup_id=backup_id,
        )

    async def deploy_repository(self, repo_id: int) -> DeploymentResult:
        """Redeploy a tracked repository from its stored settings.

        Always overwrites: this is the path auto-update and webhooks take.
        """
        repo = await self._ctx.store.get(repo_id)
        if repo is None:
            error = NotFoundError(f"Tracked repository {repo_id} not found", repo_id=repo_id)
            return DeploymentResult.failed("", "", error)
        return await self.deploy(
            repo.owner,
            repo.name,
            repo.ref,
            repo.kind,
            update_existing=True,
            target_dir=repo.target_dir,
        )

    @staticmethod
    def _target_path(root: Path, target_dir: str) -> Path:
        """``root / target_dir``, refusing anything that lands outside ``root``."""
        check_target_dir(target_dir)
        final_path = Path(os.path.normpath(root / target_dir))
        if final_path.parent != Path(os.path.normpath(root)):
            raise InvalidRequestError(
                f"Target directory {target_dir!r} resolves outside {root}", target_dir=target_dir
            )
        return final_path

    @staticmethod
    def _guard_existing(final_path: Path, update_existing: bool) -> None:
        if final_path.exists() and not update_existing:
            raise AlreadyExistsError(
                f"{final_path} already exists; deploy with update_existing to replace it",
                path=str(final_path),
            )

    async def _current_ref(self, owner: str, name: str, fallback: str) -> str:
        """Ref of what is deployed now, for labelling the backup."""
        try:
            repo = await self._ctx.store.get_by_name(owner, name)
        except Exception:
            log.exception("tracked_repository_lookup_failed", owner=owner, name=name)
            return fallback
        return repo.ref if repo else fallback

    async def _finalize(
        self,
        owner: str,
        name: str,
        ref: str,
        kind: DeployKind,
        target_dir: str,
        auto_update: bool | None,
    ) -> str | None:
        """Record the deployed commit. Failures here never fail the deploy."""
        commit_sha: str | None = None
        try:
            commit_sha = (await self._ctx.github.get_latest_commit(owner, name, ref)).data.sha
        except DeployerError as exc:
            log.warning(
                "deploy_commit_lookup_failed", owner=owner, name=name, ref=ref, error=exc.message
            )

        now = datetime.now(UTC)
        try:
            existing = await self._ctx.store.get_by_name(owner, name)
            if existing is None or existing.id is None:
                await self._ctx.store.add(
                    TrackedRepository(
                        owner=owner,
                        name=name,
                        ref=ref,
                        kind=kind,
                        target_dir=target_dir,
                        auto_update=bool(auto_update),
                        last_deployed_at=now,
                        last_deployed_commit_sha=commit_sha,
                    )
                )
            else:
                fields: dict[str, object] = {
                    "ref": ref,
                    "kind": kind,
                    "target_dir": target_dir,
                    "last_deployed_at": now,
                    "last_checked_at": now,
                }
                if commit_sha:
                    fields["last_deployed_commit_sha"] = commit_sha
                if auto_update is not None:
                    fields["auto_update"] = auto_update
                await self._ctx.store.update(existing.id, **fields)
        except Exception:
            log.exception("deploy_bookkeeping_failed", owner=owner, name=name, ref=ref)
        return commit_sha

    # ------------------------------------------------------------------
    # Rollback
    # ------------------------------------------------------------------

    async def rollback(self, owner: str, name: str, backup_id: str) -> DeploymentResult:
        """Restore a backup over its original target directory."""
        progress = _Progress(owner, name)
        log.info("rollback_started", owner=owner, name=name, backup_id=backup_id)
        try:
            metadata = await self._ctx.backups.read_metadata(owner, name, backup_id)
            target_dir = Path(metadata.directory).name
            async with self._ctx.locks.hold(metadata.kind, target_dir):
                progress.advance(DeployState.SWAPPING)
                restored = await self._ctx.backups.restore(owner, name, backup_id)
        except DeployerError as exc:
            exc.with_context(owner=owner, name=name, backup_id=backup_id)
            log.warning(
                "rollback_failed",
                owner=owner,
                name=name,
                backup_id=backup_id,
                error_kind=exc.kind.value,
                error=exc.message,
            )
            await self._notify(
                NotificationEvent.ROLLBACK_FAILED, owner, name, None, None, detail=exc.message, error=exc
            )
            return DeploymentResult.failed(owner, name, exc, state=progress.state)

        progress.advance(DeployState.FINALIZING)
        restored_ref = metadata.ref
        if restored_ref and restored_ref != ROLLBACK_REF:
            try:
                existing = await self._ctx.store.get_by_name(owner, name)
                if existing is not None and existing.id is not None:
                    await self._ctx.store.update(
                        existing.id, ref=restored_ref, last_deployed_at=datetime.now(UTC)
                    )
            except Exception:
                log.exception("rollback_bookkeeping_failed", owner=owner, name=name)

        progress.advance(DeployState.DONE)
        undo_id = restored.rollback_backup.backup_id if restored.rollback_backup else None
        log.info(
            "rollback_succeeded", owner=owner, name=name, backup_id=backup_id, undo_backup_id=undo_id
        )
        await self._notify(
            NotificationEvent.AFTER_ROLLBACK,
            owner,
            name,
            restored_ref,
            metadata.kind,
            detail=f"Restored {backup_id} to {restored.target_path}",
        )
        return DeploymentResult.succeeded(
            owner,
            name,
            ref=restored_ref,
            kind=metadata.kind,
            commit_sha=None,
            target_path=str(restored.target_path),
            backup_id=undo_id,
            message=f"Restored backup {backup_id}",
        )

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    async def _notify(
        self,
        event: NotificationEvent,
        owner: str,
        name: str,
        ref: str | None,
        kind: DeployKind | None,
        *,
        detail: str = "",
        error: DeployerError | None = None,
    ) -> None:
        await self._ctx.notifier.notify(
            Notification(
                event=event,
                owner=owner,
                name=name,
                ref=ref,
                kind=kind,
                detail=detail,
                error_kind=error.kind if error else None,
            )
        )
