"""Change detection for auto-updating repositories.

Each sweep compares the latest commit on every auto-update repository's
tracked ref with the commit that was last deployed, and redeploys the
ones that moved. One repository failing never stops the sweep.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from github_deployer.errors import DeployerError, ErrorKind, NotFoundError
from github_deployer.logging import get_logger
from github_deployer.models import DeploymentResult, TrackedRepository

if TYPE_CHECKING:
    from github_deployer.context import EngineContext
    from github_deployer.deploy import Deployer

log = get_logger("github_deployer.updater.detector")


@dataclass
class UpdateCheck:
    """Outcome of checking one repository during a sweep."""

    repository: TrackedRepository
    latest_sha: str | None = None
    update_available: bool = False
    deployment: DeploymentResult | None = None
    error: str | None = None
    error_kind: ErrorKind | None = None

    @property
    def deployed(self) -> bool:
        return self.deployment is not None and self.deployment.success

    def to_dict(self) -> dict[str, Any]:
        return {
            "repository": self.repository.full_name,
            "id": self.repository.id,
            "ref": self.repository.ref,
            "previous_sha": self.repository.last_deployed_commit_sha,
            "latest_sha": self.latest_sha,
            "update_available": self.update_available,
            "deployed": self.deployed,
            "deployment": self.deployment.to_dict() if self.deployment else None,
            "error": self.error,
            "error_kind": self.error_kind.value if self.error_kind else None,
        }


class ChangeDetector:
    """Polls GitHub for new commits and triggers redeploys."""

    def __init__(self, context: EngineContext, deployer: Deployer) -> None:
        self._ctx = context
        self._deployer = deployer
        self.last_run_at: datetime | None = None

    # ------------------------------------------------------------------
    # Sweep
    # ------------------------------------------------------------------

    async def check_for_updates(self) -> list[UpdateCheck]:
        """Check every auto-update repository once."""
        repos = await self._ctx.store.list_auto_update()
        results = [await self._check(repo) for repo in repos]
        self.last_run_at = datetime.now(UTC)
        log.info(
            "update_sweep_finished",
            checked=len(results),
            updates=sum(1 for r in results if r.update_available),
            deployed=sum(1 for r in results if r.deployed),
            errors=sum(1 for r in results if r.error),
        )
        return results

    async def _check(self, repo: TrackedRepository) -> UpdateCheck:
        check = UpdateCheck(repository=repo)
        try:
            await self._ctx.github.get_repository(repo.owner, repo.name)
            latest = (await self._ctx.github.get_latest_commit(repo.owner, repo.name, repo.ref)).data
            check.latest_sha = latest.sha
            if repo.id is not None:
                await self._ctx.store.update(repo.id, last_checked_at=datetime.now(UTC))

            if latest.sha == repo.last_deployed_commit_sha:
                log.debug("repository_up_to_date", repo=repo.full_name, sha=latest.sha)
                return check

            check.update_available = True
            log.info(
                "repository_update_available",
                repo=repo.full_name,
                ref=repo.ref,
                previous_sha=repo.last_deployed_commit_sha,
                latest_sha=latest.sha,
            )
            if repo.id is None:
                raise NotFoundError(f"{repo.full_name} has no stored id")
            result = await self._deployer.deploy_repository(repo.id)
            check.deployment = result
            if result.success:
                await self._ctx.store.update(
                    repo.id, last_deployed_commit_sha=result.commit_sha or latest.sha
                )
            else:
                check.error = result.message
                check.error_kind = result.error_kind
        except DeployerError as exc:
            check.error = exc.message
            check.error_kind = exc.kind
            log.warning(
                "update_check_failed",
                repo=repo.full_name,
                error_kind=exc.kind.value,
                error=exc.message,
            )
        except Exception as exc:
            check.error = str(exc)
            log.exception("update_check_crashed", repo=repo.full_name)
        return check

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    async def run_once(self) -> list[UpdateCheck]:
        """One sweep; errors loading the repository list are logged."""
        try:
            return await self.check_for_updates()
        except Exception:
            log.exception("update_sweep_failed")
            return []

    async def run_forever(self, interval: float | None = None) -> None:
        """Sweep, then sleep ``interval`` seconds, until cancelled."""
        period = interval if interval is not None else self._ctx.settings.check_interval_seconds
        log.info("update_scheduler_started", interval=period)
        try:
            while True:
                await self.run_once()
                await asyncio.sleep(period)
        except asyncio.CancelledError:
            log.info("update_scheduler_stopped")
            raise

    # ------------------------------------------------------------------
    # Operator toggles
    # ------------------------------------------------------------------

    async def enable_auto_update(self, repo_id: int) -> TrackedRepository:
        return await self._set_auto_update(repo_id, True)

    async def disable_auto_update(self, repo_id: int) -> TrackedRepository:
        return await self._set_auto_update(repo_id, False)

    async def _set_auto_update(self, repo_id: int, enabled: bool) -> TrackedRepository:
        repo = await self._ctx.store.update(repo_id, auto_update=enabled)
        if repo is None:
            raise NotFoundError(f"Tracked repository {repo_id} not found", repo_id=repo_id)
        log.info("auto_update_toggled", repo=repo.full_name, enabled=enabled)
        return repo
