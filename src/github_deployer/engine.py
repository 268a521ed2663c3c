"""Single entry point for everything outside the engine (HTTP, CLI, scheduler)."""

from __future__ import annotations

from typing import Any

from github_deployer.context import EngineContext
from github_deployer.deploy import Deployer
from github_deployer.errors import NotFoundError
from github_deployer.logging import get_logger
from github_deployer.models import (
    BackupDescriptor,
    DeploymentResult,
    DeployKind,
    TrackedRepository,
    check_target_dir,
    parse_repository_reference,
)
from github_deployer.updater import ChangeDetector, UpdateCheck, WebhookHandler, WebhookOutcome

log = get_logger("github_deployer.engine")


class DeploymentEngine:
    """Facade over the deployer, change detector and webhook handler."""

    def __init__(self, context: EngineContext) -> None:
        self.context = context
        self.deployer = Deployer(context)
        self.detector = ChangeDetector(context, self.deployer)
        secret = context.settings.webhook_secret
        self.webhooks = WebhookHandler(
            context.store, self.deployer, secret.get_secret_value() if secret else None
        )

    # ------------------------------------------------------------------
    # Deployments
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
        return await self.deployer.deploy(
            owner,
            name,
            ref,
            kind,
            update_existing,
            target_dir=target_dir,
            auto_update=auto_update,
        )

    async def deploy_by_id(self, repo_id: int) -> DeploymentResult:
        return await self.deployer.deploy_repository(repo_id)

    async def rollback(self, owner: str, name: str, backup_id: str) -> DeploymentResult:
        return await self.deployer.rollback(owner, name, backup_id)

    async def list_backups(self, owner: str, name: str) -> list[BackupDescriptor]:
        return await self.context.backups.list_backups(owner, name)

    async def delete_backup(self, owner: str, name: str, backup_id: str) -> None:
        await self.context.backups.delete(owner, name, backup_id)

    async def check_for_updates(self) -> list[UpdateCheck]:
        return await self.detector.check_for_updates()

    async def handle_webhook(
        self, raw_payload: bytes, signature_header: str | None, event_type: str | None
    ) -> WebhookOutcome:
        return await self.webhooks.handle(raw_payload, signature_header, event_type)

    # ------------------------------------------------------------------
    # Tracked repositories
    # ------------------------------------------------------------------

    async def list_repositories(self) -> list[TrackedRepository]:
        return await self.context.store.list_all()

    async def register_repository(
        self,
        reference: str,
        *,
        ref: str | None = None,
        kind: DeployKind | None = None,
        target_dir: str | None = None,
        auto_update: bool = False,
    ) -> TrackedRepository:
        """Start tracking a repository given as ``owner/name`` or a GitHub URL.

        The ref defaults to the repository's default branch and the kind
        is detected from the repository contents when not given.
        """
        owner, name = parse_repository_reference(reference)
        target_dir = check_target_dir(target_dir or name)
        metadata = (await self.context.github.get_repository(owner, name)).data
        ref = ref or metadata.default_branch
        kind = DeployKind(kind) if kind else await self.detect_kind(owner, name, ref)
        repo = await self.context.store.add(
            TrackedRepository(
                owner=owner,
                name=name,
                ref=ref,
                kind=kind,
                target_dir=target_dir,
                auto_update=auto_update,
            )
        )
        log.info("repository_registered", repo=repo.full_name, ref=ref, kind=kind.value)
        return repo

    async def detect_kind(self, owner: str, name: str, ref: str | None = None) -> DeployKind:
        """Guess plugin vs theme from the files at the repository root."""
        candidates = (
            ("style.css", "Theme Name:", DeployKind.THEME),
            (f"{name}.php", "Plugin Name:", DeployKind.PLUGIN),
        )
        for path, marker, kind in candidates:
            try:
                content = (
                    await self.context.github.get_file_contents(owner, name, path, ref)
                ).data
            except NotFoundError:
                continue
            if marker in content.decode("utf-8", errors="replace"):
                return kind
        return DeployKind.PLUGIN

    async def remove_repository(self, repo_id: int) -> bool:
        """Stop tracking a repository; deployed files are left in place."""
        removed = await self.context.store.delete(repo_id)
        if removed:
            log.info("repository_removed", id=repo_id)
        return removed

    async def set_auto_update(self, repo_id: int, enabled: bool) -> TrackedRepository:
        if enabled:
            return await self.detector.enable_auto_update(repo_id)
        return await self.detector.disable_auto_update(repo_id)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    async def token_status(self) -> dict[str, Any]:
        """Whether the GitHub token works and when it expires."""
        github = self.context.github
        valid = await github.verify_token()
        rate_limit = github.rate_limit
        return {
            "authenticated": github.authenticated,
            "valid": valid,
            "expires_at": github.token_expires_at.isoformat() if github.token_expires_at else None,
            "expiring_soon": github.is_token_expiring(),
            "rate_limit_remaining": rate_limit.remaining if rate_limit else None,
        }

    async def close(self) -> None:
        await self.context.close()
