"""Process-wide wiring of the engine's collaborators."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from pathlib import Path

from github_deployer.backup import BackupStore
from github_deployer.config import Settings
from github_deployer.deploy.locks import TargetLocks
from github_deployer.github import CredentialProvider, GitHubClient, StaticCredentialProvider
from github_deployer.installer import ArchiveInstaller, ValidationPolicy
from github_deployer.models import DeployKind
from github_deployer.notifications import (
    LogNotifier,
    NotificationDispatcher,
    NotificationSink,
    SlackNotifier,
)
from github_deployer.storage import RepositoryStore


def default_sinks(settings: Settings) -> list[NotificationSink]:
    """Log sink always; Slack when a webhook URL is configured."""
    sinks: list[NotificationSink] = [LogNotifier()]
    if settings.slack_webhook_url:
        sinks.append(
            SlackNotifier(
                settings.slack_webhook_url.get_secret_value(),
                notify_on_deploy=settings.notify_on_deploy,
                notify_on_update=settings.notify_on_update,
                notify_on_error=settings.notify_on_error,
                notify_on_rollback=settings.notify_on_rollback,
                timeout=settings.http_timeout,
            )
        )
    return sinks


@dataclass
class EngineContext:
    """Everything a deployment component needs, built once and passed down."""

    settings: Settings
    credentials: CredentialProvider
    store: RepositoryStore
    notifier: NotificationDispatcher
    github: GitHubClient
    installer: ArchiveInstaller
    backups: BackupStore
    locks: TargetLocks
    destination_roots: dict[DeployKind, Path]

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        store: RepositoryStore,
        sinks: Iterable[NotificationSink] | None = None,
        *,
        credentials: CredentialProvider | None = None,
        policies: Mapping[DeployKind, ValidationPolicy] | None = None,
    ) -> EngineContext:
        credentials = credentials or StaticCredentialProvider(settings.token)
        roots = settings.destination_roots()
        return cls(
            settings=settings,
            credentials=credentials,
            store=store,
            notifier=NotificationDispatcher(default_sinks(settings) if sinks is None else sinks),
            github=GitHubClient(
                credentials,
                api_url=settings.github_api_url,
                timeout=settings.http_timeout,
                rate_limit_warning_threshold=settings.rate_limit_warning_threshold,
            ),
            installer=ArchiveInstaller(
                timeout=settings.http_timeout,
                work_dir=settings.work_dir,
                policies=policies,
            ),
            backups=BackupStore(settings.backup_dir, roots, retention=settings.backup_retention),
            locks=TargetLocks(settings.lock_dir),
            destination_roots=roots,
        )

    def destination_root(self, kind: DeployKind) -> Path:
        return self.destination_roots[DeployKind(kind)]

    async def close(self) -> None:
        """Release HTTP clients held by the context."""
        await self.github.close()
        await self.installer.close()
        for sink in self.notifier.sinks:
            if isinstance(sink, SlackNotifier):
                await sink.close()
