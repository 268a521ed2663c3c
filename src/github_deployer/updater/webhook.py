"""GitHub webhook handling.

Supported events:

* ``ping`` - acknowledged.
* ``push`` - redeploys an auto-update repository when the pushed branch
  is the tracked ref.
* ``release`` - redeploys an auto-update repository when a release is
  published.

The signature is checked against the raw body before it is parsed.
"""

from __future__ import annotations

import hashlib
import hmac
import json
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from github_deployer.logging import get_logger
from github_deployer.models import DeploymentResult, TrackedRepository

if TYPE_CHECKING:
    from github_deployer.deploy import Deployer
    from github_deployer.storage import RepositoryStore

log = get_logger("github_deployer.updater.webhook")

SIGNATURE_PREFIX = "sha256="


class WebhookStatus(StrEnum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    DEPLOYMENT_TRIGGERED = "deployment_triggered"


@dataclass
class WebhookOutcome:
    """What happened to one delivery, and the HTTP status to answer with."""

    status: WebhookStatus
    http_status: int
    message: str
    event: str | None = None
    repository: str | None = None
    deployment: DeploymentResult | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.status != WebhookStatus.REJECTED
            and (self.deployment is None or self.deployment.success),
            "status": self.status.value,
            "message": self.message,
            "event": self.event,
            "repository": self.repository,
            "deployment": self.deployment.to_dict() if self.deployment else None,
        }


def sign_payload(payload: bytes, secret: str) -> str:
    """``X-Hub-Signature-256`` value for ``payload``."""
    digest = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()
    return SIGNATURE_PREFIX + digest


def verify_signature(payload: bytes, signature: str | None, secret: str | None) -> bool:
    """Check a delivery signature; anything goes when no secret is set."""
    if not secret:
        return True
    if not signature:
        return False
    return hmac.compare_digest(sign_payload(payload, secret), signature.strip())


class WebhookHandler:
    """Turns a webhook delivery into an outcome, deploying when it should."""

    def __init__(self, store: RepositoryStore, deployer: Deployer, secret: str | None = None) -> None:
        self._store = store
        self._deployer = deployer
        self._secret = secret or None

    async def handle(
        self, raw_payload: bytes, signature_header: str | None, event_type: str | None
    ) -> WebhookOutcome:
        if not verify_signature(raw_payload, signature_header, self._secret):
            log.warning("webhook_signature_invalid", event_type=event_type)
            return WebhookOutcome(WebhookStatus.REJECTED, 401, "Invalid webhook signature")

        try:
            data = json.loads(raw_payload)
        except (ValueError, UnicodeDecodeError):
            data = None
        if not data or not isinstance(data, dict):
            return WebhookOutcome(WebhookStatus.REJECTED, 400, "Invalid payload format")

        if event_type == "ping":
            return WebhookOutcome(
                WebhookStatus.ACCEPTED, 200, "Webhook received successfully", event="ping"
            )
        if event_type == "push":
            return await self._handle_push(data)
        if event_type == "release":
            return await self._handle_release(data)
        return WebhookOutcome(
            WebhookStatus.REJECTED, 400, f"Unsupported event type: {event_type}", event=event_type
        )

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def _handle_push(self, data: dict[str, Any]) -> WebhookOutcome:
        full_name = self._full_name(data)
        if full_name is None:
            return WebhookOutcome(
                WebhookStatus.REJECTED, 400, "Repository information missing", event="push"
            )

        repo = await self._find_auto_update(full_name)
        if repo is None:
            return WebhookOutcome(
                WebhookStatus.ACCEPTED,
                200,
                "Repository not configured for auto-updates",
                event="push",
                repository=full_name,
            )

        ref = str(data.get("ref") or "")
        branch = ref.removeprefix("refs/heads/") if ref.startswith("refs/heads/") else None
        if branch != repo.ref:
            return WebhookOutcome(
                WebhookStatus.ACCEPTED,
                200,
                f"Push to non-tracked ref {ref or '(none)'}",
                event="push",
                repository=full_name,
            )

        return await self._deploy(repo, "push", full_name)

    async def _handle_release(self, data: dict[str, Any]) -> WebhookOutcome:
        release = data.get("release")
        if data.get("action") != "published" or not isinstance(release, dict):
            return WebhookOutcome(
                WebhookStatus.ACCEPTED, 200, "Not a published release", event="release"
            )

        full_name = self._full_name(data)
        if full_name is None:
            return WebhookOutcome(
                WebhookStatus.REJECTED, 400, "Repository information missing", event="release"
            )

        repo = await self._find_auto_update(full_name)
        if repo is None:
            return WebhookOutcome(
                WebhookStatus.ACCEPTED,
                200,
                "Repository not configured for auto-updates",
                event="release",
                repository=full_name,
            )

        log.info("webhook_release_published", repo=full_name, tag=release.get("tag_name"))
        return await self._deploy(repo, "release", full_name)

    async def _deploy(self, repo: TrackedRepository, event: str, full_name: str) -> WebhookOutcome:
        if repo.id is None:
            log.error("webhook_repository_without_id", repo=full_name, webhook_event=event)
            return WebhookOutcome(
                WebhookStatus.REJECTED,
                500,
                "Tracked repository has no id",
                event=event,
                repository=full_name,
            )
        result = await self._deployer.deploy_repository(repo.id)
        log.info(
            "webhook_deployment_finished",
            repo=full_name,
            webhook_event=event,
            success=result.success,
        )
        if result.success:
            message = "Deployment triggered successfully"
        else:
            message = result.message or "Deployment failed"
        return WebhookOutcome(
            WebhookStatus.DEPLOYMENT_TRIGGERED,
            200 if result.success else 500,
            message,
            event=event,
            repository=full_name,
            deployment=result,
        )

    @staticmethod
    def _full_name(data: dict[str, Any]) -> str | None:
        repository = data.get("repository")
        if not isinstance(repository, dict):
            return None
        full_name = repository.get("full_name")
        return str(full_name) if full_name else None

    async def _find_auto_update(self, full_name: str) -> TrackedRepository | None:
        wanted = full_name.lower()
        for repo in await self._store.list_auto_update():
            if repo.full_name.lower() == wanted:
                return repo
        return None
