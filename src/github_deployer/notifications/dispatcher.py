"""Notification events and fan-out to sinks.

Delivery is fire-and-forget: a failing sink is logged and skipped, it
never changes the outcome of the deployment that triggered it.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Protocol

from github_deployer.errors import ErrorKind
from github_deployer.logging import get_logger
from github_deployer.models import DeployKind

log = get_logger("github_deployer.notifications.dispatcher")


class NotificationEvent(StrEnum):
    AFTER_DEPLOY = "after_deploy"
    DEPLOY_FAILED = "deploy_failed"
    AFTER_UPDATE = "after_update"
    UPDATE_FAILED = "update_failed"
    AFTER_ROLLBACK = "after_rollback"
    ROLLBACK_FAILED = "rollback_failed"

    @property
    def is_failure(self) -> bool:
        return self in (
            NotificationEvent.DEPLOY_FAILED,
            NotificationEvent.UPDATE_FAILED,
            NotificationEvent.ROLLBACK_FAILED,
        )


_VERBS = {
    NotificationEvent.AFTER_DEPLOY: "Deployed",
    NotificationEvent.DEPLOY_FAILED: "Failed to deploy",
    NotificationEvent.AFTER_UPDATE: "Updated",
    NotificationEvent.UPDATE_FAILED: "Failed to update",
    NotificationEvent.AFTER_ROLLBACK: "Rolled back",
    NotificationEvent.ROLLBACK_FAILED: "Failed to roll back",
}


@dataclass
class Notification:
    """One hook invocation: what happened to which repository."""

    event: NotificationEvent
    owner: str
    name: str
    ref: str | None = None
    kind: DeployKind | None = None
    detail: str = ""
    error_kind: ErrorKind | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def title(self) -> str:
        return f"{_VERBS[self.event]} {self.owner}/{self.name} from GitHub"

    @property
    def text(self) -> str:
        lines = [f"Repository: {self.owner}/{self.name}"]
        if self.ref:
            lines.append(f"Ref: {self.ref}")
        if self.kind:
            lines.append(f"Type: {self.kind.value}")
        if self.detail:
            lines.append(("Error: " if self.event.is_failure else "") + self.detail)
        lines.append(f"Time: {self.timestamp.isoformat()}")
        return "\n".join(lines)

    def to_dict(self) -> dict[str, Any]:
        return {
            "event": self.event.value,
            "owner": self.owner,
            "name": self.name,
            "ref": self.ref,
            "kind": self.kind.value if self.kind else None,
            "detail": self.detail,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "timestamp": self.timestamp.isoformat(),
        }


class NotificationSink(Protocol):
    """Anything that can deliver a notification somewhere."""

    async def send(self, notification: Notification) -> None: ...


class LogNotifier:
    """Writes every notification to the structured log."""

    async def send(self, notification: Notification) -> None:
        fields = notification.to_dict()
        fields["notification"] = fields.pop("event")
        level = log.warning if notification.event.is_failure else log.info
        level("deployment_notification", **fields)


class NotificationDispatcher:
    """Fans a notification out to every configured sink."""

    def __init__(self, sinks: Iterable[NotificationSink] = ()) -> None:
        self._sinks = list(sinks)

    @property
    def sinks(self) -> list[NotificationSink]:
        return list(self._sinks)

    def add_sink(self, sink: NotificationSink) -> None:
        self._sinks.append(sink)

    async def notify(self, notification: Notification) -> None:
        for sink in self._sinks:
            try:
                await sink.send(notification)
            except Exception:
                log.exception(
                    "notification_delivery_failed",
                    sink=type(sink).__name__,
                    notification=notification.event.value,
                    owner=notification.owner,
                    name=notification.name,
                )
