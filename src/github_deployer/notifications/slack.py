"""Slack incoming-webhook notifier."""

from __future__ import annotations

import httpx

from github_deployer.errors import RemoteError, TransportError
from github_deployer.logging import get_logger
from github_deployer.notifications.dispatcher import Notification, NotificationEvent

log = get_logger("github_deployer.notifications.slack")

FOOTER = "GitHub Deployer"


class SlackNotifier:
    """Posts one attachment per notification to a Slack webhook.

    Each event family can be switched off independently; failures of any
    kind share the ``notify_on_error`` toggle.
    """

    def __init__(
        self,
        webhook_url: str,
        *,
        notify_on_deploy: bool = True,
        notify_on_update: bool = True,
        notify_on_error: bool = True,
        notify_on_rollback: bool = True,
        timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._webhook_url = webhook_url
        self._toggles = {
            NotificationEvent.AFTER_DEPLOY: notify_on_deploy,
            NotificationEvent.AFTER_UPDATE: notify_on_update,
            NotificationEvent.AFTER_ROLLBACK: notify_on_rollback,
            NotificationEvent.DEPLOY_FAILED: notify_on_error,
            NotificationEvent.UPDATE_FAILED: notify_on_error,
            NotificationEvent.ROLLBACK_FAILED: notify_on_error,
        }
        self._timeout = timeout
        self._client = http_client
        self._owns_client = http_client is None

    def wants(self, event: NotificationEvent) -> bool:
        return self._toggles.get(event, False)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def build_payload(self, notification: Notification) -> dict[str, object]:
        return {
            "attachments": [
                {
                    "fallback": notification.title,
                    "color": "danger" if notification.event.is_failure else "good",
                    "title": notification.title,
                    "text": notification.text,
                    "footer": FOOTER,
                    "ts": int(notification.timestamp.timestamp()),
                }
            ]
        }

    async def send(self, notification: Notification) -> None:
        if not self.wants(notification.event):
            return

        client = await self._get_client()
        try:
            response = await client.post(self._webhook_url, json=self.build_payload(notification))
        except httpx.HTTPError as exc:
            raise TransportError(f"Slack webhook unreachable: {exc}", cause=exc) from exc
        if response.status_code != 200:
            raise RemoteError(
                f"Slack webhook returned HTTP {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )
        log.debug("slack_notification_sent", notification=notification.event.value)
