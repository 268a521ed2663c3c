"""Deployment notification hooks."""

from github_deployer.notifications.dispatcher import (
    LogNotifier,
    Notification,
    NotificationDispatcher,
    NotificationEvent,
    NotificationSink,
)
from github_deployer.notifications.slack import SlackNotifier

__all__ = [
    "LogNotifier",
    "Notification",
    "NotificationDispatcher",
    "NotificationEvent",
    "NotificationSink",
    "SlackNotifier",
]
