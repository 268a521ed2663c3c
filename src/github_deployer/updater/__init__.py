"""Change detection, scheduling and webhook-triggered updates."""

from github_deployer.updater.detector import ChangeDetector, UpdateCheck
from github_deployer.updater.webhook import (
    WebhookHandler,
    WebhookOutcome,
    WebhookStatus,
    sign_payload,
    verify_signature,
)

__all__ = [
    "ChangeDetector",
    "UpdateCheck",
    "WebhookHandler",
    "WebhookOutcome",
    "WebhookStatus",
    "sign_payload",
    "verify_signature",
]
