"""Shared-secret check for the admin HTTP endpoints."""

from __future__ import annotations

import secrets

SECRET_HEADER = "X-Deployer-Secret"


def validate_secret(provided: str | None, expected: str) -> bool:
    """Constant-time comparison; empty values never match."""
    if not provided or not expected:
        return False
    return secrets.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))
