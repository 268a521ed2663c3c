"""Credential providers for the GitHub client."""

from __future__ import annotations

from typing import Protocol


class CredentialProvider(Protocol):
    """Supplies the GitHub token; an empty string means public-only access."""

    def get_token(self) -> str: ...


class StaticCredentialProvider:
    """Returns a fixed token, typically taken from settings."""

    def __init__(self, token: str | None = None) -> None:
        self._token = (token or "").strip()

    def get_token(self) -> str:
        return self._token
