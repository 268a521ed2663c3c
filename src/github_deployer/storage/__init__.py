"""Tracked repository persistence."""

from github_deployer.storage.repositories import (
    UPDATABLE_FIELDS,
    PostgresRepositoryStore,
    RepositoryStore,
    check_fields,
)

__all__ = ["UPDATABLE_FIELDS", "PostgresRepositoryStore", "RepositoryStore", "check_fields"]
