"""Backup capture, retention and restore."""

from github_deployer.backup.store import BackupStore, RestoreResult

__all__ = ["BackupStore", "RestoreResult"]
