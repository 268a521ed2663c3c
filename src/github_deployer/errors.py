"""Error taxonomy for the deployment engine.

Every failure the engine can report has an ``ErrorKind`` and a matching
``DeployerError`` subclass.  Components raise these; the orchestrator and
webhook handler turn them into result objects so that callers branch on
``kind`` rather than on message text.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any


class ErrorKind(StrEnum):
    """Machine-readable failure categories."""

    AUTH_REQUIRED = "auth_required"
    AUTH_INSUFFICIENT = "auth_insufficient"
    NOT_FOUND = "not_found"
    RATE_LIMITED = "rate_limited"
    TRANSPORT_ERROR = "transport_error"
    INVALID_REQUEST = "invalid_request"
    REMOTE_ERROR = "remote_error"
    DOWNLOAD_FAILED = "download_failed"
    EXTRACTION_FAILED = "extraction_failed"
    INCOMPATIBLE_ARCHIVE = "incompatible_archive"
    ALREADY_EXISTS = "already_exists"
    RENAME_FAILED = "rename_failed"
    BUSY = "busy"
    LOCK_FAILED = "lock_failed"
    BACKUP_FAILED = "backup_failed"
    BACKUP_NOT_FOUND = "backup_not_found"
    METADATA_MISSING = "metadata_missing"
    METADATA_INVALID = "metadata_invalid"
    TARGET_MISSING = "target_missing"
    INVALID_REPOSITORY_REFERENCE = "invalid_repository_reference"

    @property
    def is_transient(self) -> bool:
        """Whether a caller may reasonably retry this failure later."""
        return self in (ErrorKind.RATE_LIMITED, ErrorKind.TRANSPORT_ERROR, ErrorKind.BUSY)


class DeployerError(Exception):
    """Base class for every engine failure."""

    kind: ErrorKind = ErrorKind.REMOTE_ERROR

    def __init__(
        self,
        message: str,
        *,
        cause: BaseException | None = None,
        **context: Any,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.cause = cause
        self.context: dict[str, Any] = {k: v for k, v in context.items() if v is not None}
        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **context: Any) -> DeployerError:
        """Attach extra context (owner, name, ref, kind...) and return self."""
        for key, value in context.items():
            if value is not None:
                self.context.setdefault(key, value)
        return self

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "context": {k: str(v) for k, v in self.context.items()},
        }


# ------------------------------------------------------------------
# Remote host
# ------------------------------------------------------------------


class AuthRequiredError(DeployerError):
    """No credential, or the credential was rejected (HTTP 401)."""

    kind = ErrorKind.AUTH_REQUIRED


class AuthInsufficientError(DeployerError):
    """The credential lacks the scope for this resource (HTTP 403)."""

    kind = ErrorKind.AUTH_INSUFFICIENT


class NotFoundError(DeployerError):
    """Repository, ref, file or tracked record does not exist."""

    kind = ErrorKind.NOT_FOUND


class RateLimitedError(DeployerError):
    """The host refused the call because the API quota is exhausted."""

    kind = ErrorKind.RATE_LIMITED

    def __init__(self, message: str, *, reset_at: int | None = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.reset_at = reset_at


class TransportError(DeployerError):
    """Network failure or timeout talking to the remote host."""

    kind = ErrorKind.TRANSPORT_ERROR


class InvalidRequestError(DeployerError):
    """A request was rejected as malformed, by GitHub (HTTP 422) or locally."""

    kind = ErrorKind.INVALID_REQUEST


class RemoteError(DeployerError):
    """Any other unexpected response from the remote host."""

    kind = ErrorKind.REMOTE_ERROR

    def __init__(self, message: str, *, status_code: int | None = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.status_code = status_code


class InvalidRepositoryReferenceError(DeployerError):
    """A repository URL or ``owner/name`` string could not be parsed."""

    kind = ErrorKind.INVALID_REPOSITORY_REFERENCE


# ------------------------------------------------------------------
# Installation
# ------------------------------------------------------------------


class DownloadFailedError(DeployerError):
    kind = ErrorKind.DOWNLOAD_FAILED


class ExtractionFailedError(DeployerError):
    kind = ErrorKind.EXTRACTION_FAILED


class IncompatibleArchiveError(DeployerError):
    """The extracted tree matched none of the accepted deployable shapes."""

    kind = ErrorKind.INCOMPATIBLE_ARCHIVE

    def __init__(self, message: str, *, checked: list[str] | None = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.checked: list[str] = list(checked or [])

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["checked_shapes"] = self.checked
        return data


class AlreadyExistsError(DeployerError):
    kind = ErrorKind.ALREADY_EXISTS


class RenameFailedError(DeployerError):
    kind = ErrorKind.RENAME_FAILED


class BusyError(DeployerError):
    """Another operation holds the lock for the same target directory."""

    kind = ErrorKind.BUSY


class LockFailedError(DeployerError):
    """The lock file for a target could not be created or opened."""

    kind = ErrorKind.LOCK_FAILED


# ------------------------------------------------------------------
# Backups
# ------------------------------------------------------------------


class BackupFailedError(DeployerError):
    kind = ErrorKind.BACKUP_FAILED


class BackupNotFoundError(DeployerError):
    kind = ErrorKind.BACKUP_NOT_FOUND


class MetadataMissingError(DeployerError):
    kind = ErrorKind.METADATA_MISSING


class MetadataInvalidError(DeployerError):
    kind = ErrorKind.METADATA_INVALID


class TargetMissingError(DeployerError):
    kind = ErrorKind.TARGET_MISSING
