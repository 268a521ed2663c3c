"""Archive download, validation and installation."""

from github_deployer.installer.archive import ArchiveInstaller
from github_deployer.installer.validation import (
    ArchiveShape,
    DirectoryWithIndexShape,
    HeaderFileShape,
    SingleHeaderFileShape,
    ValidationPolicy,
    wordpress_policy,
)

__all__ = [
    "ArchiveInstaller",
    "ArchiveShape",
    "DirectoryWithIndexShape",
    "HeaderFileShape",
    "SingleHeaderFileShape",
    "ValidationPolicy",
    "wordpress_policy",
]
