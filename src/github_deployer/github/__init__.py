"""GitHub source client: repository metadata, refs, commits and archive URLs."""

from github_deployer.github.client import GitHubClient
from github_deployer.github.credentials import CredentialProvider, StaticCredentialProvider

__all__ = [
    "CredentialProvider",
    "GitHubClient",
    "StaticCredentialProvider",
]
