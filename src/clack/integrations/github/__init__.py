"""GitHub integration: credentials and pull request API access."""

from .client import (
    GitHubClient,
    PullRequestSnapshot,
    authenticated_clone_url,
    parse_pr_url,
    parse_repo_url,
)
from .credentials import (
    CredentialError,
    CredentialProvider,
    GitHubAppTokenProvider,
    StaticTokenProvider,
    build_credential_provider,
)

__all__ = [
    "CredentialError",
    "CredentialProvider",
    "GitHubAppTokenProvider",
    "GitHubClient",
    "PullRequestSnapshot",
    "StaticTokenProvider",
    "authenticated_clone_url",
    "build_credential_provider",
    "parse_pr_url",
    "parse_repo_url",
]
