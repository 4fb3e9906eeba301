"""Short-lived GitHub credentials for git remotes and API calls.

Git network operations re-derive their remote URL from ``get_token()``
every time, but providers cache the underlying token until it is within
``refresh_buffer`` of expiry.
"""

import logging
import os
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Optional

from github import Auth, GithubIntegration

from ...core.config import GitHubAuthConfig

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_BUFFER = timedelta(minutes=5)


class CredentialError(Exception):
    """Raised when no usable GitHub credential can be produced."""


class CredentialProvider(ABC):
    """Source of GitHub access tokens."""

    @abstractmethod
    def get_token(self) -> str:
        """Return a token valid for at least the provider's refresh buffer."""


class StaticTokenProvider(CredentialProvider):
    """Personal access token or any other non-expiring token."""

    def __init__(self, token: str):
        if not token:
            raise CredentialError("GitHub token is empty")
        self._token = token

    def get_token(self) -> str:
        return self._token


@dataclass
class CachedToken:
    token: str
    expires_at: datetime


class GitHubAppTokenProvider(CredentialProvider):
    """Installation tokens for a GitHub App, cached until close to expiry."""

    def __init__(
        self,
        app_id: str,
        installation_id: str,
        private_key_path: Path,
        refresh_buffer: timedelta = DEFAULT_REFRESH_BUFFER,
        clock: Optional[Callable[[], datetime]] = None,
        integration_factory: Optional[Callable[[Auth.AppAuth], GithubIntegration]] = None,
    ):
        self.app_id = app_id
        self.installation_id = installation_id
        self.private_key_path = Path(private_key_path).expanduser()
        self.refresh_buffer = refresh_buffer
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._integration_factory = integration_factory or (lambda auth: GithubIntegration(auth=auth))
        self._cached: Optional[CachedToken] = None
        # Workspace and PR calls run in worker threads
        self._lock = threading.Lock()

    def get_token(self) -> str:
        with self._lock:
            if self._cached is not None:
                remaining = self._cached.expires_at - self._clock()
                if remaining > self.refresh_buffer:
                    return self._cached.token
                logger.debug("GitHub App installation token approaching expiry, refreshing")

            self._cached = self._mint_token()
            return self._cached.token

    def _mint_token(self) -> CachedToken:
        if not self.private_key_path.exists():
            raise CredentialError(
                f"GitHub App private key not found at {self.private_key_path}. "
                "Download the private key from your GitHub App settings page."
            )
        private_key = self.private_key_path.read_text()
        auth = Auth.AppAuth(int(self.app_id), private_key)
        integration = self._integration_factory(auth)
        authorization = integration.get_access_token(int(self.installation_id))

        expires_at = authorization.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)

        logger.debug(f"Generated new GitHub App installation token (expires {expires_at.isoformat()})")
        return CachedToken(token=authorization.token, expires_at=expires_at)


def build_credential_provider(config: GitHubAuthConfig) -> Optional[CredentialProvider]:
    """Pick a provider from config, falling back to the GITHUB_TOKEN env var.

    Returns None when no credentials are configured; git then uses whatever
    the remote URL and local credential helpers provide.
    """
    if config.uses_app:
        return GitHubAppTokenProvider(
            app_id=config.app_id,
            installation_id=config.installation_id,
            private_key_path=config.private_key_path,
            refresh_buffer=timedelta(minutes=config.refresh_buffer_minutes),
        )
    token = config.token or os.environ.get("GITHUB_TOKEN")
    if token:
        return StaticTokenProvider(token)
    logger.warning("No GitHub credentials configured; remote operations use ambient git auth")
    return None
