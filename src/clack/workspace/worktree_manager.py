"""Git worktree manager for isolated change-session workspaces.

Every change session works in its own worktree, checked out from a shared
main clone of the target repository:

    <repositories_dir>/<repo.name>                  shared main clone
    <worktrees_dir>/<repo.name>/<branch with / as -> one worktree per branch

Credentials are short-lived, so the origin URL is re-written with a fresh
token immediately before every network operation (fetch, push, pull).
"""

import logging
import shutil
import subprocess
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set

from ..core.config import RepositoryConfig
from ..integrations.github.client import authenticated_clone_url
from ..integrations.github.credentials import CredentialError, CredentialProvider
from ..utils.subprocess_utils import SubprocessError, redact_credentials, run_git_command
from ..utils.validators import sanitize_branch_for_path, validate_branch_name

logger = logging.getLogger(__name__)

FETCH_TIMEOUT = 120
PUSH_TIMEOUT = 120
CLONE_TIMEOUT = 600

ORIGIN_HEAD_PREFIX = "refs/remotes/origin/"

# Failures of a git network step, including token issuance
_GIT_ERRORS = (SubprocessError, subprocess.TimeoutExpired, ValueError, CredentialError)


class WorktreeError(Exception):
    """Raised when a worktree cannot be created."""


@dataclass
class WorktreeInfo:
    """A checked-out working copy owned by one change session."""
    repo_name: str
    branch_name: str
    worktree_path: Path
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class WorktreeManager:
    """Creates, removes and sweeps per-branch git worktrees."""

    def __init__(
        self,
        repositories_dir: Path,
        worktrees_dir: Path,
        credentials: Optional[CredentialProvider] = None,
    ):
        """
        Initialize worktree manager.

        Args:
            repositories_dir: Directory holding one main clone per repository
            worktrees_dir: Root directory for session worktrees
            credentials: Token source for authenticated remotes (None = ambient git auth)
        """
        self.repositories_dir = Path(repositories_dir).expanduser().resolve()
        self.worktrees_dir = Path(worktrees_dir).expanduser().resolve()
        self.credentials = credentials
        self._fetch_locks: Dict[str, threading.Lock] = {}
        self._fetch_locks_guard = threading.Lock()

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def main_repo_path(self, repo_name: str) -> Path:
        return self.repositories_dir / repo_name

    def worktree_path(self, repo_name: str, branch_name: str) -> Path:
        return self.worktrees_dir / repo_name / sanitize_branch_for_path(branch_name)

    def get_existing_worktree(
        self, repo: RepositoryConfig, branch_name: str
    ) -> Optional[WorktreeInfo]:
        """Return info for the worktree of (repo, branch) if it exists on disk."""
        path = self.worktree_path(repo.name, branch_name)
        if not path.is_dir():
            return None
        try:
            created = datetime.fromtimestamp(path.stat().st_ctime, tz=timezone.utc)
        except OSError:
            return None
        return WorktreeInfo(
            repo_name=repo.name,
            branch_name=branch_name,
            worktree_path=path,
            created_at=created,
        )

    # ------------------------------------------------------------------
    # Remote authentication
    # ------------------------------------------------------------------

    def set_authenticated_remote(self, repo_path: Path, repo: RepositoryConfig) -> None:
        """Point origin at an HTTPS URL carrying a freshly issued token.

        Without a credential provider the configured origin is left alone.
        """
        if self.credentials is None:
            return
        url = authenticated_clone_url(repo.url, self.credentials)
        run_git_command(["remote", "set-url", "origin", url], cwd=repo_path, timeout=10)

    def _fetch_lock(self, repo_name: str) -> threading.Lock:
        with self._fetch_locks_guard:
            return self._fetch_locks.setdefault(repo_name, threading.Lock())

    def fetch_all(self, repo: RepositoryConfig) -> bool:
        """Fetch all remotes into the main clone, one fetch per repo at a time.

        Returns:
            True if the fetch succeeded; failures are logged and stale refs are kept
        """
        main_repo = self.main_repo_path(repo.name)
        with self._fetch_lock(repo.name):
            try:
                self.set_authenticated_remote(main_repo, repo)
                run_git_command(["fetch", "--all"], cwd=main_repo, timeout=FETCH_TIMEOUT)
                return True
            except _GIT_ERRORS as e:
                logger.warning(f"Failed to fetch latest changes for {repo.name}: {e}")
                return False

    # ------------------------------------------------------------------
    # Worktree lifecycle
    # ------------------------------------------------------------------

    def create_worktree(self, repo: RepositoryConfig, branch_name: str) -> WorktreeInfo:
        """
        Create a new branch and worktree from ``origin/<default branch>``.

        Args:
            repo: Target repository
            branch_name: Branch to create (an existing local branch is replaced)

        Returns:
            WorktreeInfo for the new worktree

        Raises:
            WorktreeError: If the main clone is missing, the path is taken,
                or git refuses to add the worktree
        """
        try:
            validate_branch_name(branch_name)
        except ValueError as e:
            raise WorktreeError(str(e)) from e

        main_repo = self.main_repo_path(repo.name)
        if not main_repo.exists():
            raise WorktreeError(f"Main repository not found at {main_repo}. Run sync first.")

        path = self.worktree_path(repo.name, branch_name)
        if path.exists():
            raise WorktreeError(f"Worktree already exists at {path}")
        path.parent.mkdir(parents=True, exist_ok=True)

        logger.debug(f"Creating worktree for {repo.name} at {path}...")
        self.fetch_all(repo)

        # Leftover branch from an aborted attempt would block `worktree add -b`
        if self._local_branch_exists(main_repo, branch_name):
            logger.debug(f"Branch {branch_name} already exists, deleting it first")
            run_git_command(["branch", "-D", branch_name], cwd=main_repo, check=False, timeout=10)

        base_branch = repo.branch or self.get_default_branch(main_repo)
        try:
            run_git_command(
                ["worktree", "add", "-b", branch_name, str(path), f"origin/{base_branch}"],
                cwd=main_repo,
                timeout=60,
            )
            self.set_authenticated_remote(path, repo)
        except _GIT_ERRORS as e:
            raise WorktreeError(f"git worktree add failed for {branch_name}: {e}") from e

        logger.info(f"Created worktree: {path} (branch: {branch_name}, base: origin/{base_branch})")
        return WorktreeInfo(repo_name=repo.name, branch_name=branch_name, worktree_path=path)

    def remove_worktree(self, repo_name: str, worktree_path: Path) -> None:
        """Remove a worktree, falling back to rmtree + prune when git refuses.

        Manual deletion or a crash can leave git's worktree registry out of
        sync with the filesystem; the fallback reconciles both.
        """
        worktree_path = Path(worktree_path)
        main_repo = self.main_repo_path(repo_name)

        if not main_repo.exists():
            logger.warning(f"Main repository not found at {main_repo}")
            if worktree_path.exists():
                shutil.rmtree(worktree_path, ignore_errors=True)
            return

        logger.debug(f"Removing worktree at {worktree_path}...")
        try:
            run_git_command(
                ["worktree", "remove", "--force", str(worktree_path)],
                cwd=main_repo,
                timeout=60,
            )
        except (SubprocessError, subprocess.TimeoutExpired) as e:
            logger.warning(f"git worktree remove failed, cleaning up manually: {e}")
            if worktree_path.exists():
                shutil.rmtree(worktree_path, ignore_errors=True)
            self.prune(main_repo)

        logger.info(f"Removed worktree: {worktree_path}")

    def delete_branch(self, repo: RepositoryConfig, branch_name: str, delete_remote: bool = False) -> None:
        """Delete the local (and optionally remote) branch. Best-effort, never raises."""
        main_repo = self.main_repo_path(repo.name)
        if not main_repo.exists():
            logger.warning(f"Main repository not found at {main_repo}")
            return

        try:
            run_git_command(["branch", "-D", branch_name], cwd=main_repo, timeout=10)
            logger.debug(f"Deleted local branch {branch_name}")
        except (SubprocessError, subprocess.TimeoutExpired) as e:
            logger.warning(f"Failed to delete local branch {branch_name}: {e}")

        if delete_remote:
            try:
                self.set_authenticated_remote(main_repo, repo)
                run_git_command(
                    ["push", "origin", "--delete", branch_name],
                    cwd=main_repo,
                    timeout=PUSH_TIMEOUT,
                )
                logger.debug(f"Deleted remote branch {branch_name}")
            except _GIT_ERRORS as e:
                logger.warning(f"Failed to delete remote branch {branch_name}: {e}")

    def push_branch(self, repo: RepositoryConfig, worktree_path: Path, branch_name: str) -> Optional[str]:
        """Push the branch to origin with upstream tracking.

        Returns:
            None on success, otherwise a redacted error description
        """
        try:
            self.set_authenticated_remote(worktree_path, repo)
            result = run_git_command(
                ["push", "-u", "origin", branch_name],
                cwd=worktree_path,
                check=False,
                timeout=PUSH_TIMEOUT,
            )
        except _GIT_ERRORS as e:
            return redact_credentials(str(e))

        if result.returncode != 0:
            return redact_credentials(result.stderr.strip() or f"git push exited with {result.returncode}")
        logger.info(f"Pushed {branch_name} from {worktree_path}")
        return None

    def list_worktrees(self, repo_name: str) -> List[Path]:
        repo_dir = self.worktrees_dir / repo_name
        if not repo_dir.is_dir():
            return []
        return sorted(p for p in repo_dir.iterdir() if p.is_dir())

    def prune(self, main_repo: Path) -> None:
        try:
            run_git_command(["worktree", "prune"], cwd=main_repo, timeout=30)
        except (SubprocessError, subprocess.TimeoutExpired) as e:
            logger.warning(f"Failed to prune worktrees in {main_repo}: {e}")

    def cleanup_stale_worktrees(
        self,
        retention_hours: float,
        repositories: Iterable[RepositoryConfig],
        protected_paths: Optional[Set[Path]] = None,
    ) -> int:
        """Remove worktrees whose mtime is older than the retention window.

        Worktrees referenced by a live session are skipped. Every configured
        repository is pruned afterwards regardless of what was removed.

        Returns:
            Number of worktrees removed
        """
        protected = {Path(p).resolve() for p in (protected_paths or set())}
        retention_seconds = retention_hours * 3600
        now = time.time()
        removed = 0

        if self.worktrees_dir.is_dir():
            logger.debug(f"Cleaning up worktrees older than {retention_hours} hours...")
            for repo_dir in sorted(p for p in self.worktrees_dir.iterdir() if p.is_dir()):
                for path in self.list_worktrees(repo_dir.name):
                    if path.resolve() in protected:
                        continue
                    try:
                        age = now - path.stat().st_mtime
                    except OSError as e:
                        logger.error(f"Failed to check worktree {path}: {e}")
                        continue
                    if age <= retention_seconds:
                        continue
                    logger.debug(f"Removing stale worktree: {path} (age: {round(age / 3600)}h)")
                    self.remove_worktree(repo_dir.name, path)
                    removed += 1

        for repo in repositories:
            main_repo = self.main_repo_path(repo.name)
            if main_repo.exists():
                self.prune(main_repo)

        if removed:
            logger.info(f"Removed {removed} stale worktrees")
        return removed

    # ------------------------------------------------------------------
    # Main clones
    # ------------------------------------------------------------------

    def sync_repository(self, repo: RepositoryConfig) -> Path:
        """Clone the main repository if missing, otherwise fetch and fast-forward it.

        Raises:
            SubprocessError: If the clone fails
        """
        main_repo = self.main_repo_path(repo.name)
        if not main_repo.exists():
            self.repositories_dir.mkdir(parents=True, exist_ok=True)
            url = authenticated_clone_url(repo.url, self.credentials)
            args = ["clone", url, str(main_repo)]
            if repo.branch:
                args[1:1] = ["--branch", repo.branch]
            logger.info(f"Cloning {repo.name}...")
            run_git_command(args, timeout=CLONE_TIMEOUT)
            return main_repo

        if self.fetch_all(repo):
            result = run_git_command(["pull", "--ff-only"], cwd=main_repo, check=False, timeout=FETCH_TIMEOUT)
            if result.returncode != 0:
                logger.warning(f"Failed to fast-forward {repo.name}: {redact_credentials(result.stderr.strip())}")
        return main_repo

    # ------------------------------------------------------------------
    # Git helpers
    # ------------------------------------------------------------------

    def _local_branch_exists(self, repo_path: Path, branch_name: str) -> bool:
        try:
            result = run_git_command(
                ["rev-parse", "--verify", "--quiet", f"refs/heads/{branch_name}"],
                cwd=repo_path,
                check=False,
                timeout=10,
            )
        except subprocess.TimeoutExpired:
            return False
        return result.returncode == 0

    def get_default_branch(self, repo_path: Path) -> str:
        """Default branch from origin/HEAD, falling back to main/master."""
        try:
            result = run_git_command(
                ["symbolic-ref", "refs/remotes/origin/HEAD"],
                cwd=repo_path,
                check=False,
                timeout=10,
            )
            if result.returncode == 0:
                return result.stdout.strip().removeprefix(ORIGIN_HEAD_PREFIX)
        except subprocess.TimeoutExpired:
            pass

        for branch in ["main", "master"]:
            try:
                probe = run_git_command(
                    ["rev-parse", "--verify", f"origin/{branch}"],
                    cwd=repo_path,
                    check=False,
                    timeout=10,
                )
                if probe.returncode == 0:
                    return branch
            except subprocess.TimeoutExpired:
                continue
        return "main"
