"""Pull request gateway: push, create, merge, close, review and status.

Git pushes go through the worktree manager, which re-authenticates the
remote with a fresh token first. PR operations go through the GitHub API.
Blocking calls run in worker threads so the event loop stays responsive.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from github import GithubException

from ..core.config import RepositoryConfig
from ..integrations.github.client import GitHubClient, parse_pr_url, parse_repo_url
from ..integrations.github.credentials import CredentialError
from ..llm.agent_invoker import AgentInvoker, AgentRequest, READ_ONLY_TOOLS, execution_tool_policy
from ..workspace.worktree_manager import WorktreeInfo, WorktreeManager
from .execution import resolve_pr_template
from .types import ChangePlan, ChangeSession

logger = logging.getLogger(__name__)

PR_TITLE_MAX_LENGTH = 72
PR_BODY_TIMEOUT_MINUTES = 2

_COMMENTS_ADDRESSED_PATTERN = re.compile(r"COMMENTS_ADDRESSED:\s*(\d+)", re.IGNORECASE)

# Expected failures of a remote PR operation
_REMOTE_ERRORS = (GithubException, CredentialError, ValueError)


class PRState(str, Enum):
    OPEN = "OPEN"
    MERGED = "MERGED"
    CLOSED = "CLOSED"


@dataclass
class PRResult:
    success: bool
    pr_url: Optional[str] = None
    error: Optional[str] = None
    cleanup_summary: Optional[str] = None


@dataclass
class ReviewResult:
    success: bool
    comments_addressed: int = 0
    error: Optional[str] = None


def _describe(error: Exception) -> str:
    if isinstance(error, GithubException):
        message = error.data.get("message") if isinstance(error.data, dict) else None
        return f"{error.status} {message or error}"
    return str(error)


class PRGateway:
    """All pull request side effects for the change workflow."""

    def __init__(
        self,
        github: GitHubClient,
        worktrees: WorktreeManager,
        invoker: AgentInvoker,
        templates_dir: Optional[Path] = None,
    ):
        self.github = github
        self.worktrees = worktrees
        self.invoker = invoker
        self.templates_dir = templates_dir

    async def create_pr(
        self,
        repo: RepositoryConfig,
        worktree: WorktreeInfo,
        plan: ChangePlan,
        summary: str,
        pr_instructions: str = "",
        log: Optional[Callable[[str], None]] = None,
    ) -> PRResult:
        """
        Push the branch and open a pull request against the default branch.

        Nothing is opened when the push fails.
        """
        push_error = await asyncio.to_thread(
            self.worktrees.push_branch, repo, worktree.worktree_path, plan.branch_name
        )
        if push_error:
            return PRResult(success=False, error=f"Failed to push branch: {push_error}")

        body = await self._generate_body(worktree, plan, summary, pr_instructions, log)

        try:
            owner, name = parse_repo_url(repo.url)
            base_branch = repo.branch or await asyncio.to_thread(
                self.worktrees.get_default_branch,
                self.worktrees.main_repo_path(repo.name),
            )
            pr_url = await asyncio.to_thread(
                self.github.create_pull,
                owner,
                name,
                plan.description[:PR_TITLE_MAX_LENGTH],
                body,
                plan.branch_name,
                base_branch,
            )
        except _REMOTE_ERRORS as e:
            logger.error(f"Failed to create PR for {plan.branch_name}: {_describe(e)}")
            return PRResult(success=False, error=f"Failed to create PR: {_describe(e)}")

        return PRResult(success=True, pr_url=pr_url)

    async def _generate_body(
        self,
        worktree: WorktreeInfo,
        plan: ChangePlan,
        summary: str,
        pr_instructions: str,
        log: Optional[Callable[[str], None]],
    ) -> str:
        """Fill the PR template with a read-only agent pass; raw summary on failure."""
        template = resolve_pr_template(worktree.worktree_path, self.templates_dir)
        prompt = (
            "Write the body of a pull request using this template:\n\n"
            f"{template}\n\n"
            f"Change description: {plan.description}\n"
            f"Summary of the implementation: {summary}\n\n"
            "Inspect the committed changes if needed (git log, git diff against the base branch). "
            "Output only the filled-in PR body in markdown, nothing else."
        )
        result = await self.invoker.run(
            AgentRequest(
                prompt=prompt,
                cwd=worktree.worktree_path,
                system_prompt=f"PR Guidelines:\n{pr_instructions}" if pr_instructions else None,
                allowed_tools=list(READ_ONLY_TOOLS),
                disallowed_tools=["Write", "Edit", "Bash", "Task"],
                timeout_minutes=PR_BODY_TIMEOUT_MINUTES,
            ),
            log=log,
        )
        if result.success and result.text.strip():
            return result.text.strip()
        logger.warning(f"PR body generation failed for {plan.branch_name}, using summary: {result.error}")
        return summary

    async def merge_pr(self, pr_url: str, merge_strategy: str = "squash") -> PRResult:
        """Merge the PR and delete its head branch on the remote."""
        try:
            owner, name, number = parse_pr_url(pr_url)
            snapshot = await asyncio.to_thread(self.github.get_pull, owner, name, number)
            merged, message = await asyncio.to_thread(
                self.github.merge_pull, owner, name, number, merge_strategy
            )
        except _REMOTE_ERRORS as e:
            return PRResult(success=False, error=f"Merge failed: {_describe(e)}")

        if not merged:
            return PRResult(success=False, error=message or "Merge failed")

        cleanup = await self._delete_remote_branch(owner, name, snapshot.head_ref)
        return PRResult(success=True, pr_url=pr_url, cleanup_summary=cleanup)

    async def close_pr(self, pr_url: str, delete_remote_branch: bool = False) -> PRResult:
        """Close the PR without merging; the remote branch is kept unless asked otherwise."""
        try:
            owner, name, number = parse_pr_url(pr_url)
            snapshot = await asyncio.to_thread(self.github.get_pull, owner, name, number)
            await asyncio.to_thread(self.github.close_pull, owner, name, number)
        except _REMOTE_ERRORS as e:
            return PRResult(success=False, error=f"Close failed: {_describe(e)}")

        cleanup = None
        if delete_remote_branch:
            cleanup = await self._delete_remote_branch(owner, name, snapshot.head_ref)
        return PRResult(success=True, pr_url=pr_url, cleanup_summary=cleanup)

    async def _delete_remote_branch(self, owner: str, name: str, branch: str) -> str:
        try:
            await asyncio.to_thread(self.github.delete_branch, owner, name, branch)
        except _REMOTE_ERRORS as e:
            logger.warning(f"Failed to delete remote branch {branch}: {_describe(e)}")
            return f"Could not delete remote branch {branch}: {_describe(e)}"
        return f"Deleted remote branch {branch}."

    async def review_pr(
        self,
        session: ChangeSession,
        repo: RepositoryConfig,
        log: Optional[Callable[[str], None]] = None,
        on_progress: Optional[Callable[[str], object]] = None,
    ) -> ReviewResult:
        """Address PR feedback in the session worktree and push the result."""
        if not session.pr_url:
            return ReviewResult(success=False, error="No PR URL in session")

        try:
            owner, name, number = parse_pr_url(session.pr_url)
            feedback = await asyncio.to_thread(self.github.list_feedback, owner, name, number)
        except _REMOTE_ERRORS as e:
            return ReviewResult(success=False, error=f"Failed to fetch PR comments: {_describe(e)}")

        if not feedback:
            return ReviewResult(success=True, comments_addressed=0)

        comments = "\n".join(f"- {item}" for item in feedback)
        prompt = (
            f"Review and address feedback on this PR: {session.pr_url}\n\n"
            f"Review feedback:\n{comments}\n\n"
            "1. Read and understand each review comment\n"
            "2. Implement the requested changes\n"
            '3. Commit with a message like "Address review feedback"\n\n'
            'Output "COMMENTS_ADDRESSED: N" where N is the number of comments you addressed.'
        )
        allowed, disallowed = execution_tool_policy()
        result = await self.invoker.run(
            AgentRequest(
                prompt=prompt,
                cwd=session.worktree.worktree_path,
                allowed_tools=allowed,
                disallowed_tools=disallowed,
            ),
            log=log,
            on_progress=on_progress,
        )

        count_match = _COMMENTS_ADDRESSED_PATTERN.search(result.text)
        if not count_match and not result.success:
            return ReviewResult(success=False, error=result.error or "Review failed")

        push = await self.push_updates(repo, session.worktree, session.plan.branch_name)
        if not push.success:
            return ReviewResult(success=False, error=push.error)

        return ReviewResult(
            success=True,
            comments_addressed=int(count_match.group(1)) if count_match else 0,
        )

    async def push_updates(self, repo: RepositoryConfig, worktree: WorktreeInfo, branch_name: str) -> PRResult:
        push_error = await asyncio.to_thread(
            self.worktrees.push_branch, repo, worktree.worktree_path, branch_name
        )
        if push_error:
            return PRResult(success=False, error=f"Failed to push changes: {push_error}")
        return PRResult(success=True)

    async def get_pr_status(self, pr_url: str) -> Optional[PRState]:
        """OPEN / MERGED / CLOSED, or None when the PR cannot be fetched."""
        try:
            owner, name, number = parse_pr_url(pr_url)
            snapshot = await asyncio.to_thread(self.github.get_pull, owner, name, number)
        except Exception as e:
            logger.warning(f"Failed to fetch PR status for {pr_url}: {e}")
            return None

        if snapshot.merged:
            return PRState.MERGED
        if snapshot.state == "closed":
            return PRState.CLOSED
        return PRState.OPEN
