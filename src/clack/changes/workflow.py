"""Change workflow orchestrator.

Drives a change request from plan to pull request, and applies follow-up
commands (review / merge / close / update) to sessions with an open PR.
Expected failures come back as ``ChangeResult(success=False, error=...)``;
nothing raised by a collaborator escapes ``start`` or ``handle_follow_up``
for the anticipated failure modes.
"""

import asyncio
import logging
import re
import subprocess
import time
from typing import Callable, Optional, Tuple

from ..core.config import ClackConfig, RepositoryConfig, find_repo_by_name
from ..integrations.github.credentials import CredentialError
from ..utils.error_handling import safe_call, safe_call_async
from ..utils.rich_logging import SessionLogger
from ..utils.subprocess_utils import SubprocessError
from ..workspace.worktree_manager import WorktreeError, WorktreeManager
from .execution import ChangeExecutor, resolve_pr_instructions
from .pr import PRGateway
from .session import SessionRegistry
from .types import (
    ChangePlan,
    ChangeRequest,
    ChangeResult,
    ChangeSession,
    ChangeStatus,
    ExecutionResult,
    FollowUpCommand,
    InvalidTransitionError,
)

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str], object]

_DELETE_BRANCH_PATTERN = re.compile(r"delete\s*(the\s*)?(remote\s*)?branch", re.IGNORECASE)
_BRANCH_KEPT_NOTE = " Remote branch kept - reply 'delete branch' to remove it."
_NO_STATE_CONTEXT = "A previous session started but left no state. The workspace may have partial changes."

_WORKSPACE_ERRORS = (WorktreeError, SubprocessError, subprocess.TimeoutExpired, CredentialError, OSError)


def wants_remote_branch_deleted(instructions: Optional[str]) -> bool:
    """True when close instructions ask for the remote branch to be deleted."""
    return bool(instructions) and bool(_DELETE_BRANCH_PATTERN.search(instructions))


class ChangeWorkflow:
    """Orchestrates change sessions across the workspace, agent and PR layers."""

    def __init__(
        self,
        config: ClackConfig,
        registry: SessionRegistry,
        worktrees: WorktreeManager,
        executor: ChangeExecutor,
        gateway: PRGateway,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.registry = registry
        self.worktrees = worktrees
        self.executor = executor
        self.gateway = gateway
        self._clock = clock

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    def initialize(self) -> Tuple[int, int]:
        """Startup sweeps: stale worktrees, then stale session folders.

        Returns:
            (worktrees removed, session folders removed)
        """
        retention = self.config.changes_workflow.session_expiry_hours
        sessions = self.registry.sessions()
        protected = {s.worktree.worktree_path for s in sessions}
        live_branches = [s.plan.branch_name for s in sessions if s.status != ChangeStatus.COMPLETED]

        worktrees_removed = safe_call(
            self.worktrees.cleanup_stale_worktrees,
            retention,
            self.config.repositories,
            protected,
            default=0,
            error_message="Failed to clean up stale worktrees",
        )
        folders_removed = safe_call(
            self.registry.store.cleanup_stale_folders,
            retention,
            live_branches,
            default=0,
            error_message="Failed to clean up stale session folders",
        )
        return worktrees_removed, folders_removed

    # ------------------------------------------------------------------
    # Start / resume
    # ------------------------------------------------------------------

    async def start(
        self,
        request: ChangeRequest,
        plan: ChangePlan,
        thread_ts: str,
        on_progress: Optional[ProgressCallback] = None,
    ) -> ChangeResult:
        """
        Run a change request end to end: workspace, implementation, PR.

        Args:
            request: Originating chat request
            plan: Branch, description and target repository
            thread_ts: Thread the session is bound to
            on_progress: Sink for user-visible progress text; may be async

        Returns:
            ChangeResult with the PR URL and summary on success
        """
        workflow_config = self.config.changes_workflow
        max_concurrent = workflow_config.max_concurrent

        if self.registry.active_count() >= max_concurrent:
            return ChangeResult(
                success=False,
                error=f"System is at capacity ({max_concurrent} concurrent changes). Please try again later.",
            )

        if self.registry.get_active_for_user(request.user_id) is not None:
            return ChangeResult(
                success=False,
                error="You already have an active change request. Check your existing thread or wait for it to complete.",
            )

        # Finished sessions holding this thread or branch are released only
        # once the new session is registered
        released = []
        existing = self.registry.get_by_thread(request.channel, thread_ts)
        if existing is not None:
            if not existing.status.is_terminal:
                return ChangeResult(
                    success=False,
                    error="This thread already has an active change request.",
                )
            released.append(existing.id)

        for other in self.registry.sessions():
            if other.plan.branch_name != plan.branch_name:
                continue
            if not other.status.is_terminal:
                return ChangeResult(
                    success=False,
                    error=f"Branch {plan.branch_name} is already in use by an active change request.",
                )
            if other.id not in released:
                released.append(other.id)

        repo = find_repo_by_name(plan.target_repo, self.config)
        if repo is None:
            return ChangeResult(success=False, error=f"Repository {plan.target_repo} not found")

        await self._emit(on_progress, f"Planning: {plan.description}")

        await self._emit(on_progress, "Setting up workspace...")
        worktree = self.worktrees.get_existing_worktree(repo, plan.branch_name)
        resume_context = None
        if worktree is not None:
            previous = self.registry.store.read_state(plan.branch_name)
            if previous is not None:
                await self._emit(on_progress, f"Resuming existing workspace (was: {previous.phase})...")
                self._log(plan.branch_name, f"Resuming from existing worktree (previous status: {previous.status.value})")
                resume_context = (
                    f'Previous session was in "{previous.phase}" phase. '
                    f'Last message: "{previous.last_message}"'
                )
            else:
                await self._emit(on_progress, "Reusing existing workspace...")
                self._log(plan.branch_name, "Reusing existing worktree (no previous state)")
                resume_context = _NO_STATE_CONTEXT
        else:
            try:
                worktree = await asyncio.to_thread(self.worktrees.create_worktree, repo, plan.branch_name)
            except _WORKSPACE_ERRORS as e:
                logger.error(f"Failed to create workspace for {plan.branch_name}: {e}")
                return ChangeResult(success=False, error=f"Failed to create workspace: {e}")

        try:
            session = self.registry.create(request, plan, worktree, thread_ts)
        except OSError as e:
            logger.error(f"Failed to persist session for {plan.branch_name}: {e}")
            return ChangeResult(success=False, error=f"Failed to save session state: {e}")

        # Their folders stay on disk; the thread index already points at the new session
        for session_id in released:
            self.registry.remove(session_id, cleanup_folder=False)

        slog = SessionLogger(logger, session_id=session.id, branch=plan.branch_name)
        slog.phase_change(ChangeStatus.EXECUTING.phase)

        await self._emit(on_progress, "Implementing changes...")
        exec_result = await self._execute(
            session,
            repo,
            plan,
            request,
            self._throttled(session, "Implementing changes...", on_progress),
            resume_context,
        )

        if not exec_result.success:
            error = exec_result.error or "Execution failed"
            slog.warning(f"Execution failed: {error}")
            self.registry.update_status(session.id, ChangeStatus.FAILED, f"Execution failed: {error}")
            return ChangeResult(success=False, error=error)

        await self._emit(on_progress, "Creating pull request...")
        pr_result = await self.gateway.create_pr(
            repo,
            worktree,
            plan,
            exec_result.summary or "",
            pr_instructions=resolve_pr_instructions(worktree.worktree_path, repo, self.config),
            log=self._log_sink(plan.branch_name),
        )

        if not pr_result.success or not pr_result.pr_url:
            error = pr_result.error or "Failed to create PR"
            slog.warning(error)
            self.registry.update_status(session.id, ChangeStatus.FAILED, error)
            return ChangeResult(success=False, error=error)

        self.registry.update_pr_url(session.id, pr_result.pr_url)
        self.registry.update_status(session.id, ChangeStatus.PR_CREATED)
        slog.phase_change(ChangeStatus.PR_CREATED.phase)
        slog.info(f"PR created: {pr_result.pr_url}")

        return ChangeResult(success=True, pr_url=pr_result.pr_url, summary=exec_result.summary)

    async def resume(
        self,
        request: ChangeRequest,
        branch_name: str,
        thread_ts: str,
        on_progress: Optional[ProgressCallback] = None,
    ) -> ChangeResult:
        """Restart a persisted session by branch, reusing its worktree."""
        state = self.registry.store.read_state(branch_name)
        if state is None:
            return ChangeResult(success=False, error=f"Could not find session state for branch {branch_name}")

        plan = ChangePlan(branch_name=state.branch, description=state.description, target_repo=state.repo)
        return await self.start(request, plan, thread_ts, on_progress)

    async def _execute(
        self,
        session: ChangeSession,
        repo: RepositoryConfig,
        plan: ChangePlan,
        request: ChangeRequest,
        on_progress: ProgressCallback,
        resume_context: Optional[str] = None,
    ) -> ExecutionResult:
        try:
            return await self.executor.execute_change(
                plan,
                session.worktree,
                request,
                resolve_pr_instructions(session.worktree.worktree_path, repo, self.config),
                on_progress=on_progress,
                resume_context=resume_context,
                log=self._log_sink(plan.branch_name),
            )
        except Exception as e:
            logger.exception(f"Execution raised for session {session.id}")
            self._log(plan.branch_name, f"Execution error: {e}")
            return ExecutionResult(success=False, error=f"Execution threw exception: {e}")

    # ------------------------------------------------------------------
    # Follow-ups
    # ------------------------------------------------------------------

    async def handle_follow_up(
        self,
        session_id: str,
        command: FollowUpCommand,
        instructions: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> ChangeResult:
        """
        Apply a follow-up command to a session with an open PR.

        The session is looked up again first: the completion monitor may have
        cleaned it up since the command was detected.
        """
        session = self.registry.get(session_id)
        if session is None:
            logger.info(f"Follow-up {command.value} ignored: session {session_id} is gone")
            return ChangeResult(success=False, error=f"Change session {session_id} is no longer active")

        if session.status != ChangeStatus.PR_CREATED:
            return ChangeResult(
                success=False,
                error=f"Change session is currently {session.status.phase.lower()}; try again when it has an open PR",
            )

        self.registry.touch(session.id)
        repo = find_repo_by_name(session.plan.target_repo, self.config)

        if command == FollowUpCommand.REVIEW:
            return await self._review(session, repo, on_progress)
        if command == FollowUpCommand.MERGE:
            return await self._merge(session, repo, on_progress)
        if command == FollowUpCommand.CLOSE:
            return await self._close(session, repo, instructions, on_progress)
        if command == FollowUpCommand.UPDATE:
            return await self._update(session, repo, instructions, on_progress)
        raise ValueError(f"Unhandled follow-up command: {command}")

    async def _review(
        self,
        session: ChangeSession,
        repo: Optional[RepositoryConfig],
        on_progress: Optional[ProgressCallback],
    ) -> ChangeResult:
        await self._emit(on_progress, "Reviewing PR comments...")
        if repo is None:
            return ChangeResult(success=False, error=f"Repository {session.plan.target_repo} not found")

        self.registry.update_status(session.id, ChangeStatus.REVIEWING)
        review = await self.gateway.review_pr(
            session,
            repo,
            log=self._log_sink(session.plan.branch_name),
            on_progress=self._throttled(session, "Reviewing PR comments...", on_progress),
        )
        # The PR stays open either way
        self.registry.update_status(
            session.id,
            ChangeStatus.PR_CREATED,
            None if review.success else f"Review failed: {review.error}",
        )

        if not review.success:
            return ChangeResult(success=False, error=review.error)
        return ChangeResult(
            success=True,
            pr_url=session.pr_url,
            summary=f"Addressed {review.comments_addressed} review comments",
        )

    async def _merge(
        self,
        session: ChangeSession,
        repo: Optional[RepositoryConfig],
        on_progress: Optional[ProgressCallback],
    ) -> ChangeResult:
        await self._emit(on_progress, "Merging PR...")
        self.registry.update_status(session.id, ChangeStatus.MERGING)

        strategy = repo.merge_strategy if repo is not None else "squash"
        result = await self.gateway.merge_pr(session.pr_url, strategy)
        if not result.success:
            self.registry.update_status(session.id, ChangeStatus.PR_CREATED, f"Merge failed: {result.error}")
            return ChangeResult(success=False, error=result.error)

        await self._finish(session, repo)
        return ChangeResult(
            success=True,
            pr_url=session.pr_url,
            summary=f"PR merged. {result.cleanup_summary or ''}".strip(),
        )

    async def _close(
        self,
        session: ChangeSession,
        repo: Optional[RepositoryConfig],
        instructions: Optional[str],
        on_progress: Optional[ProgressCallback],
    ) -> ChangeResult:
        await self._emit(on_progress, "Closing PR...")
        delete_remote = wants_remote_branch_deleted(instructions)

        result = await self.gateway.close_pr(session.pr_url, delete_remote)
        if not result.success:
            return ChangeResult(success=False, error=result.error)

        await self._finish(session, repo)
        note = "" if delete_remote else _BRANCH_KEPT_NOTE
        return ChangeResult(
            success=True,
            summary=f"PR closed. {result.cleanup_summary or ''}{note}".strip(),
        )

    async def _update(
        self,
        session: ChangeSession,
        repo: Optional[RepositoryConfig],
        instructions: Optional[str],
        on_progress: Optional[ProgressCallback],
    ) -> ChangeResult:
        await self._emit(on_progress, "Implementing additional changes...")
        if repo is None:
            return ChangeResult(success=False, error=f"Repository {session.plan.target_repo} not found")

        self.registry.update_status(session.id, ChangeStatus.EXECUTING)
        plan = session.plan
        request = session.request
        if instructions:
            plan = plan.with_description(instructions)
            request = request.with_message(instructions)

        result = await self._execute(
            session,
            repo,
            plan,
            request,
            self._throttled(session, "Implementing additional changes...", on_progress),
        )
        if not result.success:
            self.registry.update_status(session.id, ChangeStatus.PR_CREATED, f"Update failed: {result.error}")
            return ChangeResult(success=False, error=result.error)

        push = await self.gateway.push_updates(repo, session.worktree, session.plan.branch_name)
        self.registry.update_status(session.id, ChangeStatus.PR_CREATED)
        if not push.success:
            return ChangeResult(success=False, error=push.error)

        return ChangeResult(
            success=True,
            pr_url=session.pr_url,
            summary=result.summary or "Additional changes pushed",
        )

    async def _finish(self, session: ChangeSession, repo: Optional[RepositoryConfig]) -> None:
        """Mark completed, drop the worktree and local branch, forget the session.

        The completion monitor may have cleaned the session up while the PR
        call was in flight; its cleanup then stands and nothing is redone.
        """
        current = self.registry.get(session.id)
        if current is None or current.status.is_terminal:
            logger.info(f"Session {session.id} was already cleaned up, skipping finish")
            return
        try:
            self.registry.update_status(session.id, ChangeStatus.COMPLETED)
        except InvalidTransitionError as e:
            logger.warning(f"Skipping finish for session {session.id}: {e}")
            return
        await safe_call_async(
            asyncio.to_thread,
            self.worktrees.remove_worktree,
            session.worktree.repo_name,
            session.worktree.worktree_path,
            error_message=f"Failed to remove worktree {session.worktree.worktree_path}",
        )
        if repo is not None:
            await safe_call_async(
                asyncio.to_thread,
                self.worktrees.delete_branch,
                repo,
                session.plan.branch_name,
                error_message=f"Failed to delete branch {session.plan.branch_name}",
            )
        self.registry.remove(session.id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _throttled(
        self,
        session: ChangeSession,
        header: str,
        on_progress: Optional[ProgressCallback],
    ) -> ProgressCallback:
        """At most one visible + persisted progress tick per interval."""
        interval = self.config.changes_workflow.progress_interval_seconds
        last_tick: Optional[float] = None

        async def tick(message: str) -> None:
            nonlocal last_tick
            now = self._clock()
            if last_tick is not None and now - last_tick < interval:
                return
            last_tick = now
            await self._emit(on_progress, f"{header}\n_{message}_")
            safe_call(
                self.registry.record_progress,
                session.id,
                message,
                error_message=f"Failed to persist progress for {session.id}",
            )

        return tick

    @staticmethod
    async def _emit(on_progress: Optional[ProgressCallback], message: str) -> None:
        if on_progress is None:
            return
        await safe_call_async(on_progress, message, error_message="Progress callback failed")

    def _log(self, branch_name: str, message: str) -> None:
        self.registry.store.append_log(branch_name, message)

    def _log_sink(self, branch_name: str) -> Callable[[str], None]:
        return lambda message: self._log(branch_name, message)
