"""Completion monitor: cleans up sessions whose PR was merged or closed outside chat."""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Sequence, Tuple, Union

from ..core.config import RepositoryConfig
from ..utils.error_handling import safe_call, safe_call_async
from ..workspace.worktree_manager import WorktreeManager
from .pr import PRGateway, PRState
from .session import SessionRegistry
from .types import ChangeSession, ChangeStatus

logger = logging.getLogger(__name__)

Notifier = Callable[[ChangeSession, str], Union[Awaitable[None], None]]

_NOTIFICATIONS = {
    PRState.MERGED: "Your PR was merged externally. Session cleaned up automatically.",
    PRState.CLOSED: "Your PR was closed externally. Session cleaned up automatically.",
}


class CompletionMonitor:
    """Periodically checks open-PR sessions and reconciles external merges/closes."""

    def __init__(
        self,
        registry: SessionRegistry,
        gateway: PRGateway,
        worktrees: WorktreeManager,
        notifier: Optional[Notifier] = None,
        interval_minutes: float = 15,
        repositories: Sequence[RepositoryConfig] = (),
        expiry_hours: Optional[float] = None,
    ):
        self.registry = registry
        self.gateway = gateway
        self.worktrees = worktrees
        self.notifier = notifier
        self.interval_minutes = interval_minutes
        self.repositories = list(repositories)
        self.expiry_hours = expiry_hours
        self._task: Optional[asyncio.Task] = None

    async def check_session(self, session: ChangeSession) -> Optional[PRState]:
        """PR state that requires cleanup (MERGED / CLOSED), else None."""
        if session.status != ChangeStatus.PR_CREATED or not session.pr_url:
            return None
        state = await self.gateway.get_pr_status(session.pr_url)
        if state in (PRState.MERGED, PRState.CLOSED):
            return state
        return None

    async def run_check(self) -> Tuple[int, int]:
        """
        Check every session with an open PR once.

        Returns:
            (sessions checked, sessions cleaned up)
        """
        checked = 0
        cleaned = 0

        for session in self.registry.sessions():
            if session.status != ChangeStatus.PR_CREATED or not session.pr_url:
                continue
            checked += 1
            state = await self.check_session(session)
            if state is None:
                continue

            # A follow-up may have finished this session while we were waiting on the API
            current = self.registry.get(session.id)
            if current is None or current.status != ChangeStatus.PR_CREATED:
                logger.debug(f"Session {session.id} no longer exists, skipping cleanup")
                continue

            await self._notify(current, state)
            await self._cleanup(current, state)
            cleaned += 1

        if checked:
            logger.debug(f"Completion check: {checked} sessions checked, {cleaned} cleaned up")
        return checked, cleaned

    async def _notify(self, session: ChangeSession, state: PRState) -> None:
        if self.notifier is None:
            return
        await safe_call_async(
            self.notifier,
            session,
            _NOTIFICATIONS[state],
            error_message=f"Failed to send auto-completion notification for {session.id}",
        )

    async def _cleanup(self, session: ChangeSession, state: PRState) -> None:
        action = "merged" if state == PRState.MERGED else "closed"
        logger.info(f"Auto-cleaning session {session.id} (PR {action}): {session.pr_url}")

        new_status = ChangeStatus.COMPLETED if state == PRState.MERGED else ChangeStatus.FAILED
        safe_call(
            self.registry.update_status,
            session.id,
            new_status,
            f"PR {action} externally",
            error_message=f"Failed to record external {action} for {session.id}",
        )

        await safe_call_async(
            asyncio.to_thread,
            self.worktrees.remove_worktree,
            session.worktree.repo_name,
            session.worktree.worktree_path,
            error_message=f"Failed to remove worktree for session {session.id}",
        )

        repo = next(
            (r for r in self.repositories if r.name.lower() == session.plan.target_repo.lower()),
            None,
        )
        if repo is not None:
            await safe_call_async(
                asyncio.to_thread,
                self.worktrees.delete_branch,
                repo,
                session.plan.branch_name,
                error_message=f"Failed to delete local branch for session {session.id}",
            )

        # Closed PRs keep their folder for debugging
        self.registry.remove(session.id, cleanup_folder=state == PRState.MERGED)
        logger.info(f"Session {session.id} cleaned up (action: {action})")

    # ------------------------------------------------------------------
    # Scheduler
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> bool:
        """Start the background loop. Returns False when disabled or already running."""
        if self.interval_minutes <= 0:
            logger.info("Completion monitor disabled (monitoring_interval_minutes = 0)")
            return False
        if self.running:
            logger.warning("Completion monitor already running")
            return False

        logger.info(f"Starting completion monitor (interval: {self.interval_minutes:g} minutes)")
        self._task = asyncio.create_task(self._loop())
        return True

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Completion monitor stopped")

    async def _loop(self) -> None:
        while True:
            try:
                await self.run_check()
            except Exception as e:
                logger.exception(f"Completion check failed: {e}")
            if self.expiry_hours:
                safe_call(
                    self.registry.cleanup_expired,
                    self.expiry_hours,
                    error_message="Expired session sweep failed",
                )
            await asyncio.sleep(self.interval_minutes * 60)
