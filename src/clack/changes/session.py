"""In-memory registry of change sessions, backed by session folders.

The registry is constructed once by the application and handed to every
component that needs it. It keeps two indexes: sessions by id, and session
ids by ``channel:thread_ts``.

Every mutation is a single commit: the next ``PersistedSessionState`` is
built, ``state.json`` is replaced atomically, and only then is the in-memory
session updated. A failed write leaves memory untouched.
"""

import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from ..workspace.worktree_manager import WorktreeInfo
from .persistence import SessionFolderStore
from .types import (
    ActiveWorker,
    ChangePlan,
    ChangeRequest,
    ChangeSession,
    ChangeStatus,
    InvalidTransitionError,
    PersistedSessionState,
    generate_session_id,
    parse_iso,
    thread_key,
    utc_now,
)

logger = logging.getLogger(__name__)


class SessionRegistry:
    """Owns live ChangeSession objects and their durable state."""

    def __init__(self, store: SessionFolderStore):
        self.store = store
        self._sessions: Dict[str, ChangeSession] = {}
        self._by_thread: Dict[str, str] = {}

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, session_id: str) -> Optional[ChangeSession]:
        return self._sessions.get(session_id)

    def get_by_thread(self, channel: str, thread_ts: str) -> Optional[ChangeSession]:
        session_id = self._by_thread.get(thread_key(channel, thread_ts))
        return self._sessions.get(session_id) if session_id else None

    def get_active_for_user(self, user_id: str) -> Optional[ChangeSession]:
        for session in self._sessions.values():
            if session.user_id == user_id and not session.status.is_terminal:
                return session
        return None

    def active_count(self) -> int:
        return sum(1 for s in self._sessions.values() if not s.status.is_terminal)

    def sessions(self) -> List[ChangeSession]:
        """Snapshot of every registered session."""
        return list(self._sessions.values())

    def active_workers(self) -> List[ActiveWorker]:
        """Non-terminal sessions for display, newest first."""
        workers = [
            ActiveWorker(
                id=s.id,
                user_id=s.user_id,
                status=s.status,
                description=s.plan.description,
                branch=s.plan.branch_name,
                repo=s.plan.target_repo,
                pr_url=s.pr_url,
                channel=s.channel,
                thread_ts=s.thread_ts,
                started_at=s.created_at,
            )
            for s in self._sessions.values()
            if not s.status.is_terminal
        ]
        workers.sort(key=lambda w: w.started_at, reverse=True)
        return workers

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def create(
        self,
        request: ChangeRequest,
        plan: ChangePlan,
        worktree: WorktreeInfo,
        thread_ts: str,
    ) -> ChangeSession:
        """Register a new executing session and persist its folder.

        Raises:
            OSError: If the initial state cannot be written; nothing is registered
        """
        session = ChangeSession(
            id=generate_session_id(),
            user_id=request.user_id,
            request=request,
            plan=plan,
            worktree=worktree,
            channel=request.channel,
            thread_ts=thread_ts,
            status=ChangeStatus.EXECUTING,
        )
        state = self.store.create_folder(session)
        session.last_activity_at = _parse_activity(state)

        self._sessions[session.id] = session
        self._by_thread[session.thread_key] = session.id
        self.store.append_log(plan.branch_name, "Phase: starting")
        logger.info(f"Created change session {session.id} for {plan.target_repo}:{plan.branch_name}")
        return session

    def update_status(
        self,
        session_id: str,
        status: ChangeStatus,
        last_message: Optional[str] = None,
    ) -> Optional[ChangeSession]:
        """Move a session along the state machine.

        Returns:
            The updated session, or None if it is no longer registered

        Raises:
            InvalidTransitionError: If ``status`` is not reachable from the current status
        """
        session = self._sessions.get(session_id)
        if session is None:
            return None
        if status != session.status and not session.status.can_transition_to(status):
            raise InvalidTransitionError(session_id, session.status, status)

        self._commit(
            session,
            last_message or f"Status changed to: {status.value}",
            status=status,
        )
        self.store.append_log(session.plan.branch_name, f"Phase: {status.phase}")
        return session

    def update_pr_url(self, session_id: str, pr_url: str) -> Optional[ChangeSession]:
        session = self._sessions.get(session_id)
        if session is None:
            return None
        self._commit(session, f"PR created: {pr_url}", pr_url=pr_url)
        self.store.append_log(session.plan.branch_name, f"PR URL: {pr_url}")
        return session

    def record_progress(self, session_id: str, message: str) -> Optional[ChangeSession]:
        """Persist an intermediate progress message without changing status."""
        session = self._sessions.get(session_id)
        if session is None:
            return None
        self._commit(session, message)
        return session

    def touch(self, session_id: str) -> None:
        session = self._sessions.get(session_id)
        if session is not None:
            session.last_activity_at = utc_now()

    def remove(self, session_id: str, cleanup_folder: bool = True) -> Optional[ChangeSession]:
        """Drop a session from both indexes.

        The session folder is deleted only for completed sessions; failed and
        abandoned sessions keep their folder for inspection and resume.
        """
        session = self._sessions.pop(session_id, None)
        if session is None:
            return None
        if self._by_thread.get(session.thread_key) == session_id:
            del self._by_thread[session.thread_key]
        if cleanup_folder and session.status == ChangeStatus.COMPLETED:
            self.store.remove_folder(session.plan.branch_name)
        logger.debug(f"Removed change session {session_id} ({session.status.value})")
        return session

    def cleanup_expired(self, expiry_hours: float, now: Optional[datetime] = None) -> int:
        """Remove idle sessions past the expiry window.

        In-progress and failed sessions are always kept: the former may have
        an agent running, the latter stay available for resume.

        Returns:
            Number of sessions removed
        """
        now = now or utc_now()
        cutoff = timedelta(hours=expiry_hours)
        cleaned = 0
        preserved = 0

        for session in self.sessions():
            if now - session.last_activity_at <= cutoff:
                continue
            if session.status.is_in_progress or session.status == ChangeStatus.FAILED:
                logger.debug(f"Preserving session {session.id} (status: {session.status.value})")
                preserved += 1
                continue
            logger.debug(f"Cleaning up expired session {session.id}")
            self.remove(session.id)
            cleaned += 1

        if cleaned:
            logger.info(f"Cleaned up {cleaned} expired change sessions")
        if preserved:
            logger.debug(f"Preserved {preserved} in-progress or failed change sessions")
        return cleaned

    # ------------------------------------------------------------------
    # Commit
    # ------------------------------------------------------------------

    def _commit(
        self,
        session: ChangeSession,
        last_message: str,
        status: Optional[ChangeStatus] = None,
        pr_url: Optional[str] = None,
    ) -> PersistedSessionState:
        state = PersistedSessionState.from_session(
            session, last_message, status=status, pr_url=pr_url
        )
        self.store.write_state(state)

        if status is not None:
            session.status = status
        if pr_url is not None:
            session.pr_url = pr_url
        session.last_activity_at = _parse_activity(state)
        return state


def _parse_activity(state: PersistedSessionState) -> datetime:
    # Keep memory and disk timestamps identical
    return parse_iso(state.last_activity_at)
