"""Durable per-branch session folders.

Each change branch gets a folder under the sessions root:

    <root>/<branch with / as ->/state.json      latest snapshot, replaced atomically
    <root>/<branch with / as ->/execution.log   append-only "[ISO8601] message" lines

The folder outlives the in-memory session so a failed or interrupted change
can be inspected and resumed later.
"""

import json
import logging
import shutil
import time
from pathlib import Path
from typing import Iterable, List, Optional

from ..utils.atomic_io import atomic_write_json
from ..utils.validators import sanitize_branch_for_path
from .types import (
    ChangeSession,
    ChangeStatus,
    PersistedSessionState,
    ResumableSession,
    to_iso,
    utc_now,
)

logger = logging.getLogger(__name__)

STATE_FILE = "state.json"
LOG_FILE = "execution.log"
INITIAL_MESSAGE = "Starting change workflow"

# Never swept regardless of age: in flight, awaiting PR action, or kept for debugging
_RETAINED_STATUSES = frozenset({
    ChangeStatus.PLANNING,
    ChangeStatus.EXECUTING,
    ChangeStatus.PR_CREATED,
    ChangeStatus.REVIEWING,
    ChangeStatus.MERGING,
    ChangeStatus.FAILED,
})


class SessionFolderStore:
    """Reads and writes session folders under one root directory."""

    def __init__(self, root: Path):
        self.root = Path(root)

    def folder_for(self, branch_name: str) -> Path:
        return self.root / sanitize_branch_for_path(branch_name)

    def create_folder(self, session: ChangeSession) -> PersistedSessionState:
        """Create the folder and write the initial state."""
        state = PersistedSessionState.from_session(session, INITIAL_MESSAGE)
        self.write_state(state)
        return state

    def write_state(self, state: PersistedSessionState) -> None:
        """Atomically replace state.json.

        Raises:
            OSError: If the state cannot be written
        """
        folder = self.folder_for(state.branch)
        folder.mkdir(parents=True, exist_ok=True)
        atomic_write_json(folder / STATE_FILE, state.to_dict())

    def append_log(self, branch_name: str, message: str) -> None:
        """Append one timestamped line to execution.log. Failures are logged only."""
        folder = self.folder_for(branch_name)
        entry = f"[{to_iso(utc_now())}] {message}\n"
        try:
            folder.mkdir(parents=True, exist_ok=True)
            with open(folder / LOG_FILE, "a", encoding="utf-8") as f:
                f.write(entry)
        except OSError as e:
            logger.warning(f"Failed to append execution log for {branch_name}: {e}")

    def read_state(self, branch_name: str) -> Optional[PersistedSessionState]:
        """Load state.json; None when missing or unparseable."""
        return self._read_state_file(self.folder_for(branch_name) / STATE_FILE)

    def remove_folder(self, branch_name: str) -> None:
        folder = self.folder_for(branch_name)
        if not folder.exists():
            return
        try:
            shutil.rmtree(folder)
            logger.debug(f"Removed session folder: {folder}")
        except OSError as e:
            logger.warning(f"Failed to remove session folder {folder}: {e}")

    def get_resumable_sessions(self) -> List[ResumableSession]:
        """Persisted sessions in planning, executing or failed state."""
        resumable = []
        for folder in self._folders():
            state = self._read_state_file(folder / STATE_FILE)
            if state is None or not state.status.is_resumable:
                continue
            resumable.append(ResumableSession(
                branch_name=state.branch,
                repo=state.repo,
                description=state.description,
                phase=state.phase,
                last_message=state.last_message,
                started_at=state.started_at,
            ))
        return resumable

    def cleanup_stale_folders(
        self,
        retention_hours: float = 24,
        active_branches: Iterable[str] = (),
    ) -> int:
        """
        Sweep session folders that no longer need to be kept.

        Folders of active branches and folders whose state is anything but
        completed are kept. Completed folders are always removed; folders
        without a readable state are removed once older than the retention
        window.

        Returns:
            Number of folders removed
        """
        active_folders = {sanitize_branch_for_path(b) for b in active_branches}
        retention_seconds = retention_hours * 3600
        now = time.time()
        cleaned = 0

        for folder in self._folders():
            if folder.name in active_folders:
                logger.debug(f"Skipping cleanup of session folder with active session: {folder.name}")
                continue

            state = self._read_state_file(folder / STATE_FILE)
            if state is not None:
                if state.status in _RETAINED_STATUSES:
                    continue
                if state.status == ChangeStatus.COMPLETED:
                    if self._remove(folder):
                        cleaned += 1
                        logger.debug(f"Cleaned up orphaned completed session folder: {folder.name}")
                    continue

            try:
                age = now - folder.stat().st_mtime
            except OSError:
                age = retention_seconds + 1
            if age < retention_seconds:
                continue
            if self._remove(folder):
                cleaned += 1
                logger.debug(f"Cleaned up stale orphaned session folder: {folder.name}")

        if cleaned:
            logger.info(f"Cleaned up {cleaned} stale session folders")
        return cleaned

    def _folders(self) -> List[Path]:
        if not self.root.is_dir():
            return []
        return sorted(p for p in self.root.iterdir() if p.is_dir())

    @staticmethod
    def _read_state_file(path: Path) -> Optional[PersistedSessionState]:
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            return PersistedSessionState.from_dict(data)
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.debug(f"Unreadable session state {path}: {e}")
            return None

    @staticmethod
    def _remove(folder: Path) -> bool:
        try:
            shutil.rmtree(folder)
            return True
        except OSError as e:
            logger.warning(f"Failed to clean up session folder {folder.name}: {e}")
            return False
