"""Tests for SessionFolderStore (state.json + execution.log per branch)."""

import json
import os
import re
import time
from pathlib import Path

import pytest
from unittest.mock import patch

from clack.changes.persistence import LOG_FILE, STATE_FILE, SessionFolderStore
from clack.changes.types import (
    ChangePlan,
    ChangeRequest,
    ChangeSession,
    ChangeStatus,
    PersistedSessionState,
    TriggerType,
)
from clack.workspace.worktree_manager import WorktreeInfo


def _make_session(branch="feat/x", status=ChangeStatus.EXECUTING) -> ChangeSession:
    request = ChangeRequest("U1", "do it", TriggerType.DIRECT_MESSAGES, "D1", "1.0")
    return ChangeSession(
        id="change-1-abcdef",
        user_id="U1",
        request=request,
        plan=ChangePlan(branch_name=branch, description="Do it", target_repo="api"),
        worktree=WorktreeInfo("api", branch, Path("/tmp/wt")),
        channel="D1",
        thread_ts="1.0",
        status=status,
    )


def _write(store, branch, status, message="m"):
    state = PersistedSessionState.from_session(_make_session(branch), message, status=status)
    store.write_state(state)
    return state


@pytest.fixture
def store(tmp_path):
    return SessionFolderStore(tmp_path / "sessions")


class TestFolderLayout:

    def test_slash_maps_to_dash(self, store, tmp_path):
        assert store.folder_for("feat/a/b") == tmp_path / "sessions" / "feat-a-b"

    def test_create_folder_writes_initial_state(self, store):
        state = store.create_folder(_make_session())

        path = store.folder_for("feat/x") / STATE_FILE
        data = json.loads(path.read_text())
        assert data["lastMessage"] == "Starting change workflow"
        assert data["status"] == "executing"
        assert data["branch"] == "feat/x"
        assert state.last_message == "Starting change workflow"

    def test_state_is_pretty_printed(self, store):
        store.create_folder(_make_session())
        text = (store.folder_for("feat/x") / STATE_FILE).read_text()
        assert text.startswith("{\n  ")

    def test_write_state_leaves_no_temp_files(self, store):
        store.create_folder(_make_session())
        _write(store, "feat/x", ChangeStatus.PR_CREATED)
        assert sorted(p.name for p in store.folder_for("feat/x").iterdir()) == [STATE_FILE]

    def test_write_failure_raises(self, store):
        state = PersistedSessionState.from_session(_make_session(), "m")
        with patch("clack.changes.persistence.atomic_write_json", side_effect=OSError("disk full")):
            with pytest.raises(OSError):
                store.write_state(state)


class TestExecutionLog:

    def test_append_lines_with_timestamp(self, store):
        store.append_log("feat/x", "first")
        store.append_log("feat/x", "second")

        lines = (store.folder_for("feat/x") / LOG_FILE).read_text().splitlines()
        assert len(lines) == 2
        assert re.fullmatch(r"\[\d{4}-\d\d-\d\dT\d\d:\d\d:\d\d\.\d{3}Z\] first", lines[0])
        assert lines[1].endswith("] second")

    def test_append_failure_is_swallowed(self, store, tmp_path):
        # A file where the folder should be makes mkdir fail
        (tmp_path / "sessions").mkdir()
        (tmp_path / "sessions" / "feat-x").write_text("not a dir")

        store.append_log("feat/x", "ignored")


class TestReadState:

    def test_missing_returns_none(self, store):
        assert store.read_state("nope") is None

    def test_corrupt_returns_none(self, store):
        folder = store.folder_for("feat/x")
        folder.mkdir(parents=True)
        (folder / STATE_FILE).write_text("{not json")
        assert store.read_state("feat/x") is None

    def test_roundtrip(self, store):
        written = _write(store, "feat/x", ChangeStatus.FAILED, "boom")
        assert store.read_state("feat/x") == written


class TestResumableSessions:

    def test_only_planning_executing_failed(self, store):
        _write(store, "a", ChangeStatus.EXECUTING)
        _write(store, "b", ChangeStatus.FAILED)
        _write(store, "c", ChangeStatus.PR_CREATED)
        _write(store, "d", ChangeStatus.COMPLETED)
        _write(store, "e", ChangeStatus.PLANNING)

        branches = sorted(s.branch_name for s in store.get_resumable_sessions())
        assert branches == ["a", "b", "e"]

    def test_skips_unreadable(self, store):
        _write(store, "a", ChangeStatus.FAILED)
        broken = store.root / "broken"
        broken.mkdir()
        (broken / STATE_FILE).write_text("[]")

        assert [s.branch_name for s in store.get_resumable_sessions()] == ["a"]

    def test_empty_root(self, store):
        assert store.get_resumable_sessions() == []


class TestCleanupStaleFolders:

    def _age(self, folder: Path, hours: float):
        old = time.time() - hours * 3600
        os.utime(folder, (old, old))

    def test_completed_removed_regardless_of_age(self, store):
        _write(store, "done", ChangeStatus.COMPLETED)

        assert store.cleanup_stale_folders(retention_hours=24) == 1
        assert not store.folder_for("done").exists()

    def test_retained_statuses_kept_even_when_old(self, store):
        for branch, status in [
            ("a", ChangeStatus.EXECUTING),
            ("b", ChangeStatus.PR_CREATED),
            ("c", ChangeStatus.FAILED),
            ("d", ChangeStatus.MERGING),
        ]:
            _write(store, branch, status)
            self._age(store.folder_for(branch), 100)

        assert store.cleanup_stale_folders(retention_hours=24) == 0
        assert len(list(store.root.iterdir())) == 4

    def test_active_branch_kept(self, store):
        _write(store, "feat/done", ChangeStatus.COMPLETED)

        assert store.cleanup_stale_folders(active_branches=["feat/done"]) == 0
        assert store.folder_for("feat/done").exists()

    def test_unreadable_removed_only_after_retention(self, store):
        fresh = store.root / "fresh"
        stale = store.root / "stale"
        fresh.mkdir(parents=True)
        stale.mkdir(parents=True)
        self._age(stale, 48)

        assert store.cleanup_stale_folders(retention_hours=24) == 1
        assert fresh.exists()
        assert not stale.exists()

    def test_missing_root(self, store):
        assert store.cleanup_stale_folders() == 0


class TestRemoveFolder:

    def test_remove(self, store):
        store.create_folder(_make_session())
        store.remove_folder("feat/x")
        assert not store.folder_for("feat/x").exists()

    def test_remove_missing_is_noop(self, store):
        store.remove_folder("never")
