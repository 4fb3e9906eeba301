"""Tests for change-session types and the status state machine."""

import re
from datetime import datetime, timezone
from pathlib import Path

import pytest

from clack.changes.types import (
    ALLOWED_TRANSITIONS,
    LAST_MESSAGE_MAX_LENGTH,
    ChangePlan,
    ChangeRequest,
    ChangeSession,
    ChangeStatus,
    InvalidTransitionError,
    PersistedSessionState,
    TriggerType,
    generate_session_id,
    parse_iso,
    to_iso,
)
from clack.workspace.worktree_manager import WorktreeInfo


def _make_session(status=ChangeStatus.EXECUTING, pr_url=None) -> ChangeSession:
    request = ChangeRequest(
        user_id="U1",
        message="add a health check",
        trigger_type=TriggerType.MENTIONS,
        channel="C1",
        message_ts="100.1",
    )
    return ChangeSession(
        id="change-1-abcdef",
        user_id="U1",
        request=request,
        plan=ChangePlan(branch_name="feat/health", description="Add health check", target_repo="api"),
        worktree=WorktreeInfo("api", "feat/health", Path("/tmp/wt")),
        channel="C1",
        thread_ts="100.1",
        status=status,
        pr_url=pr_url,
        created_at=datetime(2024, 1, 2, 3, 4, 5, 678000, tzinfo=timezone.utc),
    )


# ---------------------------------------------------------------------------
# ChangeStatus
# ---------------------------------------------------------------------------

class TestChangeStatus:

    def test_phase_labels(self):
        assert ChangeStatus.EXECUTING.phase == "Implementing"
        assert ChangeStatus.PR_CREATED.phase == "PR Created"
        assert ChangeStatus.REVIEWING.phase == "Reviewing PR"

    def test_terminal_statuses(self):
        terminal = {s for s in ChangeStatus if s.is_terminal}
        assert terminal == {ChangeStatus.COMPLETED, ChangeStatus.FAILED}

    def test_pr_created_is_neither_terminal_nor_in_progress(self):
        assert not ChangeStatus.PR_CREATED.is_terminal
        assert not ChangeStatus.PR_CREATED.is_in_progress

    def test_resumable_statuses(self):
        resumable = {s for s in ChangeStatus if s.is_resumable}
        assert resumable == {ChangeStatus.PLANNING, ChangeStatus.EXECUTING, ChangeStatus.FAILED}

    def test_terminal_statuses_have_no_exits(self):
        for status in ChangeStatus:
            if status.is_terminal:
                assert ALLOWED_TRANSITIONS[status] == frozenset()

    def test_every_status_has_transition_entry(self):
        assert set(ALLOWED_TRANSITIONS) == set(ChangeStatus)

    def test_follow_up_edges(self):
        assert ChangeStatus.PR_CREATED.can_transition_to(ChangeStatus.REVIEWING)
        assert ChangeStatus.REVIEWING.can_transition_to(ChangeStatus.PR_CREATED)
        assert ChangeStatus.MERGING.can_transition_to(ChangeStatus.COMPLETED)
        assert ChangeStatus.PR_CREATED.can_transition_to(ChangeStatus.EXECUTING)

    def test_completed_cannot_reopen(self):
        assert not ChangeStatus.COMPLETED.can_transition_to(ChangeStatus.PR_CREATED)
        assert not ChangeStatus.FAILED.can_transition_to(ChangeStatus.EXECUTING)

    def test_invalid_transition_error_message(self):
        error = InvalidTransitionError("s1", ChangeStatus.COMPLETED, ChangeStatus.EXECUTING)
        assert isinstance(error, ValueError)
        assert "completed" in str(error)
        assert "executing" in str(error)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class TestHelpers:

    def test_session_id_format(self):
        assert re.fullmatch(r"change-\d+-[0-9a-z]{6}", generate_session_id())

    def test_session_ids_unique(self):
        assert len({generate_session_id() for _ in range(50)}) == 50

    def test_to_iso_uses_z_suffix_and_milliseconds(self):
        value = datetime(2024, 1, 2, 3, 4, 5, 678901, tzinfo=timezone.utc)
        assert to_iso(value) == "2024-01-02T03:04:05.678Z"

    def test_parse_iso_roundtrip(self):
        value = datetime(2024, 1, 2, 3, 4, 5, 678000, tzinfo=timezone.utc)
        assert parse_iso(to_iso(value)) == value

    def test_parse_iso_naive_is_utc(self):
        assert parse_iso("2024-01-02T03:04:05").tzinfo is not None

    def test_request_with_message_keeps_other_fields(self):
        request = _make_session().request
        updated = request.with_message("new text")
        assert updated.message == "new text"
        assert updated.channel == request.channel
        assert request.message == "add a health check"

    def test_thread_key(self):
        assert _make_session().thread_key == "C1:100.1"


# ---------------------------------------------------------------------------
# PersistedSessionState
# ---------------------------------------------------------------------------

class TestPersistedSessionState:

    def test_from_session_uses_camel_case_keys(self):
        state = PersistedSessionState.from_session(_make_session(), "hello")
        data = state.to_dict()

        assert set(data) == {
            "sessionId", "status", "phase", "branch", "repo", "userId",
            "description", "prUrl", "startedAt", "lastActivityAt", "lastMessage",
        }
        assert data["status"] == "executing"
        assert data["phase"] == "Implementing"
        assert data["startedAt"] == "2024-01-02T03:04:05.678Z"
        assert data["prUrl"] is None

    def test_pending_status_and_pr_url_are_applied(self):
        session = _make_session()
        state = PersistedSessionState.from_session(
            session, "done", status=ChangeStatus.PR_CREATED, pr_url="https://github.com/o/r/pull/1"
        )
        assert state.status == ChangeStatus.PR_CREATED
        assert state.phase == "PR Created"
        assert state.pr_url == "https://github.com/o/r/pull/1"
        # Snapshot does not touch the session itself
        assert session.status == ChangeStatus.EXECUTING
        assert session.pr_url is None

    def test_last_message_truncated(self):
        state = PersistedSessionState.from_session(_make_session(), "x" * 2000)
        assert len(state.last_message) == LAST_MESSAGE_MAX_LENGTH

    def test_from_dict_roundtrip(self):
        state = PersistedSessionState.from_session(_make_session(pr_url="u"), "m")
        assert PersistedSessionState.from_dict(state.to_dict()) == state

    def test_from_dict_missing_pr_url(self):
        data = PersistedSessionState.from_session(_make_session(), "m").to_dict()
        del data["prUrl"]
        assert PersistedSessionState.from_dict(data).pr_url is None

    def test_from_dict_rejects_unknown_status(self):
        data = PersistedSessionState.from_session(_make_session(), "m").to_dict()
        data["status"] = "exploded"
        with pytest.raises(ValueError):
            PersistedSessionState.from_dict(data)

    def test_from_dict_rejects_missing_key(self):
        data = PersistedSessionState.from_session(_make_session(), "m").to_dict()
        del data["branch"]
        with pytest.raises(KeyError):
            PersistedSessionState.from_dict(data)
