"""Tests for follow-up intent detection."""

from pathlib import Path

import pytest
from unittest.mock import AsyncMock, MagicMock

from clack.changes.detection import FollowUpDetector, parse_follow_up_output
from clack.changes.execution import ALL_TOOLS
from clack.changes.persistence import SessionFolderStore
from clack.changes.session import SessionRegistry
from clack.changes.types import ChangePlan, ChangeRequest, FollowUpCommand, TriggerType
from clack.llm.agent_invoker import AgentResult
from clack.workspace.worktree_manager import WorktreeInfo


def _command(command: str, instructions: str = "") -> str:
    return (
        "<follow-up-command>\n"
        f"  <command>{command}</command>\n"
        f"  <instructions>{instructions}</instructions>\n"
        "</follow-up-command>"
    )


class TestParseFollowUpOutput:

    @pytest.mark.parametrize("command", list(FollowUpCommand))
    def test_known_commands(self, command):
        detection = parse_follow_up_output(_command(command.value, "do it"), "msg")
        assert detection.is_command
        assert detection.command == command
        assert detection.additional_instructions == "do it"

    def test_case_insensitive(self):
        assert parse_follow_up_output(_command(" MERGE "), "ship it").command == FollowUpCommand.MERGE

    def test_empty_instructions_fall_back_to_message(self):
        detection = parse_follow_up_output(_command("update"), "also fix the tests")
        assert detection.additional_instructions == "also fix the tests"

    def test_unknown_command_is_question(self):
        assert not parse_follow_up_output(_command("deploy"), "deploy it").is_command

    def test_question_tag(self):
        assert not parse_follow_up_output("<question>true</question>", "why?").is_command

    def test_garbage(self):
        assert not parse_follow_up_output("", "x").is_command
        assert not parse_follow_up_output("<follow-up-command></follow-up-command>", "x").is_command


@pytest.fixture
def registry(tmp_path):
    return SessionRegistry(SessionFolderStore(tmp_path / "sessions"))


def _make_detector(registry, result: AgentResult):
    invoker = MagicMock()
    invoker.run = AsyncMock(return_value=result)
    return FollowUpDetector(invoker, registry), invoker


class TestFollowUpDetector:

    @pytest.mark.asyncio
    async def test_detect_runs_without_tools(self, registry, tmp_path):
        detector, invoker = _make_detector(registry, AgentResult(success=True, text=_command("merge")))

        detection = await detector.detect("lgtm", tmp_path)

        assert detection.command == FollowUpCommand.MERGE
        request = invoker.run.call_args.args[0]
        assert request.allowed_tools == []
        assert request.disallowed_tools == list(ALL_TOOLS)
        assert '"lgtm"' in request.prompt

    @pytest.mark.asyncio
    async def test_agent_failure_is_question(self, registry, tmp_path):
        detector, _ = _make_detector(registry, AgentResult(success=False, error="timed out"))

        detection = await detector.detect("merge", tmp_path)

        assert not detection.is_command

    @pytest.mark.asyncio
    async def test_thread_without_session(self, registry):
        detector, invoker = _make_detector(registry, AgentResult(success=True, text=_command("merge")))

        assert await detector.detect_for_thread("C1", "1.0", "merge") is None
        invoker.run.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_thread_uses_session_worktree(self, registry):
        worktree = WorktreeInfo("api", "feat/a", Path("/tmp/worktrees/api/feat-a"))
        registry.create(
            ChangeRequest("U1", "m", TriggerType.MENTIONS, "C1", "1.0"),
            ChangePlan("feat/a", "d", "api"),
            worktree,
            "1.0",
        )
        detector, invoker = _make_detector(registry, AgentResult(success=True, text=_command("close")))

        detection = await detector.detect_for_thread("C1", "1.0", "close it")

        assert detection.command == FollowUpCommand.CLOSE
        assert invoker.run.call_args.args[0].cwd == worktree.worktree_path
