"""Tests for the clack CLI commands that need no agent or network."""

import io
import logging
from pathlib import Path

import pytest
from click.testing import CliRunner
from rich.console import Console

from clack.changes.persistence import SessionFolderStore
from clack.changes.session import SessionRegistry
from clack.changes.types import ChangePlan, ChangeRequest, ChangeStatus, TriggerType
from clack.cli import main as cli_main
from clack.cli.main import cli
from clack.core.config import clear_config_cache, load_config
from clack.workspace.worktree_manager import WorktreeInfo


@pytest.fixture(autouse=True)
def _reset_logging():
    clear_config_cache()
    yield
    clear_config_cache()
    package_logger = logging.getLogger("clack")
    for handler in package_logger.handlers[:]:
        handler.close()
        package_logger.removeHandler(handler)
    package_logger.setLevel(logging.NOTSET)


@pytest.fixture
def config_file(tmp_path, monkeypatch):
    monkeypatch.delenv("GITHUB_TOKEN", raising=False)
    path = tmp_path / "clack.yaml"
    path.write_text(
        f"data_dir: {tmp_path / 'data'}\n"
        "changes_workflow:\n"
        "  enabled: true\n"
    )
    return path


def _invoke(config_file: Path, *args):
    return CliRunner().invoke(cli, ["--config", str(config_file), *args])


def test_sessions_empty(config_file):
    result = _invoke(config_file, "sessions")

    assert result.exit_code == 0
    assert "No resumable sessions" in result.output


def test_sessions_lists_failed_session(config_file):
    config = load_config(config_file)
    registry = SessionRegistry(SessionFolderStore(config.sessions_dir))
    session = registry.create(
        ChangeRequest("U1", "fix it", TriggerType.MENTIONS, "C1", "1.0"),
        ChangePlan("feat/a", "Fix it", "api"),
        WorktreeInfo("api", "feat/a", Path("/tmp/worktrees/api/feat-a")),
        "1.0",
    )
    registry.update_status(session.id, ChangeStatus.FAILED, "boom")

    result = _invoke(config_file, "sessions")

    assert result.exit_code == 0
    assert "feat/a" in result.output
    assert "Failed" in result.output


def test_cleanup_reports_counts(config_file):
    result = _invoke(config_file, "cleanup")

    assert result.exit_code == 0
    assert "Removed 0 stale worktrees" in result.output
    assert "Removed 0 stale session folders" in result.output


def test_sync_without_repositories(config_file):
    result = _invoke(config_file, "sync")

    assert result.exit_code == 0
    assert "No repositories configured" in result.output


def test_change_rejects_bad_branch(config_file):
    result = _invoke(
        config_file, "change", "--repo", "api", "--branch", "bad branch", "--description", "x"
    )

    assert "Invalid branch name" in result.output


def test_change_requires_direct_message_trigger(config_file):
    result = _invoke(
        config_file, "change", "--repo", "api", "--branch", "feat/a", "--description", "x"
    )

    assert result.exit_code == 1
    assert "disabled for direct_messages" in result.output


def test_resume_requires_direct_message_trigger(config_file):
    result = _invoke(config_file, "resume", "feat/a")

    assert result.exit_code == 1
    assert "disabled for direct_messages" in result.output


def test_active_workers_table(tmp_path, monkeypatch):
    output = io.StringIO()
    monkeypatch.setattr(cli_main, "console", Console(file=output, width=200))
    registry = SessionRegistry(SessionFolderStore(tmp_path / "sessions"))
    session = registry.create(
        ChangeRequest("U7", "fix it", TriggerType.MENTIONS, "C1", "1.0"),
        ChangePlan("feat/a", "Fix it", "api"),
        WorktreeInfo("api", "feat/a", tmp_path / "worktrees" / "feat-a"),
        "1.0",
    )
    registry.update_pr_url(session.id, "https://github.com/octo/api/pull/9")
    registry.update_status(session.id, ChangeStatus.PR_CREATED)

    cli_main._print_active_workers(registry)

    text = output.getvalue()
    assert "Active changes" in text
    assert "feat/a" in text
    assert "PR Created" in text
    assert "U7" in text
    assert "https://github.com/octo/api/pull/9" in text


def test_no_active_workers_prints_nothing(tmp_path, monkeypatch):
    output = io.StringIO()
    monkeypatch.setattr(cli_main, "console", Console(file=output, width=200))

    cli_main._print_active_workers(SessionRegistry(SessionFolderStore(tmp_path / "sessions")))

    assert output.getvalue() == ""
