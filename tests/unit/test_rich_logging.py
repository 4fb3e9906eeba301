"""Tests for the clack log formatter and session logger adapter."""

import logging

import pytest

from clack.utils.rich_logging import ClackLogFormatter, SessionLogger, setup_rich_logging


def _record(msg="hello", **extra) -> logging.LogRecord:
    record = logging.LogRecord("clack.test", logging.INFO, __file__, 1, msg, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestClackLogFormatter:

    def test_plain_line(self):
        line = ClackLogFormatter("clack-cli", use_colors=False).format(_record())
        assert line.endswith("INFO     [clack-cli] hello")

    def test_branch_and_phase_context(self):
        formatter = ClackLogFormatter("clack-cli", use_colors=False)
        line = formatter.format(_record(branch="feat/a", session_id="change-1", phase="Implementing"))
        assert "[Implementing] [feat/a] hello" in line

    def test_session_id_without_branch(self):
        line = ClackLogFormatter("x", use_colors=False).format(_record(session_id="change-1"))
        assert "[change-1] hello" in line

    def test_colors(self):
        line = ClackLogFormatter("x", use_colors=True).format(_record())
        assert "\033[32m" in line


class TestSessionLogger:

    def test_tags_records(self, caplog):
        slog = SessionLogger(logging.getLogger("clack.test"), session_id="change-1", branch="feat/a")

        with caplog.at_level(logging.INFO, logger="clack.test"):
            slog.phase_change("Implementing")
            slog.info("working")

        first, second = caplog.records
        assert first.getMessage() == "Phase: Implementing"
        assert second.branch == "feat/a"
        assert second.session_id == "change-1"
        assert second.phase == "Implementing"


@pytest.fixture
def _restore_clack_logger():
    yield
    package_logger = logging.getLogger("clack")
    for handler in package_logger.handlers[:]:
        handler.close()
        package_logger.removeHandler(handler)
    package_logger.setLevel(logging.NOTSET)


def test_setup_writes_log_file(tmp_path, _restore_clack_logger):
    logger = setup_rich_logging("clack-test", tmp_path / "logs", log_level="DEBUG")
    logger.debug("to file")
    for handler in logger.handlers:
        handler.flush()

    assert "to file" in (tmp_path / "logs" / "clack-test.log").read_text()
    assert len(logger.handlers) == 2


def test_setup_replaces_handlers(tmp_path, _restore_clack_logger):
    setup_rich_logging("clack-test", tmp_path, use_file=False)
    logger = setup_rich_logging("clack-test", tmp_path, use_file=False)
    assert len(logger.handlers) == 1
