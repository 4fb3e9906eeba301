"""Tests for branch name validation and atomic file writes."""

import json
import os

import pytest
from unittest.mock import patch

from clack.utils.atomic_io import atomic_write_json, atomic_write_text
from clack.utils.validators import sanitize_branch_for_path, validate_branch_name


@pytest.mark.parametrize("name", [
    "feat/retry-logic",
    "clack/fix/null_check",
    "release-1.2.3",
    "a",
])
def test_valid_branch_names(name):
    assert validate_branch_name(name) == name


@pytest.mark.parametrize("name", [
    "",
    "feat retry",
    "feat;rm -rf /",
    "/leading",
    "trailing/",
    "-flag",
    "a..b",
    "a//b",
    "branch.lock",
    "x" * 256,
    "$(whoami)",
])
def test_invalid_branch_names(name):
    with pytest.raises(ValueError):
        validate_branch_name(name)


def test_sanitize_branch_for_path():
    assert sanitize_branch_for_path("clack/feat/retry") == "clack-feat-retry"
    assert sanitize_branch_for_path("plain") == "plain"


def test_atomic_write_json(tmp_path):
    target = tmp_path / "state.json"

    atomic_write_json(target, {"status": "executing", "n": 1})

    assert json.loads(target.read_text()) == {"status": "executing", "n": 1}
    assert target.read_text().startswith("{\n  ")
    assert [p.name for p in tmp_path.iterdir()] == ["state.json"]


def test_atomic_write_replaces_existing(tmp_path):
    target = tmp_path / "file.txt"
    target.write_text("old")

    atomic_write_text(target, "new")

    assert target.read_text() == "new"


def test_atomic_write_failure_keeps_previous_content(tmp_path):
    target = tmp_path / "file.txt"
    target.write_text("old")

    with patch("clack.utils.atomic_io.os.replace", side_effect=OSError("read-only")):
        with pytest.raises(OSError):
            atomic_write_text(target, "new", max_retries=2)

    assert target.read_text() == "old"
    assert not any(name.startswith("file.txt.tmp") for name in os.listdir(tmp_path))
