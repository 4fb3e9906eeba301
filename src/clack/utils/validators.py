"""Validation utilities for branch names and repository references."""

import re


def validate_branch_name(branch_name: str) -> str:
    """
    Validate a git branch name produced by planning or typed by a user.

    Args:
        branch_name: Branch name to validate

    Returns:
        Validated branch name

    Raises:
        ValueError: If branch name is invalid
    """
    if not branch_name:
        raise ValueError("Branch name cannot be empty")

    # Strict whitelist; dots are allowed for version-style names
    if not re.match(r'^[a-zA-Z0-9/._-]+$', branch_name):
        raise ValueError(f"Invalid branch name: {branch_name}")

    if branch_name.startswith('/') or branch_name.endswith('/'):
        raise ValueError("Branch name cannot start or end with /")

    if branch_name.startswith('-'):
        raise ValueError("Branch name cannot start with -")

    if '..' in branch_name or '//' in branch_name or branch_name.endswith('.lock'):
        raise ValueError("Branch name contains invalid sequence")

    if len(branch_name) > 255:
        raise ValueError("Branch name too long")

    return branch_name


def sanitize_branch_for_path(branch_name: str) -> str:
    """Map a branch name to a single filesystem path segment (``/`` becomes ``-``)."""
    return branch_name.replace("/", "-")
