"""Workspace management for change sessions."""

from .worktree_manager import WorktreeError, WorktreeInfo, WorktreeManager

__all__ = [
    "WorktreeError",
    "WorktreeInfo",
    "WorktreeManager",
]
