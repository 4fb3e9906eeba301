"""Shared utility functions for clack."""

from .atomic_io import atomic_write_json, atomic_write_text
from .error_handling import log_and_ignore, safe_call, safe_call_async
from .subprocess_utils import (
    SubprocessError,
    redact_credentials,
    run_command,
    run_git_command,
)
from .validators import sanitize_branch_for_path, validate_branch_name

__all__ = [
    # Atomic I/O
    "atomic_write_json",
    "atomic_write_text",
    # Error handling
    "log_and_ignore",
    "safe_call",
    "safe_call_async",
    # Subprocess
    "SubprocessError",
    "redact_credentials",
    "run_command",
    "run_git_command",
    # Validators
    "sanitize_branch_for_path",
    "validate_branch_name",
]
