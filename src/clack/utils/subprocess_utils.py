"""Standardized subprocess utilities for git command execution."""

import logging
import os
import re
import subprocess
from pathlib import Path
from typing import List, Optional, Union

logger = logging.getLogger(__name__)

# Authenticated remote URLs carry an installation token in the userinfo part
_CREDENTIAL_PATTERN = re.compile(r"(https://[^:/\s]+:)[^@\s]+@")


def redact_credentials(text: str) -> str:
    """Mask tokens embedded in https remote URLs."""
    return _CREDENTIAL_PATTERN.sub(r"\1***@", text)


class SubprocessError(Exception):
    """Exception raised when a subprocess command fails."""

    def __init__(self, cmd: str, returncode: int, stderr: str, stdout: str = ""):
        self.cmd = redact_credentials(cmd)
        self.returncode = returncode
        self.stderr = redact_credentials(stderr or "")
        self.stdout = stdout
        super().__init__(
            f"Command failed with exit code {returncode}: {self.cmd}\nstderr: {self.stderr}"
        )


def run_command(
    cmd: Union[str, List[str]],
    *,
    cwd: Optional[Path] = None,
    check: bool = True,
    timeout: Optional[int] = None,
    env: Optional[dict] = None,
) -> subprocess.CompletedProcess:
    """
    Run a command with standardized error handling.

    Args:
        cmd: Command to run (string or list)
        cwd: Working directory
        check: Raise exception on non-zero exit
        timeout: Timeout in seconds
        env: Environment variables

    Returns:
        CompletedProcess with stdout, stderr, returncode

    Raises:
        SubprocessError: If check=True and command fails
        subprocess.TimeoutExpired: If timeout exceeded
    """
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=timeout,
            env=env,
            check=False,  # We handle check ourselves for better error messages
        )
    except subprocess.TimeoutExpired:
        cmd_str = cmd if isinstance(cmd, str) else " ".join(cmd)
        logger.error(f"Command timed out after {timeout}s: {redact_credentials(cmd_str)}")
        raise

    if check and result.returncode != 0:
        cmd_str = cmd if isinstance(cmd, str) else " ".join(cmd)
        raise SubprocessError(
            cmd=cmd_str,
            returncode=result.returncode,
            stderr=result.stderr,
            stdout=result.stdout,
        )

    return result


def run_git_command(
    args: List[str],
    *,
    cwd: Optional[Path] = None,
    check: bool = True,
    timeout: int = 30,
) -> subprocess.CompletedProcess:
    """
    Run a git command with standardized error handling.

    Interactive credential prompts are disabled so a rejected token fails
    the command instead of blocking on stdin.

    Args:
        args: Git command arguments (without 'git' prefix)
        cwd: Working directory (git repo)
        check: Raise exception on non-zero exit
        timeout: Timeout in seconds (default: 30)

    Returns:
        CompletedProcess with stdout, stderr, returncode

    Raises:
        SubprocessError: If check=True and command fails
        subprocess.TimeoutExpired: If timeout exceeded
    """
    env = os.environ.copy()
    env["GIT_TERMINAL_PROMPT"] = "0"

    try:
        return run_command(
            ["git"] + args,
            cwd=cwd,
            check=check,
            timeout=timeout,
            env=env,
        )
    except SubprocessError:
        logger.error(f"Git command failed in {cwd}: {redact_credentials(' '.join(args))}")
        raise
