"""Atomic file I/O operations."""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict

logger = logging.getLogger(__name__)


def atomic_write_text(file_path: Path, content: str, max_retries: int = 3) -> None:
    """
    Atomically write content to a file using temp file + rename.

    Readers either see the previous file or the complete new one, never a
    partially written file.

    Args:
        file_path: Target file path
        content: Content to write
        max_retries: Maximum number of attempts on failure

    Raises:
        OSError: If write fails after all retries
    """
    # PID suffix keeps concurrent writers from sharing a temp file
    tmp_file = file_path.with_suffix(f"{file_path.suffix}.tmp.{os.getpid()}")

    last_error = None
    for attempt in range(max_retries):
        try:
            tmp_file.write_text(content, encoding="utf-8")
            os.replace(tmp_file, file_path)
            return
        except OSError as e:
            last_error = e
            if attempt < max_retries - 1:
                logger.warning(
                    f"Failed to write {file_path} (attempt {attempt + 1}/{max_retries}): {e}"
                )
        finally:
            if tmp_file.exists():
                try:
                    tmp_file.unlink()
                except OSError:
                    pass

    logger.error(f"Failed to write {file_path} after {max_retries} attempts: {last_error}")
    raise last_error


def atomic_write_json(file_path: Path, data: Dict[str, Any], indent: int = 2) -> None:
    """Serialize a dict and write it atomically."""
    atomic_write_text(file_path, json.dumps(data, indent=indent))
