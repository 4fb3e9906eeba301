"""Rich logging with change-session context and readable formatting."""

import logging
import os
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional


class ClackLogFormatter(logging.Formatter):
    """Formatter that prefixes records with session and phase context."""

    LEVEL_COLORS = {
        "DEBUG": "\033[36m",      # Cyan
        "INFO": "\033[32m",       # Green
        "WARNING": "\033[33m",    # Yellow
        "ERROR": "\033[31m",      # Red
        "CRITICAL": "\033[35m",   # Magenta
    }

    def __init__(self, name: str, use_colors: bool = True):
        super().__init__()
        self.name = name
        self.use_colors = use_colors

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")

        session_context = ""
        if hasattr(record, "branch"):
            session_context = f"[{record.branch}] "
        elif hasattr(record, "session_id"):
            session_context = f"[{record.session_id}] "

        phase_context = ""
        if hasattr(record, "phase"):
            phase_context = f"[{record.phase}] "

        if self.use_colors:
            level_color = self.LEVEL_COLORS.get(record.levelname, "")
            reset = "\033[0m"
        else:
            level_color = ""
            reset = ""

        message = (
            f"{timestamp} {level_color}{record.levelname:8s}{reset} "
            f"[{self.name}] {phase_context}{session_context}{record.getMessage()}"
        )
        if record.exc_info:
            message += "\n" + self.formatException(record.exc_info)
        return message


class SessionLogger(logging.LoggerAdapter):
    """Logger adapter that tags every record with one change session's context."""

    def __init__(
        self,
        logger: logging.Logger,
        session_id: Optional[str] = None,
        branch: Optional[str] = None,
    ):
        super().__init__(logger, {})
        self.session_id = session_id
        self.branch = branch
        self.phase: Optional[str] = None

    def process(self, msg, kwargs):
        extra = kwargs.get("extra", {})
        if self.session_id:
            extra["session_id"] = self.session_id
        if self.branch:
            extra["branch"] = self.branch
        if self.phase:
            extra["phase"] = self.phase
        kwargs["extra"] = extra
        return msg, kwargs

    def phase_change(self, phase: str):
        """Log a phase transition and keep it as context for later records."""
        self.phase = phase
        self.info(f"Phase: {phase}")


def setup_rich_logging(
    name: str,
    log_dir: Path,
    log_level: str = "INFO",
    use_file: bool = True,
    use_json: bool = False,
) -> logging.Logger:
    """
    Configure the root ``clack`` logger.

    Args:
        name: Label printed on every line (process or command name)
        log_dir: Directory for the log file
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        use_file: Also write to ``<log_dir>/<name>.log``
        use_json: Use JSON structured lines instead of the coloured format

    Returns:
        The configured package logger
    """
    logger = logging.getLogger("clack")
    logger.setLevel(getattr(logging, log_level.upper()))

    # Close existing handlers before clearing (prevents file descriptor leak)
    for handler in logger.handlers[:]:
        handler.close()
        logger.removeHandler(handler)

    if use_json:
        formatter = logging.Formatter(
            '{"timestamp":"%(asctime)s","process":"%(proc)s","level":"%(levelname)s",'
            '"message":"%(message)s","module":"%(module)s","function":"%(funcName)s"}',
            defaults={'proc': f"{name}-{os.getpid()}"}
        )
    else:
        formatter = ClackLogFormatter(name, use_colors=sys.stderr.isatty())

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if use_file:
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_dir / f"{name}.log")
        file_handler.setFormatter(ClackLogFormatter(name, use_colors=False))
        logger.addHandler(file_handler)

    return logger
