"""Logging with task/agent context and readable console formatting."""

import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

ROOT_LOGGER_NAME = "aristar_worktrees"


class AppLogFormatter(logging.Formatter):
    """Formatter that prefixes task and agent context when present."""

    LEVEL_COLORS = {
        "DEBUG": "\033[36m",      # Cyan
        "INFO": "\033[32m",       # Green
        "WARNING": "\033[33m",    # Yellow
        "ERROR": "\033[31m",      # Red
        "CRITICAL": "\033[35m",   # Magenta
    }

    def __init__(self, use_colors: bool = True):
        super().__init__()
        self.use_colors = use_colors

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")

        context = ""
        if hasattr(record, "task_id"):
            context += f"[task {record.task_id}] "
        if hasattr(record, "agent_id"):
            context += f"[{record.agent_id}] "

        if self.use_colors:
            level_color = self.LEVEL_COLORS.get(record.levelname, "")
            reset = "\033[0m"
        else:
            level_color = ""
            reset = ""

        message = (
            f"{timestamp} {level_color}{record.levelname:8s}{reset} "
            f"{record.name.rsplit('.', 1)[-1]}: {context}{record.getMessage()}"
        )
        if record.exc_info:
            message += "\n" + self.formatException(record.exc_info)
        return message


class ContextLogger(logging.LoggerAdapter):
    """Logger adapter that attaches task/agent ids to every record."""

    def __init__(self, logger: logging.Logger, task_id: Optional[str] = None):
        super().__init__(logger, {})
        self.task_id = task_id
        self.agent_id: Optional[str] = None

    def for_agent(self, agent_id: Optional[str]) -> "ContextLogger":
        child = ContextLogger(self.logger, self.task_id)
        child.agent_id = agent_id
        return child

    def process(self, msg, kwargs):
        extra = dict(kwargs.get("extra") or {})
        if self.task_id:
            extra["task_id"] = self.task_id
        if self.agent_id:
            extra["agent_id"] = self.agent_id
        kwargs["extra"] = extra
        return msg, kwargs


def task_logger(name: str, task_id: Optional[str] = None) -> ContextLogger:
    """Module logger wrapped with task context."""
    return ContextLogger(logging.getLogger(name), task_id)


def setup_logging(
    log_level: str = "INFO",
    log_dir: Optional[Path] = None,
    use_colors: Optional[bool] = None,
) -> logging.Logger:
    """
    Configure the package logger.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_dir: If given, also write plain-text logs to ``log_dir/aristar.log``
        use_colors: Force ANSI colors on/off; defaults to whether stderr is a tty

    Returns:
        The configured package logger
    """
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(getattr(logging, log_level.upper()))

    # Close existing handlers before clearing (prevents file descriptor leak)
    for handler in logger.handlers[:]:
        handler.close()
        logger.removeHandler(handler)

    if use_colors is None:
        use_colors = hasattr(sys.stderr, "isatty") and sys.stderr.isatty()

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(AppLogFormatter(use_colors=use_colors))
    logger.addHandler(console_handler)

    if log_dir is not None:
        log_dir = Path(log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_dir / "aristar.log")
        file_handler.setFormatter(AppLogFormatter(use_colors=False))
        logger.addHandler(file_handler)

    logger.propagate = False
    return logger
