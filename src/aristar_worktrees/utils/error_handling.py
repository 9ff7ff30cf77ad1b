"""Error handling helpers for best-effort cleanup paths."""

import logging
from typing import Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar('T')


def log_and_ignore(
    error: Exception,
    message: str,
    *,
    logger_instance: Optional[logging.Logger] = None,
    level: int = logging.WARNING,
) -> None:
    """
    Log an error and ignore it (don't re-raise).

    Only for secondary cleanup steps whose failure must not abort the
    primary operation.

    Args:
        error: Exception to log
        message: Context message to log
        logger_instance: Logger to use (defaults to module logger)
        level: Log level (default: WARNING)
    """
    log = logger_instance or logger
    log.log(level, f"{message}: {error}")


def best_effort(
    func: Callable[..., T],
    *args,
    error_message: str = "Best-effort step failed",
    logger_instance: Optional[logging.Logger] = None,
    **kwargs,
) -> Optional[T]:
    """
    Call ``func``, logging and swallowing any ``Exception`` it raises.

    Returns:
        Function result on success, None on error
    """
    try:
        return func(*args, **kwargs)
    except Exception as e:
        log_and_ignore(e, error_message, logger_instance=logger_instance)
        return None
