"""Explicit one-time logging setup for the nllsq package."""

import logging
import sys
import threading
from typing import Optional, TextIO

LOGGER_NAME = "nllsq"
DEFAULT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

_lock = threading.Lock()
_initialized = False


def initialize_logging(
    level: int = logging.INFO,
    stream: Optional[TextIO] = None,
    fmt: str = DEFAULT_FORMAT
) -> bool:
    """Attach a stream handler to the package logger.

    Nothing in the package calls this implicitly. Repeated calls are no-ops.

    Args:
        level: Level for the package logger
        stream: Output stream (stderr if None)
        fmt: Record format

    Returns:
        True if this call performed the initialization, False if it was already done
    """
    global _initialized

    with _lock:
        if _initialized:
            return False

        handler = logging.StreamHandler(stream or sys.stderr)
        handler.setFormatter(logging.Formatter(fmt))

        logger = logging.getLogger(LOGGER_NAME)
        logger.addHandler(handler)
        logger.setLevel(level)

        _initialized = True
        return True


def is_logging_initialized() -> bool:
    """Check whether initialize_logging() has run."""
    return _initialized
