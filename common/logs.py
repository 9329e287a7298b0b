"""Logging setup for chattr.

Diagnostics use the standard logging module under the "chattr" logger.
They go to a log file when one is configured, otherwise to stderr only when
stderr is a real console, so they never end up inside a piped transcript.
Chat traffic itself is shown through the console, not logged.
"""

import logging
import os
import sys
from typing import Optional

logger = logging.getLogger("chattr")
logger.addHandler(logging.NullHandler())

_initialized = False

# Map --verbose=N to log levels
_VERBOSITY_MAP = {
    0: logging.ERROR,
    1: logging.WARNING,
    2: logging.INFO,
    3: logging.DEBUG,
}


def setup_logging(verbose: int = 1, log_file: Optional[str] = None) -> None:
    """Initialize logging once; later calls are no-ops."""
    global _initialized
    if _initialized:
        return
    _initialized = True

    level = _VERBOSITY_MAP.get(verbose, logging.DEBUG if verbose > 3 else logging.ERROR)
    logger.setLevel(level)

    formatter = logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s", datefmt="%H:%M:%S")

    if log_file:
        log_file = os.path.expanduser(log_file)
        try:
            handler = logging.FileHandler(log_file, mode="a", encoding="utf-8")
        except OSError as e:
            if sys.stderr.isatty():
                print(f"[chattr] Failed to open log file: {e}", file=sys.stderr)
                _add_stderr_handler(formatter, level)
            return
        handler.setLevel(level)
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    elif sys.stderr.isatty():
        _add_stderr_handler(formatter, level)


def _add_stderr_handler(formatter: logging.Formatter, level: int) -> None:
    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(formatter)
    logger.addHandler(handler)


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Return the chattr logger, or a child of it (e.g. "session")."""
    if name:
        return logger.getChild(name)
    return logger
