"""
Logging configuration for memokeep.

Library code only creates module loggers; handlers are attached here,
by the CLI or by an embedding application.
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path


def configure_quiet_mode(quiet: bool = True):
    """Keep HTTP client chatter out of the console unless verbose."""
    level = logging.WARNING if quiet else logging.DEBUG
    for name in ("httpx", "httpcore"):
        logging.getLogger(name).setLevel(level)


def enable_debug_mode():
    """Enable debug-level logging to stderr."""
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    # Add stderr handler if not already present
    if not any(isinstance(h, logging.StreamHandler) and h.stream == sys.stderr
               for h in root_logger.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setLevel(logging.DEBUG)
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s: %(message)s",
            datefmt="%H:%M:%S"
        ))
        root_logger.addHandler(handler)

    logging.getLogger("memokeep").setLevel(logging.DEBUG)
    configure_quiet_mode(False)


def verbose_from_env() -> bool:
    """True if MEMOKEEP_VERBOSE is set to a truthy value."""
    return os.environ.get("MEMOKEEP_VERBOSE", "").lower() in ("1", "true", "yes")


def configure_ops_log(store_path):
    """Configure a persistent operations log for a memokeep store.

    Writes to {store_path}/memokeep-ops.log using a rotating file handler
    (1MB max, 3 backups). Always active regardless of --verbose.
    Returns the handler so it can be removed on close().
    """
    log_path = Path(store_path) / "memokeep-ops.log"
    log_path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        str(log_path),
        maxBytes=1_000_000,
        backupCount=3,
    )
    handler.setLevel(logging.INFO)
    handler.setFormatter(logging.Formatter(
        "%(asctime)s %(levelname)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    ))

    memokeep_logger = logging.getLogger("memokeep")
    memokeep_logger.addHandler(handler)
    # Ensure memokeep logger allows INFO through even in quiet mode
    if memokeep_logger.level == logging.NOTSET or memokeep_logger.level > logging.INFO:
        memokeep_logger.setLevel(logging.INFO)

    return handler
