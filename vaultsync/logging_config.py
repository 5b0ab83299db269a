"""
Logging configuration for vaultsync.

Library modules only create loggers. The CLI decides where output goes:
quiet by default, debug to stderr on request, and a persistent
operations log in the state directory.
"""

import logging
import os
import sys
import warnings
from logging.handlers import RotatingFileHandler
from pathlib import Path

# HTTP client libraries log every request at INFO/DEBUG
_NOISY_LOGGERS = ("httpx", "httpcore")


def configure_quiet_mode(quiet: bool = True):
    """
    Suppress verbose library output.

    Args:
        quiet: If True, suppress verbose output. If False, show everything.
    """
    level = logging.WARNING if quiet else logging.NOTSET
    if quiet:
        warnings.filterwarnings("ignore", category=DeprecationWarning)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(level)


def enable_debug_mode():
    """Enable debug-level logging to stderr."""
    warnings.filterwarnings("default")

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    # Add stderr handler if not already present
    if not any(isinstance(h, logging.StreamHandler) and getattr(h, "stream", None) is sys.stderr
               for h in root_logger.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setLevel(logging.DEBUG)
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s: %(message)s",
            datefmt="%H:%M:%S"
        ))
        root_logger.addHandler(handler)

    for name in ("vaultsync", *_NOISY_LOGGERS):
        logging.getLogger(name).setLevel(logging.DEBUG)


def configure_ops_log(home) -> RotatingFileHandler:
    """Configure a persistent operations log in the state directory.

    Writes to {home}/vaultsync-ops.log using a rotating file handler
    (1MB max, 3 backups). Migrations, journaled pointers and soft-delete
    skips all land here. Returns the handler so it can be removed.
    """
    log_path = Path(home) / "vaultsync-ops.log"
    pkg_logger = logging.getLogger("vaultsync")
    for existing in pkg_logger.handlers:
        if isinstance(existing, RotatingFileHandler) and \
                existing.baseFilename == os.path.abspath(log_path):
            return existing

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

    pkg_logger.addHandler(handler)
    if pkg_logger.level == logging.NOTSET or pkg_logger.level > logging.INFO:
        pkg_logger.setLevel(logging.INFO)

    return handler
