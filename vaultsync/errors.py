"""
Error taxonomy and error logging for vaultsync.

Network, malformed-response and timeout failures are caught at the data
access boundary and surface as failed Results, never as exceptions.
SyncError is what executor tasks raise and what ``on_error`` receives.
The CLI logs full stack traces to a file while showing clean messages.
"""

import os
import traceback
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path


class ErrorKind(Enum):
    """Why an operation did not complete."""
    NETWORK_FAILURE = "network_failure"
    MALFORMED_RESPONSE = "malformed_response"
    TIMEOUT = "timeout"
    PARTIAL_FAILURE = "partial_failure"
    SUPERSEDED = "superseded"


class SyncError(Exception):
    """An operation failed with a known ErrorKind."""

    def __init__(self, kind: ErrorKind, message: str = ""):
        self.kind = kind
        self.message = message or kind.value.replace("_", " ")
        super().__init__(self.message)

    def __repr__(self) -> str:
        return f"SyncError({self.kind.name}, {self.message!r})"


class ConfigError(ValueError):
    """Configuration is missing or invalid."""


def _error_log_path() -> Path:
    """Resolve error log path, respecting VAULTSYNC_HOME."""
    home = os.environ.get("VAULTSYNC_HOME")
    if home:
        return Path(home) / "vaultsync-errors.log"
    return Path.home() / ".vaultsync" / "vaultsync-errors.log"


def log_exception(exc: Exception, context: str = "") -> Path:
    """
    Log exception with full traceback to file.

    Args:
        exc: The exception that occurred
        context: Optional context string (e.g., command name)

    Returns:
        Path to the error log file
    """
    log_path = _error_log_path()
    timestamp = datetime.now(timezone.utc).isoformat()
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(log_path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o600)
        with os.fdopen(fd, "a") as f:
            f.write(f"\n{'='*60}\n")
            f.write(f"[{timestamp}]")
            if context:
                f.write(f" {context}")
            f.write("\n")
            f.write("".join(traceback.format_exception(type(exc), exc, exc.__traceback__)))
    except OSError:
        pass  # Best effort: never crash over the error log
    return log_path
