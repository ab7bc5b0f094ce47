"""
Exceptions and error logging for pluqqy.

Logs full stack traces for debugging while showing clean messages to users.
"""

import os
import traceback
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional


class PluqqyError(Exception):
    """Base class for all pluqqy errors."""


class ParseError(PluqqyError, ValueError):
    """A search query could not be parsed.

    Carries the offending token and its character offset in the query
    so callers can point at the problem.
    """

    def __init__(self, message: str, token: str = "", position: int = -1):
        super().__init__(message)
        self.message = message
        self.token = token
        self.position = position

    def __str__(self) -> str:
        if self.position >= 0 and self.token:
            return f"{self.message} (at {self.position}: {self.token!r})"
        return self.message


class LibraryError(PluqqyError):
    """The library store could not complete an operation."""


class LoadError(LibraryError):
    """A single component or pipeline file could not be loaded."""

    def __init__(self, path: str, reason: str):
        super().__init__(f"{path}: {reason}")
        self.path = path
        self.reason = reason


class InternalError(PluqqyError):
    """The search index is in an inconsistent state."""


def _error_log_path(root: Optional[Path] = None) -> Path:
    """Resolve error log path, respecting PLUQQY_ROOT."""
    if root is None:
        env_root = os.environ.get("PLUQQY_ROOT")
        if env_root:
            root = Path(env_root)
    if root is not None and (root / ".pluqqy").is_dir():
        return root / ".pluqqy" / "pluqqy-errors.log"
    return Path.home() / ".pluqqy" / "pluqqy-errors.log"


def log_exception(exc: Exception, context: str = "", root: Optional[Path] = None) -> Path:
    """
    Log exception with full traceback to file.

    Args:
        exc: The exception that occurred
        context: Optional context string (e.g., command name)
        root: Project directory holding the .pluqqy library, if known

    Returns:
        Path to the error log file
    """
    log_path = _error_log_path(root)
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
        pass  # Can't write error log, don't crash over it
    return log_path
