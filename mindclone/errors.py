"""
Error logging for the mindclone CLI.

Full tracebacks go to ``mindclone-errors.log`` in the store directory;
the user sees one line.
"""

import os
import sqlite3
import sys
import traceback
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from .memory_store import StoreError
from .providers.base import InferenceError

ERROR_LOG_FILENAME = "mindclone-errors.log"


def error_log_path(store_path: Optional[Path] = None) -> Path:
    """Error log location: the given store, else MINDCLONE_STORE_PATH, else ~/.mindclone."""
    if store_path is not None:
        return Path(store_path) / ERROR_LOG_FILENAME
    env_path = os.environ.get("MINDCLONE_STORE_PATH")
    if env_path:
        return Path(env_path).expanduser() / ERROR_LOG_FILENAME
    return Path.home() / ".mindclone" / ERROR_LOG_FILENAME


def user_message(exc: BaseException) -> str:
    """One-line description of a failure for the terminal."""
    if isinstance(exc, sqlite3.DatabaseError) and "locked" in str(exc):
        return "the memory database is busy; try again in a moment"
    if isinstance(exc, (StoreError, sqlite3.Error)):
        return f"memory database error: {exc}"
    if isinstance(exc, InferenceError):
        return f"model call failed: {exc}"
    return str(exc) or type(exc).__name__


def log_exception(
    exc: BaseException,
    context: str = "",
    store_path: Optional[Path] = None,
) -> Path:
    """
    Append an exception with its traceback and the command line to the error log.

    Returns:
        Path to the error log file
    """
    log_path = error_log_path(store_path)
    timestamp = datetime.now(timezone.utc).isoformat()
    header = f"[{timestamp}]" + (f" {context}" if context else "")
    record = [
        "=" * 60,
        header,
        "argv: " + " ".join(sys.argv),
        "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
    ]
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(log_path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o600)
        with os.fdopen(fd, "a") as f:
            f.write("\n" + "\n".join(record))
    except OSError:
        pass  # Unwritable log must not mask the original error
    return log_path
