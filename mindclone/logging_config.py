"""
Logging setup for the CLI.

Library loggers are quiet by default. ``--verbose`` (or MINDCLONE_VERBOSE=1)
sends everything to stderr. Each session also writes mindclone's own INFO
records to a rotating log inside the store directory.
"""

import logging
import sys
import warnings
from logging.handlers import RotatingFileHandler
from pathlib import Path

APP_LOGGER = "mindclone"
OPS_LOG_FILENAME = "mindclone-ops.log"
OPS_LOG_MAX_BYTES = 1_000_000
OPS_LOG_BACKUPS = 3

# HTTP and model-client libraries that log every request
LIBRARY_LOGGERS = ("httpx", "httpcore", "google_genai", "anthropic", "openai")

_DEBUG_HANDLER_NAME = "mindclone-debug"


def configure_quiet_mode(quiet: bool = True) -> None:
    """Raise library loggers to ERROR and hide warnings. No-op when ``quiet`` is False."""
    if not quiet:
        return
    warnings.filterwarnings("ignore")
    for name in LIBRARY_LOGGERS:
        logging.getLogger(name).setLevel(logging.ERROR)


def enable_debug_mode() -> None:
    """Log everything, mindclone and libraries alike, to stderr."""
    warnings.filterwarnings("default")
    root = logging.getLogger()
    root.setLevel(logging.DEBUG)

    if not any(h.get_name() == _DEBUG_HANDLER_NAME for h in root.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.set_name(_DEBUG_HANDLER_NAME)
        handler.setLevel(logging.DEBUG)
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)-7s %(name)s: %(message)s",
            datefmt="%H:%M:%S",
        ))
        root.addHandler(handler)

    for name in (APP_LOGGER,) + LIBRARY_LOGGERS:
        logging.getLogger(name).setLevel(logging.DEBUG)


def configure_ops_log(store_path) -> RotatingFileHandler:
    """
    Attach the store's operations log to the mindclone logger.

    Captures INFO and above (captures, updates, AI failures) whatever the
    verbosity. The caller removes it with ``remove_ops_log`` when the
    session ends.
    """
    store_path = Path(store_path)
    store_path.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        str(store_path / OPS_LOG_FILENAME),
        maxBytes=OPS_LOG_MAX_BYTES,
        backupCount=OPS_LOG_BACKUPS,
        encoding="utf-8",
    )
    handler.setLevel(logging.INFO)
    handler.setFormatter(logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    ))

    app_logger = logging.getLogger(APP_LOGGER)
    app_logger.addHandler(handler)
    if app_logger.level == logging.NOTSET or app_logger.level > logging.INFO:
        app_logger.setLevel(logging.INFO)
    return handler


def remove_ops_log(handler: logging.Handler) -> None:
    logging.getLogger(APP_LOGGER).removeHandler(handler)
    handler.close()
