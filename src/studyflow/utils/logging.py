"""Logging setup for the studyflow command line.

Command results are written to stdout, so log records never go there.
The console handler writes to stderr and only shows warnings unless
debugging is on. Every record at the configured level also lands in a
rotating ``studyflow.log`` under ``~/.studyflow/logs``; set
``STUDYFLOW_LOG_DIR`` to move it.
"""

from __future__ import annotations

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

__all__ = ["LOG_FILE_NAME", "log_directory", "setup_logging", "current_log_file"]

LOG_FILE_NAME = "studyflow.log"
LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"
MAX_LOG_BYTES = 1_000_000
LOG_BACKUPS = 3
# chatty per-request loggers from the HTTP stack
LIBRARY_LOGGERS = ("asyncio", "httpx", "httpcore")

_log_file: Path | None = None


def log_directory() -> Path:
    override = os.environ.get("STUDYFLOW_LOG_DIR")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".studyflow" / "logs"


def setup_logging(debug: bool = False, *, reconfigure: bool = False) -> Path:
    """Install the stderr and log-file handlers; returns the log file path.

    Later calls are no-ops unless ``reconfigure`` is set, which lets the
    CLI switch to debug output once settings have been read.
    """

    global _log_file
    if _log_file is not None and not reconfigure:
        return _log_file

    directory = log_directory()
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / LOG_FILE_NAME
    level = logging.DEBUG if debug else logging.INFO
    formatter = logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    to_file = RotatingFileHandler(path, maxBytes=MAX_LOG_BYTES, backupCount=LOG_BACKUPS, encoding="utf-8")
    to_file.setFormatter(formatter)
    to_stderr = logging.StreamHandler(sys.stderr)
    to_stderr.setLevel(logging.DEBUG if debug else logging.WARNING)
    to_stderr.setFormatter(formatter)

    logging.basicConfig(level=level, handlers=[to_file, to_stderr], force=True)
    logging.captureWarnings(True)
    for name in LIBRARY_LOGGERS:
        logging.getLogger(name).setLevel(logging.INFO if debug else logging.WARNING)

    _log_file = path
    return path


def current_log_file() -> Path | None:
    return _log_file
