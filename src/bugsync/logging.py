"""Structured JSON logging for bugsync.

Writes JSONL to .bugsync/bugsync.log with rotation (5MB, 3 backups).
"""

from __future__ import annotations

import json
import logging
import os
import threading
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

_LOG_FILENAME = "bugsync.log"
_setup_lock = threading.Lock()
_MAX_BYTES = 5 * 1024 * 1024
_BACKUP_COUNT = 3

# Structured fields copied from ``extra=`` onto the JSON entry when present.
_EXTRA_FIELDS = ("collection", "entity_id", "outcome", "duration_ms", "error")


class _JsonFormatter(logging.Formatter):
    """Format log records as single-line JSON."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "ts": self.formatTime(record, datefmt="%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for name in _EXTRA_FIELDS:
            if hasattr(record, name):
                entry[name] = getattr(record, name)
        if record.exc_info and record.exc_info[1]:
            entry["exception"] = str(record.exc_info[1])
        return json.dumps(entry, default=str)


def setup_logging(bugsync_dir: Path) -> logging.Logger:
    """Set up structured JSON logging to .bugsync/bugsync.log.

    Returns the package logger.  Calling again with the same directory is a
    no-op; a different directory replaces the previous file handler.
    """
    logger = logging.getLogger("bugsync")
    log_path = bugsync_dir / _LOG_FILENAME
    target_filename = os.path.abspath(str(log_path))

    with _setup_lock:
        for h in logger.handlers[:]:
            if not isinstance(h, RotatingFileHandler):
                continue
            if h.baseFilename == target_filename:
                return logger
            logger.removeHandler(h)
            h.close()

        handler = RotatingFileHandler(
            str(log_path),
            maxBytes=_MAX_BYTES,
            backupCount=_BACKUP_COUNT,
        )
        handler.setFormatter(_JsonFormatter())
        logger.addHandler(handler)
        logger.setLevel(logging.INFO)
    return logger
