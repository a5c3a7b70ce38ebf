"""Structured JSON logging for flowloop.

Every ``flowloop.*`` logger propagates to the package logger, which writes
one JSON object per line to .flowloop/flowloop.log (rotated at 5MB, 3 backups).
The MCP server passes ``tool``, ``args_data`` and ``duration_ms`` as ``extra``.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

PACKAGE_LOGGER = "flowloop"
LOG_FILENAME = "flowloop.log"
_setup_lock = threading.Lock()
_MAX_BYTES = 5 * 1024 * 1024  # 5MB
_BACKUP_COUNT = 3


class _JsonFormatter(logging.Formatter):
    """One JSON object per line; ``extra`` keys become top-level fields."""

    _EXTRA_KEYS = (("tool", "tool"), ("args_data", "args"), ("duration_ms", "duration_ms"), ("error", "error"))

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "ts": self.formatTime(record, datefmt="%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        entry.update({key: getattr(record, attr) for attr, key in self._EXTRA_KEYS if hasattr(record, attr)})
        if record.exc_info and record.exc_info[1]:
            entry["exception"] = str(record.exc_info[1])
        return json.dumps(entry, default=str)


def _drop_stale_handlers(logger: logging.Logger, keep: str) -> bool:
    """Close file handlers not writing to *keep*; True if one already does."""
    found = False
    for h in logger.handlers[:]:
        if not isinstance(h, RotatingFileHandler):
            continue
        if h.baseFilename == keep and not found:
            found = True
            continue
        logger.removeHandler(h)
        h.close()
    return found


def setup_logging(flowloop_dir: Path, *, level: int = logging.INFO) -> logging.Logger:
    """Attach a rotating JSONL handler for .flowloop/flowloop.log to the package logger.

    Calling again with the same directory is a no-op; a different directory
    replaces the previous handler.
    """
    logger = logging.getLogger(PACKAGE_LOGGER)
    log_path = flowloop_dir / LOG_FILENAME

    with _setup_lock:
        if not _drop_stale_handlers(logger, os.path.abspath(str(log_path))):
            handler = RotatingFileHandler(str(log_path), maxBytes=_MAX_BYTES, backupCount=_BACKUP_COUNT)
            handler.setFormatter(_JsonFormatter())
            logger.addHandler(handler)
        logger.setLevel(level)
    return logger
