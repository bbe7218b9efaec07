"""Cadence: Structured JSON Logging.

Every module logs through a child of the ``cadence`` logger; only that root
carries a handler, so each record is written once as a JSON line.
"""

import json
import logging
import sys
from datetime import datetime, timezone

from cadence.config import settings

ROOT_LOGGER = "cadence"

# Context a caller may pass through ``extra=``
EXTRA_FIELDS = ("metric_id", "time_window", "duration_ms", "status", "provider")


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(
            {key: getattr(record, key) for key in EXTRA_FIELDS if hasattr(record, key)}
        )
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def _root() -> logging.Logger:
    root = logging.getLogger(ROOT_LOGGER)
    if not root.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(JSONFormatter())
        root.addHandler(handler)
        root.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))
    return root


def get_logger(name: str) -> logging.Logger:
    """``cadence.<name>``, writing JSON lines through the shared root handler."""
    _root()
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")
