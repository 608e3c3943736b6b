"""SYNCWARD — Structured JSON Logging."""

import logging
import json
import sys
from datetime import datetime, timezone
from syncward.config import settings

# Structured fields copied from `extra=` into the JSON line
EXTRA_FIELDS = (
    "tenant_id",
    "connection_id",
    "run_id",
    "job_id",
    "attempt",
    "duration_ms",
    "status_code",
    "rows_written",
)


class JSONFormatter(logging.Formatter):
    """Produces structured JSON log lines for production observability."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)
        for key in EXTRA_FIELDS:
            if hasattr(record, key):
                log_entry[key] = getattr(record, key)
        return json.dumps(log_entry, default=str)


def get_logger(name: str) -> logging.Logger:
    """Return a named logger with structured JSON handler."""
    logger = logging.getLogger(f"syncward.{name}")
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(JSONFormatter())
        logger.addHandler(handler)
    logger.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))
    return logger
