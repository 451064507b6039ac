"""
Lotline - Logging Configuration

Structured logging on top of the standard library ``logging`` module.

- ``LOG_FORMAT=json`` (default) emits one JSON object per line, including any
  ``extra={...}`` fields passed at the call site.
- ``LOG_FORMAT=text`` emits a human-readable line for local development.

Usage:
    from lotline.logging_config import get_logger

    logger = get_logger(__name__)
    logger.warning("Store unavailable", extra={"job_id": job_id, "degraded": True})
"""
import json
import logging
import sys
from datetime import datetime, timezone
from typing import Optional

from lotline.core.config import settings

# Attributes present on every LogRecord; anything else came from ``extra=``
_RESERVED_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__.keys()
) | {"message", "asctime", "taskName"}


class JSONFormatter(logging.Formatter):
    """Render log records as single-line JSON documents."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS and not key.startswith("_"):
                payload[key] = value
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class TextFormatter(logging.Formatter):
    """Readable single-line format that still shows ``extra`` fields."""

    def __init__(self):
        super().__init__("%(asctime)s %(levelname)-8s %(name)s: %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        extras = {
            k: v for k, v in record.__dict__.items()
            if k not in _RESERVED_ATTRS and not k.startswith("_")
        }
        if extras:
            line += " " + " ".join(f"{k}={v}" for k, v in sorted(extras.items()))
        return line


_configured = False


def setup_logging(level: Optional[str] = None, log_format: Optional[str] = None) -> None:
    """
    Configure the root logger once per process.

    Args:
        level: Overrides settings.LOG_LEVEL
        log_format: Overrides settings.LOG_FORMAT ("json" or "text")
    """
    global _configured
    if _configured:
        return

    level = (level or settings.LOG_LEVEL).upper()
    log_format = (log_format or settings.LOG_FORMAT).lower()
    formatter = JSONFormatter() if log_format == "json" else TextFormatter()

    handlers = []
    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(formatter)
    handlers.append(stream_handler)

    if settings.LOG_FILE:
        file_handler = logging.FileHandler(settings.LOG_FILE, encoding="utf-8")
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    root = logging.getLogger()
    root.setLevel(level)
    for handler in list(root.handlers):
        root.removeHandler(handler)
    for handler in handlers:
        root.addHandler(handler)

    # SQLAlchemy engine logging is controlled by echo=, keep it quiet here
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    _configured = True


def get_logger(name: str) -> logging.Logger:
    """Return a module logger. Configuration happens in setup_logging()."""
    return logging.getLogger(name)
