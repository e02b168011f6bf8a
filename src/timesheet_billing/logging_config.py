"""Logging setup for the service process."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone

from timesheet_billing.config import get_settings

_STANDARD_ATTRS = {
    "name", "msg", "args", "levelname", "levelno", "pathname", "filename", "module",
    "exc_info", "exc_text", "stack_info", "lineno", "funcName", "created", "msecs",
    "relativeCreated", "thread", "threadName", "processName", "process", "taskName",
}


class JsonFormatter(logging.Formatter):
    """One JSON object per record, with any extra= fields under "extra"."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        extras = {k: v for k, v in record.__dict__.items() if k not in _STANDARD_ATTRS}
        if extras:
            payload["extra"] = extras
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def configure_logging(level: str | None = None) -> None:
    """Route the root logger through the JSON formatter."""
    level = (level or get_settings().log_level).upper()
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format="%(message)s")
    for handler in logging.getLogger().handlers:
        handler.setFormatter(JsonFormatter())
