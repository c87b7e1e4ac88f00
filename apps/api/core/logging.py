"""
Logging setup for the plan-adaptation service.

JSON lines in production (or LOG_FORMAT=json), plain text locally. Domain
events (trigger created, proposal applied, batch results, transaction
retries) go through `log_event`, which attaches their fields as
`extra_fields`; both formatters render them.
"""
import json
import logging
import sys
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict
from uuid import UUID

from core.config import settings

SERVICE_NAME = "plan-adaptation-api"


def _plain(value: Any) -> Any:
    """Make event field values JSON friendly (ids, timestamps, enums, sets)."""
    if isinstance(value, (UUID, Enum)):
        return str(value.value if isinstance(value, Enum) else value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (set, frozenset, tuple)):
        return [_plain(v) for v in value]
    if isinstance(value, list):
        return [_plain(v) for v in value]
    if isinstance(value, dict):
        return {str(k): _plain(v) for k, v in value.items()}
    return value


class JSONFormatter(logging.Formatter):
    """One JSON object per record, with any `extra_fields` merged in."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "service": SERVICE_NAME,
            "environment": settings.ENVIRONMENT,
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        extra = getattr(record, "extra_fields", None)
        if isinstance(extra, dict):
            log_data.update(_plain(extra))

        return json.dumps(log_data, default=str)


class TextFormatter(logging.Formatter):
    """Human-readable lines; event fields are appended as key=value."""

    def __init__(self):
        super().__init__("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        extra = getattr(record, "extra_fields", None)
        if isinstance(extra, dict):
            fields = " ".join(f"{k}={_plain(v)}" for k, v in extra.items() if k != "event")
            if fields:
                line = f"{line} [{fields}]"
        return line


def setup_logging():
    """
    Configure the root logger once at startup.

    Uses JSON format in production, text format in development.
    """
    log_level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)

    if settings.LOG_FORMAT == "json" or settings.ENVIRONMENT == "production":
        formatter: logging.Formatter = JSONFormatter()
    else:
        formatter = TextFormatter()

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    for noisy in ("sqlalchemy.engine", "httpx", "openai"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    return root_logger


def log_event(logger: logging.Logger, event: str, **fields: Any) -> None:
    """Emit a structured domain event at INFO; the message is the event name."""
    logger.info(event, extra={"extra_fields": {"event": event, **_plain(fields)}})
