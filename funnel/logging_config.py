"""JSON log lines for the funnel engine.

Correlation keys found in a record's context (order code, conversation, scheduled
event) are lifted to the top level so one order can be followed across webhooks,
timers and deliveries.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, TextIO

CORRELATION_KEYS = ("order_code", "conversation_id", "event_id")

QUIET_LOGGERS = ("httpx", "httpcore", "uvicorn.access", "sqlalchemy.engine")


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        context = getattr(record, "context", None)
        if context:
            for key in CORRELATION_KEYS:
                if context.get(key) is not None:
                    entry[key] = context[key]
            entry["context"] = context

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, ensure_ascii=False, default=str)


def setup_logging(level: str = "INFO", stream: TextIO = sys.stdout) -> None:
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler(stream)
    handler.setFormatter(JSONFormatter())
    root.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"funnel.{name}")


class LoggerAdapter(logging.LoggerAdapter):
    """Binds fixed context (order, phone) to a logger.

    Call sites pass per-message detail as ``context={...}``; it is merged over the
    bound context into the record's ``context`` attribute.
    """

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        bound = {key: value for key, value in (self.extra or {}).items() if value is not None}
        context = {**bound, **(kwargs.pop("context", None) or {})}
        if context:
            kwargs["extra"] = {**kwargs.get("extra", {}), "context": context}
        return msg, kwargs

    def bind(self, **extra) -> "LoggerAdapter":
        return LoggerAdapter(self.logger, {**(self.extra or {}), **extra})
