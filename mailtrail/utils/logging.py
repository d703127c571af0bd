"""
Structured JSON logging with correlation IDs.

One JSON object per line: timestamp, level, logger, correlation_id, message,
optional exception, plus every field passed through ``extra=``. Pipeline code
tags lines with the notification they concern (message_id, event_type,
queue_message_id, receiver, ...) via event_fields().

Correlation IDs scope one HTTP request (middleware) or one queue batch
(correlation_scope) and live in a ContextVar, so concurrent message tasks of
a batch share the batch's id.
"""
import json
import logging
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Iterator, Optional

correlation_id_ctx: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Attributes every LogRecord has; anything else on a record came from extra=
_RESERVED_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {
    "message", "asctime", "taskName",
}

NOISY_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "httpcore", "httpx")


def get_correlation_id() -> Optional[str]:
    return correlation_id_ctx.get()


def set_correlation_id(cid: str) -> None:
    correlation_id_ctx.set(cid)


def generate_correlation_id() -> str:
    """UUID4 hex, 32 chars."""
    return uuid.uuid4().hex


@contextmanager
def correlation_scope(cid: Optional[str] = None) -> Iterator[str]:
    """Run a block under its own correlation ID, restoring the outer one afterwards."""
    cid = cid or generate_correlation_id()
    token = correlation_id_ctx.set(cid)
    try:
        yield cid
    finally:
        correlation_id_ctx.reset(token)


def event_fields(event=None, **fields) -> dict:
    """extra= dict for a log line about one notification. None values are dropped."""
    if event is not None:
        fields.setdefault("message_id", event.message_id)
        fields.setdefault("event_type", event.event_type)
        fields.setdefault("account_id", event.account_id)
    return {k: v for k, v in fields.items() if v is not None}


class StructuredJsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc)
            .strftime("%Y-%m-%dT%H:%M:%S.%fZ"),
            "level": record.levelname,
            "logger": record.name,
            "correlation_id": get_correlation_id(),
            "message": record.getMessage(),
        }
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)

        for key, value in vars(record).items():
            if key not in _RESERVED_ATTRS and not key.startswith("_"):
                entry[key] = value

        return json.dumps(entry, default=str)


def configure_structured_logging(log_level: str = "INFO") -> None:
    """Install a single JSON stdout handler on the root logger."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, log_level.upper(), logging.INFO))
    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(StructuredJsonFormatter())
    root.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
