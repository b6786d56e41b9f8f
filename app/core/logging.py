"""Logging configuration for exam-service.

Two output modes, picked by LOG_JSON:

  _ContainerFormatter: one human-readable line per record, for local
    development and `docker compose logs`.

  _JsonFormatter: one JSON object per line, for log aggregation.
    Request context (request_id, method, path, ...) and grading context
    (attempt_id, exam_id) become top-level keys so they can be filtered
    on directly instead of being grepped out of the message.
"""

from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar

# Set per request by RequestContextMiddleware; None outside a request.
request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)
attempt_id_var: ContextVar[str | None] = ContextVar("attempt_id", default=None)
_CONTEXT_VARS = (("request_id", request_id_var), ("attempt_id", attempt_id_var))


class _RequestContextFilter(logging.Filter):
    """Copy the current request and attempt ids onto every record.

    Attached to the handler, not a logger, so records propagated up from
    child loggers pass through it too. Values given via `extra=` win.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        for key, var in _CONTEXT_VARS:
            value = var.get()
            if value is not None and getattr(record, key, None) is None:
                setattr(record, key, value)
        return True


class _ContainerFormatter(logging.Formatter):
    """Single-line formatter tuned for container stdout.

    WARNING and above get a [filename:lineno] suffix.
    """

    _BASE_FMT = "%(asctime)s %(levelname)-8s %(name)s  %(message)s"
    _LOC_SUFFIX = "  [%(filename)s:%(lineno)d]"

    def __init__(self) -> None:
        super().__init__(datefmt="%Y-%m-%dT%H:%M:%S%z")

    def formatTime(self, record: logging.LogRecord, datefmt: str | None = None) -> str:
        base = super().formatTime(record, datefmt)
        ms = int(record.msecs)
        # .NNN goes before the +0000 offset
        return f"{base[:-5]}.{ms:03d}{base[-5:]}"

    def format(self, record: logging.LogRecord) -> str:
        if record.levelno >= logging.WARNING:
            self._style._fmt = self._BASE_FMT + self._LOC_SUFFIX
        else:
            self._style._fmt = self._BASE_FMT
        return super().format(record)


class _JsonFormatter(logging.Formatter):
    """JSON Lines formatter.

    Only the whitelisted context fields are copied from the record, so
    arbitrary `extra=` payloads never leak into the output.
    """

    _CONTEXT_FIELDS = (
        "request_id",
        "method",
        "path",
        "user_id",
        "status_code",
        "duration_ms",
        "attempt_id",
        "exam_id",
    )

    def __init__(self) -> None:
        super().__init__(datefmt="%Y-%m-%dT%H:%M:%S%z")

    def format(self, record: logging.LogRecord) -> str:
        log_entry: dict[str, object] = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for key in self._CONTEXT_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                log_entry[key] = value

        if record.exc_info and record.exc_info[0] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


def setup_logging(level_name: str, *, json_format: bool = False) -> None:
    """Configure the root logger to write to stdout.

    Args:
        level_name: debug/info/warning/error; unknown names fall back to info.
        json_format: emit JSON lines instead of the container format.
    """
    level = getattr(logging, level_name.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(_JsonFormatter() if json_format else _ContainerFormatter())
    handler.addFilter(_RequestContextFilter())

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()
    root.addHandler(handler)

    # SQL echo and server access logs stay at WARNING unless asked for louder
    for name in (
        "uvicorn",
        "uvicorn.access",
        "uvicorn.error",
        "httpcore",
        "httpx",
        "sqlalchemy.engine",
        "asyncpg",
    ):
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
