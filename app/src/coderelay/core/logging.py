"""
Coderelay Logging — one line per event, tagged with request and session.

Two output formats, picked by CODERELAY_LOG_FORMAT:
- text (default): colorized when attached to a TTY,
  ``12:00:01 [coderelay.query.executor] INFO: Query started … (session=1a2b3c4d req=9f8e7d6c)``
- json: one object per line for log aggregation

Every record passes through asgi-correlation-id's CorrelationIdFilter,
so lines emitted while serving a request carry its X-Request-ID.

Structured log extra fields (pass via logger.info(..., extra={...})):
    session_id, upstream_id, sequence, duration_ms, reason, status
"""

from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import TextIO

from asgi_correlation_id import CorrelationIdFilter

_LEVEL_COLORS = {
    "DEBUG": "\033[36m",
    "INFO": "\033[32m",
    "WARNING": "\033[33m",
    "ERROR": "\033[31m",
    "CRITICAL": "\033[1;31m",
}
_DIM = "\033[2m"
_RESET = "\033[0m"

# Extras copied to the top level of JSON lines
_STRUCTURED_FIELDS = (
    "session_id",
    "upstream_id",
    "sequence",
    "duration_ms",
    "reason",
    "status",
)

# Third-party loggers that only matter at WARNING and above
_QUIET_LOGGERS = ("httpx", "httpcore", "aiosqlite", "asyncio", "uvicorn.access")


def _tags(record: logging.LogRecord) -> str:
    parts = []
    session_id = getattr(record, "session_id", None)
    if session_id:
        parts.append(f"session={str(session_id)[:8]}")
    request_id = getattr(record, "correlation_id", None)
    if request_id:
        parts.append(f"req={request_id}")
    return f" ({' '.join(parts)})" if parts else ""


class RelayFormatter(logging.Formatter):
    """Human-readable lines; color only touches the level and logger name."""

    def __init__(self, use_color: bool = False):
        super().__init__(
            fmt="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
            datefmt="%H:%M:%S",
        )
        self.use_color = use_color

    def formatMessage(self, record: logging.LogRecord) -> str:
        if not self.use_color:
            return super().formatMessage(record) + _tags(record)

        level, name = record.levelname, record.name
        record.levelname = f"{_LEVEL_COLORS.get(level, '')}{level}{_RESET}"
        record.name = f"{_DIM}{name}{_RESET}"
        try:
            line = super().formatMessage(record)
        finally:
            record.levelname, record.name = level, name
        return line + f"{_DIM}{_tags(record)}{_RESET}"


class StructuredFormatter(logging.Formatter):
    """JSON lines. Enable with CODERELAY_LOG_FORMAT=json."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }

        request_id = getattr(record, "correlation_id", None)
        if request_id:
            entry["request_id"] = request_id

        for key in _STRUCTURED_FIELDS:
            if hasattr(record, key):
                entry[key] = getattr(record, key)

        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


def _use_color(stream: TextIO) -> bool:
    setting = os.getenv("CODERELAY_LOG_COLOR", "auto").lower()
    if setting in ("true", "false"):
        return setting == "true"
    return hasattr(stream, "isatty") and stream.isatty()


def setup_logging(stream: TextIO | None = None) -> None:
    """Configure the root logger once, at process start.

    Env vars:
        CODERELAY_LOG_LEVEL  — DEBUG / INFO / WARNING / ERROR (default: INFO)
        CODERELAY_LOG_COLOR  — true / false / auto (default: auto)
        CODERELAY_LOG_FORMAT — text / json (default: text)
    """
    stream = stream or sys.stdout
    level_name = os.getenv("CODERELAY_LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    json_lines = os.getenv("CODERELAY_LOG_FORMAT", "text").lower() == "json"

    handler = logging.StreamHandler(stream)
    handler.setLevel(level)
    handler.addFilter(CorrelationIdFilter(uuid_length=8))
    handler.setFormatter(StructuredFormatter() if json_lines else RelayFormatter(_use_color(stream)))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    logging.getLogger("uvicorn.error").setLevel(level)

    logging.getLogger("coderelay").debug(
        "Logging configured (level=%s, format=%s)", level_name, "json" if json_lines else "text"
    )
