"""Centralized logging configuration for duckgate.

Console (text or JSON) output, with an optional log file.

Usage:
    from duckgate.core.logging_config import configure_logging

    # Configure once at application startup
    configure_logging(level="DEBUG", format="json")

Environment Variables:
    DUCKGATE_LOG_LEVEL: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    DUCKGATE_LOG_FORMAT: Output format ("text" or "json")
    DUCKGATE_LOG_FILE: Optional log file path
"""

from __future__ import annotations

import json
import logging
import os
import re
import sys
from datetime import datetime
from typing import Any, Literal

TEXT_FORMAT = "%(asctime)s.%(msecs)03d - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Third-party loggers that are too chatty at INFO
NOISY_LOGGERS = ("aiohttp.access", "aiohttp.client", "aiohttp.server")

# Gateway log lines start with "[<trace_id>] "
_TRACE_PREFIX = re.compile(r"^\[([^\]\s]+)\]\s+")

_STANDARD_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", None, None).__dict__.keys() | {"message", "taskName"}
)

_configured = False


class JsonFormatter(logging.Formatter):
    """One JSON object per line, with the request trace id as its own field.

    {"timestamp": "2025-06-01T14:30:00.123000", "level": "INFO",
     "logger": "duckgate.gateway.service", "trace_id": "00001_143000_1msgs_Hello",
     "message": "Request: model=gpt-4o-mini, messages=1, tools=False, stream=False"}
    """

    def format(self, record: logging.LogRecord) -> str:
        message = record.getMessage()
        trace = _TRACE_PREFIX.match(message)

        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "logger": record.name,
        }
        if trace:
            entry["trace_id"] = trace.group(1)
        entry["message"] = message[trace.end() :] if trace else message

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        extra = {k: v for k, v in vars(record).items() if k not in _STANDARD_ATTRS}
        if extra:
            entry["extra"] = extra
        return json.dumps(entry, default=str)


def build_formatter(output: str) -> logging.Formatter:
    """Formatter for `output` ("json" or anything else for text)."""
    if output == "json":
        return JsonFormatter()
    return logging.Formatter(TEXT_FORMAT, datefmt=DATE_FORMAT)


def configure_logging(
    level: str | None = None,
    format: Literal["text", "json"] | None = None,
    file_path: str | None = None,
    force: bool = False,
) -> None:
    """Install gateway log handlers on the root logger.

    Only the first call takes effect unless `force` is set. Arguments win over
    DUCKGATE_LOG_LEVEL, DUCKGATE_LOG_FORMAT and DUCKGATE_LOG_FILE.
    """
    global _configured
    if _configured and not force:
        return

    level_name = (level or os.environ.get("DUCKGATE_LOG_LEVEL") or "INFO").upper()
    output = format or os.environ.get("DUCKGATE_LOG_FORMAT") or "text"
    log_file = file_path or os.environ.get("DUCKGATE_LOG_FILE")

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))

    formatter = build_formatter(output)
    for handler in handlers:
        handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers[:] = handlers
    root.setLevel(logging.getLevelName(level_name))

    # aiohttp access and client logs drown out request traces below DEBUG
    quiet = logging.WARNING if level_name != "DEBUG" else logging.NOTSET
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(quiet)

    _configured = True
