"""Centralized logging configuration for vigil.

The daemon logs through the standard library. This module configures the
root logger once, with either a text or a JSON formatter.

Usage:
    from vigil.core.logging_config import configure_logging

    # Configure once at daemon startup
    configure_logging(level="DEBUG", format="json")

    # Modules keep using
    logger = logging.getLogger(__name__)

Environment Variables:
    VIGIL_LOG_LEVEL: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    VIGIL_LOG_FORMAT: Output format ("text" or "json")
    VIGIL_LOG_FILE: Optional log file path
"""

from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime
from typing import Any, Literal

TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
TEXT_FORMAT_WITH_MS = "%(asctime)s.%(msecs)03d - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Attributes every LogRecord carries; anything else came in through `extra=`
_STANDARD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "taskName"}

_configured = False


class JsonFormatter(logging.Formatter):
    """JSON log formatter.

    Outputs one object per record:
    {
        "timestamp": "2026-01-12T09:30:00.123456",
        "level": "INFO",
        "logger": "vigil.core.wrappers.supervisor",
        "message": "Spawned wrapper 1a2b3c4d (pid 4242)",
        "extra": {...}
    }
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        extra = {k: v for k, v in record.__dict__.items() if k not in _STANDARD_ATTRS}
        if extra:
            log_data["extra"] = extra

        return json.dumps(log_data, default=str)


def configure_logging(
    level: str | None = None,
    format: Literal["text", "json"] | None = None,
    file_path: str | None = None,
    include_ms: bool = True,
    force: bool = False,
) -> None:
    """Configure the root logger.

    Subsequent calls are ignored unless force=True.

    Args:
        level: Log level. Defaults to VIGIL_LOG_LEVEL or "INFO".
        format: "text" or "json". Defaults to VIGIL_LOG_FORMAT or "text".
        file_path: Optional log file. Defaults to VIGIL_LOG_FILE.
        include_ms: Include milliseconds in text timestamps.
        force: Reconfigure even if already configured.
    """
    global _configured
    if _configured and not force:
        return

    level = level or os.environ.get("VIGIL_LOG_LEVEL", "INFO")
    format = format or os.environ.get("VIGIL_LOG_FORMAT", "text")  # type: ignore[assignment]
    file_path = file_path or os.environ.get("VIGIL_LOG_FILE")

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    root_logger.handlers.clear()

    if format == "json":
        formatter: logging.Formatter = JsonFormatter()
    else:
        fmt = TEXT_FORMAT_WITH_MS if include_ms else TEXT_FORMAT
        formatter = logging.Formatter(fmt, datefmt=DATE_FORMAT)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if file_path:
        file_handler = logging.FileHandler(file_path)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    _configured = True
