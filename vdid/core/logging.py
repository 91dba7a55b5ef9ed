"""Shared logging configuration.

Provides JSON-formatted logging for the VDID service.
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone


class JsonFormatter(logging.Formatter):
    """JSON log formatter for structured logging."""

    EXTRA_KEYS = ("request_id", "route", "method", "status", "principal", "action", "resource", "details")

    def format(self, record):
        payload = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for k in self.EXTRA_KEYS:
            if hasattr(record, k):
                payload[k] = getattr(record, k)
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def configure_logging(
    log_file: str | None = None,
    log_level: str | None = None,
):
    """Configure logging with JSON formatter.

    Args:
        log_file: Path to an additional log file. Defaults to VDID_LOG_FILE
            env var; console-only when neither is set.
        log_level: Log level. Defaults to VDID_LOG_LEVEL env var or 'INFO'.
    """
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(JsonFormatter())
    handlers: list[logging.Handler] = [console_handler]

    log_file = log_file or os.getenv("VDID_LOG_FILE")
    if log_file:
        file_handler = logging.FileHandler(log_file, mode='a')
        file_handler.setFormatter(JsonFormatter())
        handlers.append(file_handler)

    root = logging.getLogger()
    log_level = (log_level or os.getenv("VDID_LOG_LEVEL", "INFO")).upper()
    root.setLevel(getattr(logging, log_level, logging.INFO))
    root.handlers = handlers
