"""Process entry point and logging setup for the smc command."""

from __future__ import annotations

import json
import logging
import os
import sys
from datetime import UTC, datetime

DEFAULT_LOG_LEVEL = "WARNING"

# LogRecord attributes that are not user-supplied extra fields
_RESERVED_RECORD_KEYS = frozenset(
    (
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    )
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_KEYS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class _SmcHandler(logging.StreamHandler):
    pass


def setup_logging(level: str | None = None, log_format: str = "json") -> None:
    """Configure logging to stderr.

    Args:
        level: Log level name; defaults to SMC_LOG_LEVEL, then WARNING.
        log_format: "json" for structured output, "text" for plain lines.
    """
    level_name = (level or os.environ.get("SMC_LOG_LEVEL") or DEFAULT_LOG_LEVEL).upper()

    handler = _SmcHandler(sys.stderr)
    if log_format == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))

    root_logger = logging.getLogger()
    for existing in [h for h in root_logger.handlers if isinstance(h, _SmcHandler)]:
        root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, level_name, logging.WARNING))

    # Reduce noise from Azure SDK
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def run() -> None:
    """Entry point for the smc command."""
    from .cli import cli

    cli(prog_name="smc")


if __name__ == "__main__":
    run()
