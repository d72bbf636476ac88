"""
Structured JSON logging.

Logs go to stdout as one JSON object per line so that log collectors can
index fields such as request ids, tool names and auth decisions.

Structured fields are attached with `extra={"log_data": {...}}`:

    logger.warning("Orphan response", extra={"log_data": {"id": 7}})

Note for stdio peers: a process speaking JSON-RPC on stdout must not log to
stdout. configure_logging() takes the stream to use for that reason.
"""

import json
import logging
import sys
from typing import TextIO


class JSONLogFormatter(logging.Formatter):
    """
    Formats log records as single-line JSON objects.

    Example output:

        {"timestamp": "2026-02-06 10:30:00,123", "level": "WARNING", "logger": "mcp-client",
         "message": "Request timed out", "id": 3, "timeout": 10.0}
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if hasattr(record, "log_data"):
            log_entry.update(record.log_data)
        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry, default=str)


def configure_logging(level: str = "info", stream: TextIO | None = None) -> None:
    """Install the JSON formatter on the root logger."""
    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(JSONLogFormatter())

    logging.basicConfig(
        level=getattr(logging, level.upper()),
        handlers=[handler],
        force=True,
    )
