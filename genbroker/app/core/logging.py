import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

LOG_LEVEL = getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO)

# Set through ``extra=`` by the queue workers and the orchestrator.
CORRELATION_FIELDS = ("job_id", "queue")

# Third-party loggers that are only interesting at WARNING and above.
QUIET_LOGGERS = ("urllib3", "httpcore", "httpx", "apscheduler", "sqlalchemy.engine")


class JSONFormatter(logging.Formatter):
    """
    One JSON object per line: timestamp, level, logger, message, correlation
    fields, exception text and the free-form ``data`` mapping.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "name": record.name,
            "message": record.getMessage(),
        }
        for key in CORRELATION_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                entry[key] = value

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        data = getattr(record, "data", None)
        if data is not None:
            entry["data"] = data

        # Payloads may carry non-JSON values (Paths, enums, dataclasses)
        return json.dumps(entry, default=str)


def setup_logging(level: int | None = None) -> logging.Logger:
    """
    Route the root logger to stdout as JSON lines. Safe to call more than once.
    """
    root = logging.getLogger()
    root.setLevel(level if level is not None else LOG_LEVEL)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())
    # Replace uvicorn's default handlers instead of logging twice
    root.handlers = [handler]

    logging.getLogger("uvicorn.access").disabled = True
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return root
