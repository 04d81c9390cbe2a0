from __future__ import annotations

import json
import logging
from datetime import datetime, timezone

from .utils import format_iso

SERVICE_NAME = "first_mention_bot"

# Attributes every LogRecord carries; anything else arrived through ``extra=``.
RESERVED_ATTRS = frozenset(logging.LogRecord("", 0, "", 0, "", (), None).__dict__) | {
    "message",
    "asctime",
}

QUIET_LOGGERS = ("aiohttp", "aiosqlite", "apscheduler")


class JsonFormatter(logging.Formatter):
    def __init__(self, service: str = SERVICE_NAME):
        super().__init__()
        self.service = service

    def format(self, record: logging.LogRecord) -> str:
        data = {
            "time": format_iso(datetime.fromtimestamp(record.created, tz=timezone.utc)),
            "level": record.levelname,
            "event": record.getMessage(),
            "service": self.service,
            "logger": record.name,
        }
        data.update(
            (key, value) for key, value in record.__dict__.items() if key not in RESERVED_ATTRS
        )
        if record.exc_info:
            data["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(data, ensure_ascii=True, default=str)


def setup_logging(level: str, service: str = SERVICE_NAME) -> logging.Logger:
    logger = logging.getLogger(service)
    logger.setLevel(level)
    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter(service))
    logger.handlers = [handler]
    logger.propagate = False

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    return logger
