from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Optional

# Structured fields copied from `extra=` onto the JSON payload
_STRUCTURED_FIELDS = (
    "search_id",
    "event",
    "stakeholder_id",
    "namespace",
    "dynamic_k",
    "returned",
    "rate",
    "duration_ms",
    "queries",
    "failed_queries",
)


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for key in _STRUCTURED_FIELDS:
            if hasattr(record, key):
                payload[key] = getattr(record, key)
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def setup_json_logger(service_name: str, level: str = "INFO") -> logging.Logger:
    """
    Install a JSON-lines handler on the `service_name` logger.

    Module loggers are created with logging.getLogger(__name__) under the
    `ssr` package, so passing "ssr" routes the whole library through here.
    """
    logger = logging.getLogger(service_name)
    logger.setLevel(level.upper())
    logger.handlers.clear()
    logger.propagate = False

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level.upper())
    handler.setFormatter(JsonFormatter())
    logger.addHandler(handler)
    return logger


def log_event(
    logger: logging.Logger,
    event: str,
    search_id: Optional[str] = None,
    level: int = logging.INFO,
    **fields: Any,
) -> None:
    extra: dict[str, Any] = {"event": event}
    if search_id:
        extra["search_id"] = search_id
    extra.update(fields)
    logger.log(level, event, extra=extra)
