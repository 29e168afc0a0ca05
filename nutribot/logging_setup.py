from __future__ import annotations

import json
import logging
import os
import sys
from datetime import UTC, datetime

CONTEXT_KEYS = (
    "role",
    "service",
    "run_id",
    "queue",
    "slot",
    "worker_id",
    "concurrency",
    "did_work",
    "job_id",
    "attempt",
    "event",
    "user_id",
    "channel_id",
    "outcome",
    "detail",
    "operation",
    "error_code",
    "retry_classification",
    "error",
    "failure_kind",
    "url",
    "status_code",
    "response_body",
    "field",
    "config_key",
    "identifier",
    "reclaimed",
    "dead_lettered",
)


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        for key in CONTEXT_KEYS:
            value = getattr(record, key, None)
            if value is not None:
                payload[key] = value

        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=str)


def configure_logging(level: str | None = None) -> None:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel((level or os.getenv("LOG_LEVEL") or "INFO").upper())
