from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

LOGGER_NAME = "genqueue"
REDACTED_FIELDS = frozenset({"credential", "token", "value", "device_id"})


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": self.formatTime(record, "%Y-%m-%dT%H:%M:%S%z"),
            "level": record.levelname,
            "message": record.getMessage(),
        }
        extra_fields = getattr(record, "extra_fields", None)
        if isinstance(extra_fields, dict):
            payload.update(redact_fields(extra_fields))
        return json.dumps(payload, sort_keys=True, default=str)


def redact_fields(fields: dict[str, Any]) -> dict[str, Any]:
    return {key: ("<redacted>" if key in REDACTED_FIELDS else value) for key, value in fields.items()}


def setup_logger(log_path: Path | None, *, level: int = logging.INFO) -> logging.Logger:
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)
    logger.handlers.clear()
    logger.propagate = False

    if log_path is not None:
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setFormatter(JsonFormatter())
        logger.addHandler(file_handler)

    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s"))
    logger.addHandler(stream_handler)
    return logger


def log_with_fields(logger: logging.Logger, level: int, message: str, **fields: object) -> None:
    logger.log(level, message, extra={"extra_fields": fields})
