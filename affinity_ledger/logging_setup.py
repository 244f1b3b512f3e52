"""Logging configuration for the affinity ledger."""

from __future__ import annotations

import json
import logging
import sys
from dataclasses import dataclass
from datetime import datetime
from logging import Logger
from typing import Dict

DEFAULT_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

LOGGER_NAMES = (
    "ledger",
    "ledger.events",
    "ledger.embedding",
    "ledger.mutations",
    "ledger.aggregation",
    "ledger.coordinator",
    "ledger.scheduler",
    "ledger.telemetry",
)


class JsonFormatter(logging.Formatter):
    """Emit one JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:  # noqa: D401
        data = {
            "timestamp": datetime.utcnow().isoformat(timespec="milliseconds") + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "line": record.lineno,
        }
        if record.exc_info:
            data["exception"] = self.formatException(record.exc_info)
        return json.dumps(data, ensure_ascii=False)


@dataclass(slots=True)
class LoggerConfig:
    level: int = logging.INFO
    fmt: str = DEFAULT_FORMAT
    json: bool = False


def level_from_name(name: str | int) -> int:
    if isinstance(name, int):
        return name
    value = logging.getLevelName(str(name).upper())
    return value if isinstance(value, int) else logging.INFO


def configure_logging(config: LoggerConfig | None = None) -> Dict[str, Logger]:
    config = config or LoggerConfig()
    logging.basicConfig(
        level=config.level,
        format=config.fmt,
        stream=sys.stdout,
    )
    if config.json:
        for handler in logging.getLogger().handlers:
            handler.setFormatter(JsonFormatter())
    logging.debug("Logging initialized with level %s", config.level)
    return {name.rsplit(".", 1)[-1]: logging.getLogger(name) for name in LOGGER_NAMES}
