"""Structured logging for the coordinator.

Log records go through the standard ``logging`` module under the ``maci``
namespace and are rendered as one JSON object per line. Structured fields
are attached with ``extra={"structured": {...}}``; ``log_event`` does that
for you.

Usage:
    from maci.logs import configure_logging, get_logger, log_event

    configure_logging(level="INFO")
    logger = get_logger("orchestrator")
    log_event(logger, logging.INFO, "phase_committed", poll_id="poll-1", phase="processed")
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any


ROOT_LOGGER = "maci"


class JSONFormatter(logging.Formatter):
    """Formats log records as JSON lines."""

    def __init__(self, service_name: str = "maci-coordinator") -> None:
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.service_name,
        }

        if hasattr(record, "structured"):
            entry.update(record.structured)

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception.type"] = record.exc_info[0].__name__
            entry["exception.message"] = str(record.exc_info[1])

        return json.dumps(entry, default=str)


def configure_logging(level: str = "INFO", stream: Any = None) -> logging.Logger:
    """Attach a JSON stream handler to the ``maci`` logger.

    Safe to call repeatedly; existing handlers are replaced.
    """
    logger = logging.getLogger(ROOT_LOGGER)
    numeric = getattr(logging, level.upper(), logging.INFO)
    logger.setLevel(numeric)
    logger.handlers.clear()

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(JSONFormatter())
    handler.setLevel(numeric)
    logger.addHandler(handler)
    logger.propagate = False
    return logger


def get_logger(name: str = "") -> logging.Logger:
    """Get a child logger under the ``maci`` namespace."""
    if name:
        return logging.getLogger(f"{ROOT_LOGGER}.{name}")
    return logging.getLogger(ROOT_LOGGER)


def log_event(logger: logging.Logger, level: int, action: str, **fields: Any) -> None:
    """Emit ``action`` with structured fields."""
    if not logger.isEnabledFor(level):
        return
    logger.log(level, action, extra={"structured": {"action": action, **fields}})
