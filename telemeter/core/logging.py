"""Structured JSON logging for telemeter."""

import json
import logging
from datetime import UTC, datetime
from typing import Any

ROOT_LOGGER_NAME = "telemeter"

# Dynamically derive standard LogRecord attributes at module import time
# This ensures future Python additions (like taskName) are automatically handled
_STANDARD_LOGRECORD_KEYS: frozenset[str] = frozenset(
    logging.LogRecord(
        name="", level=0, pathname="", lineno=0, msg="", args=(), exc_info=None
    ).__dict__.keys()
)


class JSONFormatter(logging.Formatter):
    """JSON formatter with UTC ISO8601 timestamps."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        # Pipeline fields first so they lead the line when present
        for field in ("event_uuid", "event_name", "batch_size", "flag_key", "status_code"):
            if hasattr(record, field):
                log_data[field] = getattr(record, field)

        for key, value in vars(record).items():
            if key not in _STANDARD_LOGRECORD_KEYS and key not in log_data:
                log_data[key] = value

        if record.exc_info:
            log_data["exc_info"] = self.formatException(record.exc_info)

        try:
            return json.dumps(log_data, default=str)
        except Exception:
            return str(log_data)


def _setup_json_handler(logger: logging.Logger, level: int) -> None:
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(JSONFormatter())
        logger.addHandler(handler)
    logger.setLevel(level)
    logger.propagate = False


def resolve_level(level: int | str) -> int:
    """Turn a level name such as "DEBUG" into its numeric value."""
    if isinstance(level, int):
        return level
    value = logging.getLevelName(level.upper())
    if not isinstance(value, int):
        raise ValueError(f"unknown log level: {level!r}")
    return value


def configure_logging(level: int | str = logging.INFO) -> logging.Logger:
    """Configure and return the package root logger with JSON formatting.

    Child loggers (``telemeter.queue``, ``telemeter.flags`` ...) propagate to it.

    Args:
        level: Logging level or level name. Defaults to logging.INFO.
    """
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    _setup_json_handler(logger, resolve_level(level))
    return logger


def get_logger(name: str = ROOT_LOGGER_NAME, level: int | str = logging.INFO) -> logging.Logger:
    """Get a logger with JSON formatting.

    Args:
        name: The logger name. Defaults to "telemeter".
        level: The logging level to set. Defaults to logging.INFO.
    """
    logger = logging.getLogger(name)
    _setup_json_handler(logger, resolve_level(level))
    return logger


def is_own_logger(name: str) -> bool:
    """True for records emitted by telemeter itself."""
    return name == ROOT_LOGGER_NAME or name.startswith(ROOT_LOGGER_NAME + ".")
