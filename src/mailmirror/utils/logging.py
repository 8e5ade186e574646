"""Logging setup for CLI runs: JSON records or human-readable lines."""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from typing import Any

from mailmirror.config.settings import LoggingSettings

_RESERVED_LOG_RECORD_KEYS: frozenset[str] = frozenset(
    logging.LogRecord("", 0, "", 0, "", None, None).__dict__,
) | {"message", "asctime"}

_NOISY_LOGGERS: dict[str, int] = {
    "aioimaplib": logging.WARNING,
    "aioimaplib.aioimaplib": logging.WARNING,
    "asyncio": logging.WARNING,
}


def _safe_json_value(value: object) -> Any:
    """Coerce a value to something JSON-serializable.

    Args:
        value: Value to serialize.

    Returns:
        The original value if JSON-serializable; otherwise, its string representation.
    """
    try:
        json.dumps(value)
        return value
    except TypeError:
        return str(value)


def _extra_fields(record: logging.LogRecord) -> dict[str, Any]:
    """Return the ``extra=`` fields attached to a record."""
    return {
        key: _safe_json_value(value)
        for key, value in record.__dict__.items()
        if key not in _RESERVED_LOG_RECORD_KEYS and not key.startswith("_")
    }


class JsonLogFormatter(logging.Formatter):
    """Formatter that emits one JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        """Format a log record as JSON.

        Args:
            record: Log record to format.

        Returns:
            JSON string representation.
        """
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        payload.update(_extra_fields(record))

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(payload, ensure_ascii=False)


class HumanLogFormatter(logging.Formatter):
    """Plain-text formatter that appends ``extra=`` fields as ``key=value``."""

    def __init__(self) -> None:
        super().__init__(
            fmt="%(asctime)s %(levelname)s %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        extras = _extra_fields(record)
        if not extras:
            return line
        head, sep, tail = line.partition("\n")
        fields = " ".join(f"{k}={v}" for k, v in extras.items())
        return f"{head} [{fields}]{sep}{tail}"


def configure_logging(*, settings: LoggingSettings) -> None:
    """Configure stderr logging for CLI runs.

    Args:
        settings: Logging settings (level and JSON/human output).
    """
    level_name = settings.level.strip().upper() if settings.level else "INFO"
    level = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler()
    handler.setLevel(level)
    handler.setFormatter(JsonLogFormatter() if settings.json_logs else HumanLogFormatter())

    logging.basicConfig(level=level, handlers=[handler], force=True)

    for name, noisy_level in _NOISY_LOGGERS.items():
        logging.getLogger(name).setLevel(max(level, noisy_level))
