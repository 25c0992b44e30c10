"""Structured logging: one JSON object per line, with user addresses masked."""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

# Context keys that carry a user's phone number.
ADDRESS_KEYS = frozenset({"address", "to"})
VISIBLE_DIGITS = 4

NOISY_LOGGERS = ("httpx", "httpcore", "uvicorn.access", "sqlalchemy.engine")


def mask_address(address: Any) -> Any:
    """15551234567 -> *******4567. Non-strings and short values pass through."""
    if not isinstance(address, str) or len(address) <= VISIBLE_DIGITS:
        return address
    return "*" * (len(address) - VISIBLE_DIGITS) + address[-VISIBLE_DIGITS:]


def _masked(context: dict) -> dict:
    return {key: mask_address(value) if key in ADDRESS_KEYS else value for key, value in context.items()}


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        context = getattr(record, "context", None)
        if isinstance(context, dict) and context:
            entry["context"] = _masked(context)

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, ensure_ascii=False, default=str)


def setup_logging(level: str = "INFO") -> None:
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())
    root_logger.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"marketbot.{name}")


class LoggerAdapter(logging.LoggerAdapter):
    """Per-turn logger: fixed context (address, message id) plus a `context=` kwarg per call."""

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        context = {**(self.extra or {}), **(kwargs.pop("context", None) or {})}
        if context:
            kwargs["extra"] = {"context": context}
        return msg, kwargs
