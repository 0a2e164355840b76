"""Logging helpers"""

import logging
from typing import Any, Dict, Optional

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging the same way for the server and the workers."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
    )


def to_log_level(value: Optional[str], default: int = logging.INFO) -> int:
    """Map a level name ("debug", "WARN", ...) to a logging level number."""
    if not value:
        return default
    level = logging.getLevelName(str(value).upper())
    return level if isinstance(level, int) else default


class ContextLogger(logging.LoggerAdapter):
    """Logger adapter carrying bound fields, appended to every message.

    ``child()`` returns a new adapter with additional fields bound, so a
    delivery logger can extend its listener logger without mutating it.
    """

    def __init__(self, logger: logging.Logger, fields: Optional[Dict[str, Any]] = None):
        super().__init__(logger, dict(fields or {}))

    def child(self, **fields: Any) -> "ContextLogger":
        merged = dict(self.extra)
        merged.update({k: v for k, v in fields.items() if v is not None})
        return ContextLogger(self.logger, merged)

    def process(self, msg, kwargs):
        fields = dict(self.extra)
        fields.update(kwargs.pop("fields", None) or {})
        kwargs.setdefault("extra", {}).update({"context": fields})
        if fields:
            rendered = " ".join(f"{k}={v}" for k, v in fields.items())
            msg = f"{msg} [{rendered}]"
        return msg, kwargs


def get_logger(name: str, **fields: Any) -> ContextLogger:
    return ContextLogger(logging.getLogger(name), fields)
