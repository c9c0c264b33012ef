"""Structured logging helpers shared by API handlers, domain services and jobs."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

__all__ = ["configure_logging", "get_logger", "StructuredFormatter"]

DEFAULT_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"

# Attributes present on every LogRecord; anything else arrived through ``extra``.
_RESERVED_ATTRS = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", None, None)).keys()
) | {"message", "asctime", "taskName"}


class StructuredFormatter(logging.Formatter):
    """Append ``extra`` fields to the message as sorted key=value pairs."""

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        fields = _extract_extra(record)
        if not fields:
            return base
        rendered = " ".join(
            f"{key}={_render_value(value)}" for key, value in sorted(fields.items())
        )
        return f"{base} {rendered}"


def get_logger(name: str) -> logging.Logger:
    """Return a module logger; configuration happens once in ``configure_logging``."""

    return logging.getLogger(name)


def configure_logging(config: Optional[Dict[str, Any]] = None) -> None:
    """Install the structured formatter on the root logger."""

    config = dict(config or {})
    level_name = str(config.get("level", "INFO")).upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        level = logging.INFO

    root = logging.getLogger()
    root.setLevel(level)
    formatter = StructuredFormatter(str(config.get("format", DEFAULT_LOG_FORMAT)))
    for handler in root.handlers:
        if getattr(handler, "_macrolog_structured", False):
            handler.setFormatter(formatter)
            return

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)
    handler._macrolog_structured = True  # type: ignore[attr-defined]
    root.addHandler(handler)


def _extract_extra(record: logging.LogRecord) -> Dict[str, Any]:
    return {
        key: value
        for key, value in vars(record).items()
        if key not in _RESERVED_ATTRS and not key.startswith("_")
    }


def _render_value(value: Any) -> str:
    if isinstance(value, str):
        return value if value and " " not in value else json.dumps(value)
    try:
        return json.dumps(value, default=str, ensure_ascii=False)
    except (TypeError, ValueError):
        return repr(value)
