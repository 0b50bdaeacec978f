"""Logging setup for applications embedding storeauth.

storeauth modules only create ``storeauth.<area>`` loggers; nothing is
configured on import. Call :func:`setup_logging` once at startup.

Environment variables (used when no explicit argument is given):
    SA_LOG_FORMAT  -- ``json`` for one JSON object per line, ``text`` (default) otherwise.
    SA_LOG_LEVEL   -- Python log level name (default: ``INFO``).
"""

from __future__ import annotations

import logging
import os
import traceback
from typing import IO, Any

from pythonjsonlogger.json import JsonFormatter

#: Context attributes passed through ``extra=`` by storeauth modules.
STRUCTURED_FIELDS: tuple[str, ...] = (
    "store_id",
    "edge_id",
    "rule_id",
    "user_id",
    "role_id",
    "status_code",
    "duration_ms",
)

TEXT_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

# Marks handlers installed here so repeated setup replaces only those.
_HANDLER_FLAG = "_storeauth_handler"


def _resolve_format(fmt: str | None) -> str:
    value = (fmt or os.environ.get("SA_LOG_FORMAT") or "text").lower()
    return "json" if value == "json" else "text"


def _resolve_level(level: str | int | None) -> int:
    if isinstance(level, int):
        return level
    name = (level or os.environ.get("SA_LOG_LEVEL") or "INFO").upper()
    numeric = logging.getLevelName(name)
    return numeric if isinstance(numeric, int) else logging.INFO


class StructuredJsonFormatter(JsonFormatter):
    """JSON formatter with the storeauth context fields and a list traceback.

    Context fields that are ``None`` are dropped. Exception information is
    emitted as ``traceback`` (a list of lines) instead of free text.
    """

    def __init__(self, **kwargs: Any) -> None:
        kwargs.setdefault("fmt", "%(asctime)s %(levelname)s %(name)s %(message)s")
        kwargs.setdefault("datefmt", "%Y-%m-%dT%H:%M:%S")
        super().__init__(**kwargs)

    def add_fields(
        self,
        log_data: dict[str, Any],
        record: logging.LogRecord,
        message_dict: dict[str, Any],
    ) -> None:
        super().add_fields(log_data, record, message_dict)
        for key in STRUCTURED_FIELDS:
            if log_data.get(key, ...) is None:
                del log_data[key]
        if record.exc_info and record.exc_info[1] is not None:
            log_data.pop("exc_info", None)
            log_data["traceback"] = traceback.format_exception(*record.exc_info)


def setup_logging(
    fmt: str | None = None,
    level: str | int | None = None,
    *,
    stream: IO[str] | None = None,
) -> logging.Handler:
    """Install one stream handler on the root logger and return it.

    Handlers from an earlier call are replaced; other handlers are kept.
    """
    numeric_level = _resolve_level(level)
    root = logging.getLogger()
    root.setLevel(numeric_level)
    for existing in [h for h in root.handlers if getattr(h, _HANDLER_FLAG, False)]:
        root.removeHandler(existing)

    handler = logging.StreamHandler(stream)
    handler.setLevel(numeric_level)
    if _resolve_format(fmt) == "json":
        handler.setFormatter(StructuredJsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT))
    setattr(handler, _HANDLER_FLAG, True)

    root.addHandler(handler)
    return handler
