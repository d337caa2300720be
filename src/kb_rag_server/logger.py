"""Structured JSON logger for the knowledge base server.

Every record is emitted as a single JSON line on stdout:
{"time":"2026-10-19T14:06:20.829529+00:00","level":"INFO","logger":"kb_rag_server","source":{"function":"search","file":"knowledge_base.py","line":43},"msg":"search completed","results_count":3}
"""

import json
import logging
import os
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Iterator

# Fields attached to every record emitted from the current context
_log_context: ContextVar[dict[str, Any]] = ContextVar("log_context", default={})


class StructuredFormatter(logging.Formatter):
    """JSON formatter with context and per-call fields."""

    def format(self, record: logging.LogRecord) -> str:
        now = datetime.now(timezone.utc).astimezone()

        log_entry: dict[str, Any] = {
            "time": now.isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "source": {
                "function": record.funcName,
                "file": os.path.basename(record.pathname),
                "line": record.lineno,
            },
            "msg": record.getMessage(),
        }

        ctx_fields = _log_context.get()
        if ctx_fields:
            log_entry.update(ctx_fields)

        if hasattr(record, "extra_fields"):
            log_entry.update(record.extra_fields)

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


class StructuredLogger:
    """Logger that writes structured JSON lines with keyword fields."""

    def __init__(self, name: str = "kb_rag_server", level: str | None = None):
        self._logger = logging.getLogger(name)
        level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
        self._logger.setLevel(getattr(logging, level_name, logging.INFO))

        self._logger.handlers.clear()
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(StructuredFormatter())
        self._logger.addHandler(handler)

        self._logger.propagate = False

    def _log(
        self,
        level: int,
        msg: str,
        stacklevel: int = 3,
        exc_info: bool = False,
        **fields: Any,
    ) -> None:
        extra = {"extra_fields": fields} if fields else {}
        self._logger.log(
            level, msg, stacklevel=stacklevel, exc_info=exc_info, extra=extra
        )

    def debug(self, msg: str, **fields: Any) -> None:
        self._log(logging.DEBUG, msg, **fields)

    def info(self, msg: str, **fields: Any) -> None:
        self._log(logging.INFO, msg, **fields)

    def warn(self, msg: str, **fields: Any) -> None:
        self._log(logging.WARNING, msg, **fields)

    def error(self, msg: str, **fields: Any) -> None:
        self._log(logging.ERROR, msg, **fields)

    def exception(self, msg: str, **fields: Any) -> None:
        """Log an error message with the active exception's traceback."""
        self._log(logging.ERROR, msg, exc_info=True, **fields)


def set_context(**fields: Any) -> None:
    """Add fields to every subsequent log record in the current context.

    Example:
        set_context(owner_id="u1", kb_name="contracts")
        logger.info("processing document")  # includes owner_id and kb_name
    """
    current = _log_context.get()
    _log_context.set({**current, **fields})


def clear_context() -> None:
    """Clear all context fields."""
    _log_context.set({})


def get_context() -> dict[str, Any]:
    """Get current context fields."""
    return _log_context.get().copy()


@contextmanager
def log_context(**fields: Any) -> Iterator[None]:
    """Scope context fields to a block, restoring the previous fields on exit."""
    token = _log_context.set({**_log_context.get(), **fields})
    try:
        yield
    finally:
        _log_context.reset(token)


logger = StructuredLogger("kb_rag_server")
