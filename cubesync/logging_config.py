"""
JSON-lines logging for cubesync processes.

Every record carries the session id bound with ``set_session_context`` so a
log file covering several sessions can be split per session afterwards.
Fields passed through ``extra=`` end up under the ``extra`` key.
"""

from __future__ import annotations

import json
import logging
import os
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Iterable

from cubesync.config.runtime_paths import logs_dir

DEFAULT_LOG_FILE = "cubesync.log"
MAX_LOG_BYTES = 5 * 1024 * 1024
LOG_BACKUPS = 5
# third-party loggers that trace every frame at DEBUG
NOISY_LOGGERS = ("websockets", "httpx", "httpcore")

_SESSION_ID: ContextVar[str | None] = ContextVar("cubesync_session_id", default=None)

# Attributes every LogRecord has; anything else came in through ``extra=``.
_RECORD_FIELDS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", (), None))
) | {"message", "asctime", "session_id", "taskName"}


def set_session_context(session_id: str | None) -> Token:
    return _SESSION_ID.set(session_id)


def get_session_context() -> str | None:
    return _SESSION_ID.get()


def reset_session_context(token: Token) -> None:
    try:
        _SESSION_ID.reset(token)
    except ValueError:
        # token created in another context
        _SESSION_ID.set(None)


def _jsonable(value: Any) -> Any:
    try:
        json.dumps(value)
    except (TypeError, ValueError):
        return repr(value)
    return value


class StructuredJsonFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        entry: Dict[str, Any] = {
            "timestamp": created.isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        session_id = getattr(record, "session_id", None)
        if session_id:
            entry["session_id"] = session_id
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        extra = {
            key: _jsonable(value)
            for key, value in vars(record).items()
            if key not in _RECORD_FIELDS
        }
        if extra:
            entry["extra"] = extra
        return json.dumps(entry, ensure_ascii=True)


class SessionContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        bound = _SESSION_ID.get()
        if bound:
            record.session_id = bound
        elif not hasattr(record, "session_id"):
            record.session_id = None
        return True


def _install(root: logging.Logger, handlers: Iterable[logging.Handler]) -> None:
    for old in list(root.handlers):
        root.removeHandler(old)
        old.close()
    formatter = StructuredJsonFormatter()
    context = SessionContextFilter()
    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(context)
        root.addHandler(handler)


def init_logging(
    log_dir: str | os.PathLike[str] | None = None,
    *,
    level: str = "INFO",
    filename: str = DEFAULT_LOG_FILE,
) -> Path:
    """Send JSON lines to stderr and a rotating file; returns the file path."""
    directory = Path(log_dir).expanduser().resolve() if log_dir else logs_dir()
    directory.mkdir(parents=True, exist_ok=True)
    log_path = directory / filename

    root = logging.getLogger()
    resolved = logging.getLevelName(level.upper())
    root.setLevel(resolved if isinstance(resolved, int) else logging.INFO)
    _install(
        root,
        (
            RotatingFileHandler(
                log_path, maxBytes=MAX_LOG_BYTES, backupCount=LOG_BACKUPS, encoding="utf-8"
            ),
            logging.StreamHandler(),
        ),
    )
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(logging.INFO, root.level))
    return log_path


__all__ = [
    "SessionContextFilter",
    "StructuredJsonFormatter",
    "get_session_context",
    "init_logging",
    "reset_session_context",
    "set_session_context",
]
