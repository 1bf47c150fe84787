"""Logging helpers for termquiz.

The interactive view owns the terminal, so log records go to a rotating JSON
lines file under the state home. A stderr handler is only attached when the
user asks for ``--verbose``. Once a quiz is resolved, :func:`bind_session`
stamps every record with the quiz it belongs to so one log file can hold
several sessions.
"""

from __future__ import annotations

import json
import logging
import sys
import tempfile
from datetime import datetime, timezone
from enum import Enum
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Iterator, Mapping

__all__ = [
    "JsonLogFormatter",
    "SessionContextFilter",
    "bind_session",
    "configure_logger",
]

_FILE_MARKER = "_termquiz_file"
_CONSOLE_MARKER = "_termquiz_console"
_CONTEXT_ATTR = "termquiz_session"

# Attributes every LogRecord carries; anything else arrived through ``extra``.
_STANDARD_ATTRS = frozenset(
    logging.LogRecord("", logging.INFO, "", 0, "", (), None).__dict__
) | {"message", "asctime", "taskName", _CONTEXT_ATTR}


class JsonLogFormatter(logging.Formatter):
    """One JSON object per record: fixed keys, then ``extra`` and ``session``."""

    def format(self, record: logging.LogRecord) -> str:  # noqa: D401
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "message": record.getMessage(),
        }
        extras = {
            key: _jsonable(value)
            for key, value in record.__dict__.items()
            if key not in _STANDARD_ATTRS
        }
        if extras:
            payload["extra"] = extras
        context = getattr(record, _CONTEXT_ATTR, None)
        if context:
            payload["session"] = dict(context)
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=True)


class SessionContextFilter(logging.Filter):
    """Attach the active quiz context to records passing through a handler."""

    def __init__(self, context: Mapping[str, str]) -> None:
        super().__init__()
        self.context = dict(context)

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, _CONTEXT_ATTR):
            setattr(record, _CONTEXT_ATTR, self.context)
        return True


def configure_logger(
    name: str,
    *,
    log_dir: Path,
    level: str = "INFO",
    verbose: bool = False,
    max_bytes: int = 2 * 1024 * 1024,
    backup_count: int = 3,
    filename: str | None = None,
) -> tuple[logging.Logger, Path]:
    """Configure the ``name`` logger and return it with its log file path.

    Calling this again for the same logger reuses the managed handlers, so
    tests and repeated CLI invocations do not stack duplicate output. The
    file defaults to ``<last name component>.log``; when ``log_dir`` cannot
    be written a directory under the system temp dir is used instead.
    """

    logger = logging.getLogger(name)
    logger.propagate = False
    logger.setLevel(logging.DEBUG)

    path = _open_log_file(log_dir, filename or f"{name.rsplit('.', 1)[-1]}.log")
    handler = _file_handler_for(logger, path, max_bytes, backup_count)
    handler.setLevel(logging.DEBUG if verbose else _level_number(level))

    consoles = list(_managed(logger, _CONSOLE_MARKER))
    if verbose and not consoles:
        stream = logging.StreamHandler(stream=sys.stderr)
        stream.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))
        setattr(stream, _CONSOLE_MARKER, True)
        logger.addHandler(stream)
    elif not verbose:
        _drop(logger, consoles)

    return logger, path


def bind_session(
    logger: logging.Logger, *, quiz_file: str, session_key: str
) -> SessionContextFilter:
    """Tag records written by ``logger``'s handlers with the quiz session.

    A previous binding is replaced. The returned filter is attached to every
    handler the logger owns at call time.
    """

    context = SessionContextFilter({"quiz_file": quiz_file, "key": session_key})
    for handler in logger.handlers:
        for existing in list(handler.filters):
            if isinstance(existing, SessionContextFilter):
                handler.removeFilter(existing)
        handler.addFilter(context)
    return context


def _managed(logger: logging.Logger, marker: str) -> Iterator[logging.Handler]:
    return (h for h in list(logger.handlers) if getattr(h, marker, False))


def _drop(logger: logging.Logger, handlers: list[logging.Handler]) -> None:
    for handler in handlers:
        logger.removeHandler(handler)
        handler.close()


def _file_handler_for(
    logger: logging.Logger, path: Path, max_bytes: int, backup_count: int
) -> RotatingFileHandler:
    stale = []
    for handler in _managed(logger, _FILE_MARKER):
        if Path(handler.baseFilename) == path:  # type: ignore[attr-defined]
            return handler  # type: ignore[return-value]
        stale.append(handler)
    _drop(logger, stale)

    handler = RotatingFileHandler(
        path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
    )
    handler.setFormatter(JsonLogFormatter())
    setattr(handler, _FILE_MARKER, True)
    logger.addHandler(handler)
    return handler


def _level_number(level: str) -> int:
    numeric = logging.getLevelName(level.upper())
    return numeric if isinstance(numeric, int) else logging.INFO


def _jsonable(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Enum):
        return _jsonable(value.value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        items = sorted(value, key=repr) if isinstance(value, (set, frozenset)) else value
        return [_jsonable(item) for item in items]
    return repr(value)


def _open_log_file(log_dir: Path, filename: str) -> Path:
    try:
        return _touch_private(log_dir, filename)
    except PermissionError:
        return _touch_private(_fallback_log_dir(), filename)


def _touch_private(directory: Path, filename: str) -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / filename
    path.touch(exist_ok=True)
    try:
        path.chmod(0o600)
    except PermissionError:  # pragma: no cover - depends on filesystem
        pass
    return path


def _fallback_log_dir() -> Path:
    return Path(tempfile.gettempdir()) / "termquiz-logs"
