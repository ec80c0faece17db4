"""Panel logger keeping a bounded in-memory history of messages."""

from __future__ import annotations

import logging
import sys
import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from logging.handlers import SysLogHandler
from typing import Any

from suipanel.config import LogLevel

_LOGGER_NAME = "s-ui"
_BUFFER_SIZE = 10240
_TIME_FORMAT = "%Y/%m/%d %H:%M:%S"
# Most severe first; a lower index means a more severe level.
_SEVERITY = ("CRITICAL", "ERROR", "WARNING", "NOTICE", "INFO", "DEBUG")

_PY_LEVELS = {
    LogLevel.DEBUG: logging.DEBUG,
    LogLevel.INFO: logging.INFO,
    LogLevel.WARN: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
}


@dataclass(frozen=True)
class LogEntry:
    """One buffered log message."""

    time: str
    level: str
    log: str

    def __str__(self) -> str:
        return f"{self.time} {self.level} - {self.log}"


_logger = logging.getLogger(_LOGGER_NAME)
_buffer: deque[LogEntry] = deque(maxlen=_BUFFER_SIZE)
_lock = threading.Lock()


def _format_arg(arg: Any) -> str:
    if arg is None:
        return "<nil>"
    if isinstance(arg, bool):
        return "true" if arg else "false"
    return str(arg)


def _sprint(args: tuple[Any, ...]) -> str:
    """Join operands, with a space only between two non-string neighbours."""
    parts: list[str] = []
    previous_is_str = True
    for position, arg in enumerate(args):
        is_str = isinstance(arg, str)
        if position > 0 and not is_str and not previous_is_str:
            parts.append(" ")
        parts.append(_format_arg(arg))
        previous_is_str = is_str
    return "".join(parts)


def _level_index(name: str) -> int:
    upper = name.upper()
    if upper in _SEVERITY:
        return _SEVERITY.index(upper)
    return _SEVERITY.index("ERROR")


def _add_to_buffer(level: str, message: str) -> None:
    entry = LogEntry(datetime.now().strftime(_TIME_FORMAT), level, message)
    with _lock:
        _buffer.append(entry)


def init_logger(level: LogLevel | str) -> None:
    """Configure the panel logger, preferring syslog over stderr."""
    try:
        log_level = LogLevel(level)
    except ValueError:
        raise ValueError(f"unknown log level: {level}") from None

    handler: logging.Handler
    try:
        handler = SysLogHandler(address="/dev/log")
        fmt = "%(levelname)s - %(message)s"
    except (OSError, AttributeError) as exc:
        print("Unable to use syslog: " + str(exc))
        handler = logging.StreamHandler(sys.stderr)
        fmt = "%(asctime)s %(levelname)s - %(message)s"
    handler.setFormatter(logging.Formatter(fmt, datefmt=_TIME_FORMAT))

    for old in list(_logger.handlers):
        _logger.removeHandler(old)
        old.close()
    _logger.addHandler(handler)
    _logger.setLevel(_PY_LEVELS[log_level])
    _logger.propagate = False


def get_logger() -> logging.Logger:
    """Return the underlying logger."""
    return _logger


def debug(*args: Any) -> None:
    message = _sprint(args)
    _logger.debug(message)
    _add_to_buffer("DEBUG", message)


def info(*args: Any) -> None:
    message = _sprint(args)
    _logger.info(message)
    _add_to_buffer("INFO", message)


def warning(*args: Any) -> None:
    message = _sprint(args)
    _logger.warning(message)
    _add_to_buffer("WARNING", message)


def error(*args: Any) -> None:
    message = _sprint(args)
    _logger.error(message)
    _add_to_buffer("ERROR", message)


def get_logs(count: int, level: str) -> list[str]:
    """Return buffered messages at or above ``level``, newest first.

    Collection stops once more than ``count`` lines have been gathered,
    so up to ``count + 1`` lines come back. An unknown level means ERROR.
    """
    threshold = _level_index(level)
    with _lock:
        entries = list(_buffer)
    output: list[str] = []
    for entry in reversed(entries):
        if len(output) > count:
            break
        if _level_index(entry.level) <= threshold:
            output.append(str(entry))
    return output


def clear_logs() -> None:
    """Drop every buffered message."""
    with _lock:
        _buffer.clear()