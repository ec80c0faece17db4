"""Runtime settings taken from the environment."""

from __future__ import annotations

import os
import sys
from enum import Enum

_NAME = "s-ui"
_VERSION = "1.3.0"

_FALLBACK_DB_FOLDER_WINDOWS = "C:\\Program Files\\s-ui\\db"
_FALLBACK_DB_FOLDER = "/usr/local/s-ui/db"


class LogLevel(str, Enum):
    """Log levels accepted by the panel."""

    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


def get_version() -> str:
    """Return the panel version."""
    return _VERSION.strip()


def get_name() -> str:
    """Return the panel name."""
    return _NAME.strip()


def is_debug() -> bool:
    """Return True when SUI_DEBUG is set to ``true``."""
    return os.environ.get("SUI_DEBUG") == "true"


def get_log_level() -> LogLevel:
    """Return the configured log level.

    Debug mode forces ``debug``; an empty SUI_LOG_LEVEL means ``info``.
    An unknown level raises ValueError.
    """
    if is_debug():
        return LogLevel.DEBUG
    value = os.environ.get("SUI_LOG_LEVEL", "")
    if not value:
        return LogLevel.INFO
    try:
        return LogLevel(value)
    except ValueError:
        raise ValueError(f"unknown log level: {value}") from None


def get_db_folder_path() -> str:
    """Return the folder holding the database file."""
    folder = os.environ.get("SUI_DB_FOLDER", "")
    if folder:
        return folder
    try:
        program = sys.argv[0]
        base = os.path.abspath(os.path.dirname(program))
    except (IndexError, OSError, ValueError):
        if sys.platform.startswith("win"):
            return _FALLBACK_DB_FOLDER_WINDOWS
        return _FALLBACK_DB_FOLDER
    return os.path.join(base, "db")


def get_db_path() -> str:
    """Return the full path of the database file."""
    return f"{get_db_folder_path()}/{get_name()}.db"