"""Opening, initialising, exporting and importing the panel database."""

from __future__ import annotations

import os
import shutil
import signal
import sqlite3
import sys
import tempfile
import threading
from datetime import datetime
from typing import BinaryIO, Optional

import bcrypt

from suipanel import config, logger, migration
from suipanel.model import (
    Changes,
    Client,
    Endpoint,
    Inbound,
    Outbound,
    Setting,
    Stats,
    Tls,
    User,
    ensure_tables,
)


class DatabaseError(Exception):
    """Raised when the database cannot be opened, exported or imported."""


_SQLITE_SIGNATURE = b"SQLite format 3\x00"
# The first user gets this name, and this same word as its password.
_DEFAULT_ADMIN = "admin"
_RESTART_DELAY = 3.0
_RESTART_SIGNAL = signal.SIGTERM if sys.platform.startswith("win") else signal.SIGHUP

_BACKUP_TABLES = (Setting, Tls, Inbound, Outbound, Endpoint, User, Stats, Client, Changes)
_ALWAYS_COPIED = (Setting, Tls, Inbound, Outbound, Endpoint, User, Client)

_db: Optional[sqlite3.Connection] = None
_lock = threading.RLock()


def _connect(path: str) -> sqlite3.Connection:
    return sqlite3.connect(path, isolation_level=None, check_same_thread=False)


def open_db(db_path: str) -> sqlite3.Connection:
    """Open the database at ``db_path``, creating its folder, and make it current."""
    global _db
    folder = os.path.dirname(db_path)
    try:
        if folder:
            os.makedirs(folder, mode=0o1740, exist_ok=True)
        conn = _connect(db_path)
    except (OSError, sqlite3.Error) as exc:
        raise DatabaseError(str(exc)) from exc
    if config.is_debug():
        conn.set_trace_callback(logger.debug)
    with _lock:
        if _db is not None:
            _db.close()
        _db = conn
    return conn


def _init_user(conn: sqlite3.Connection) -> None:
    (count,) = conn.execute(f'SELECT count(*) FROM "{User.table}"').fetchone()
    if count:
        return
    hashed = bcrypt.hashpw(_DEFAULT_ADMIN.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")
    conn.execute(
        f'INSERT INTO "{User.table}" (username, password) VALUES (?, ?)',
        (_DEFAULT_ADMIN, hashed),
    )


def init_db(db_path: str) -> sqlite3.Connection:
    """Open the database, bring its tables up to date and seed defaults."""
    conn = open_db(db_path)
    try:
        has_outbounds = conn.execute(
            "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?",
            (Outbound.table,),
        ).fetchone()
        if not has_outbounds:
            ensure_tables(conn, Outbound)
            conn.execute(
                f'INSERT INTO "{Outbound.table}" (type, tag, options) VALUES (?, ?, ?)',
                ("direct", "direct", b"{}"),
            )
        ensure_tables(conn)
        _init_user(conn)
    except sqlite3.Error as exc:
        raise DatabaseError(str(exc)) from exc
    return conn


def get_db() -> sqlite3.Connection:
    """Return the current database connection."""
    with _lock:
        if _db is None:
            raise DatabaseError("database is not open")
        return _db


def close_db() -> None:
    """Close the current database connection, if any."""
    global _db
    with _lock:
        if _db is not None:
            _db.close()
            _db = None


def _copy_table(source: sqlite3.Connection, target: sqlite3.Connection, model: type) -> None:
    names = [name for name, _ in model.columns]
    quoted = ", ".join(f'"{name}"' for name in names)
    rows = source.execute(f'SELECT {quoted} FROM "{model.table}"').fetchall()
    if rows:
        marks = ", ".join("?" for _ in names)
        target.executemany(
            f'INSERT INTO "{model.table}" ({quoted}) VALUES ({marks})', rows
        )


def get_db_bytes(exclude: str = "") -> bytes:
    """Return a copy of the database as file bytes.

    ``exclude`` is a comma separated list that may name ``changes`` and
    ``stats`` to leave those tables empty in the copy.
    """
    excluded = set(exclude.split(","))
    tables = list(_ALWAYS_COPIED)
    if "stats" not in excluded:
        tables.append(Stats)
    if "changes" not in excluded:
        tables.append(Changes)

    source = get_db()
    stamp = datetime.now().strftime("%Y%m%d-%H%M%S")
    with tempfile.TemporaryDirectory() as folder:
        path = os.path.join(folder, f"{config.get_name()}_{stamp}.db")
        try:
            backup = _connect(path)
            try:
                ensure_tables(backup, *_BACKUP_TABLES)
                backup.execute("BEGIN")
                for model in tables:
                    _copy_table(source, backup, model)
                backup.execute("COMMIT")
            finally:
                backup.close()
            with open(path, "rb") as handle:
                return handle.read()
        except (sqlite3.Error, OSError) as exc:
            raise DatabaseError(str(exc)) from exc


def is_sqlite_db(file: BinaryIO) -> bool:
    """Return True when ``file`` starts with the SQLite file signature."""
    data = file.read(len(_SQLITE_SIGNATURE))
    if not data:
        raise DatabaseError("unexpected end of file")
    return data == _SQLITE_SIGNATURE


def _remove_if_exists(path: str, failure: str) -> None:
    if os.path.exists(path):
        try:
            os.remove(path)
        except OSError as exc:
            raise DatabaseError(f"{failure}: {exc}") from exc


def _check_db(path: str) -> None:
    try:
        conn = sqlite3.connect(path)
        try:
            conn.execute("SELECT count(*) FROM sqlite_master").fetchone()
        finally:
            conn.close()
    except sqlite3.Error as exc:
        raise DatabaseError(f"Error checking db: {exc}") from exc


def _restore(fallback_path: str, db_path: str, failure: str, cause: Exception) -> DatabaseError:
    try:
        os.replace(fallback_path, db_path)
    except OSError as exc:
        return DatabaseError(f"{failure} and restoring fallback: {exc}")
    return DatabaseError(f"{failure}: {cause}")


def import_db(file: BinaryIO, db_path: Optional[str] = None) -> None:
    """Replace the database with the uploaded SQLite file and schedule a restart.

    The current file is kept aside while the new one is migrated and
    opened, and put back if that fails.
    """
    db_path = db_path or config.get_db_path()
    try:
        valid = is_sqlite_db(file)
    except (OSError, DatabaseError) as exc:
        raise DatabaseError(f"Error checking db file format: {exc}") from exc
    if not valid:
        raise DatabaseError("Invalid db file format")
    try:
        file.seek(0)
    except OSError as exc:
        raise DatabaseError(f"Error resetting file reader: {exc}") from exc

    temp_path = f"{db_path}.temp"
    _remove_if_exists(temp_path, "Error removing existing temporary db file")
    try:
        close_db()
        try:
            with open(temp_path, "wb") as out:
                shutil.copyfileobj(file, out)
        except OSError as exc:
            raise DatabaseError(f"Error saving db: {exc}") from exc
        _check_db(temp_path)

        fallback_path = f"{db_path}.backup"
        _remove_if_exists(fallback_path, "Error removing existing fallback db file")
        try:
            os.replace(db_path, fallback_path)
        except OSError as exc:
            raise DatabaseError(f"Error backing up temporary db file: {exc}") from exc
        try:
            try:
                os.replace(temp_path, db_path)
            except OSError as exc:
                raise _restore(fallback_path, db_path, "Error moving db file", exc) from exc
            try:
                migration.migrate_db(db_path)
                init_db(db_path)
            except (migration.MigrationError, DatabaseError, sqlite3.Error, OSError) as exc:
                close_db()
                raise _restore(fallback_path, db_path, "Error migrating db", exc) from exc
        finally:
            if os.path.exists(fallback_path):
                os.remove(fallback_path)
    finally:
        if os.path.exists(temp_path):
            os.remove(temp_path)

    send_sighup(_RESTART_DELAY)


def send_sighup(delay: float = _RESTART_DELAY) -> threading.Timer:
    """Ask this process to restart after ``delay`` seconds; return the timer."""

    def _signal() -> None:
        try:
            os.kill(os.getpid(), _RESTART_SIGNAL)
        except OSError as exc:
            logger.error("send signal SIGHUP failed:", exc)

    timer = threading.Timer(delay, _signal)
    timer.daemon = True
    timer.start()
    return timer