"""Database records and their JSON forms."""

from __future__ import annotations

import json
import sqlite3
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, ClassVar, Optional, Union

JsonInput = Union[str, bytes, bytearray, Mapping]

_PK = "integer PRIMARY KEY AUTOINCREMENT"


def _load_object(data: JsonInput) -> dict[str, Any]:
    if isinstance(data, (bytes, bytearray)):
        data = data.decode("utf-8")
    if isinstance(data, str):
        raw = json.loads(data)
    elif isinstance(data, Mapping):
        raw = dict(data)
    else:
        raise TypeError(f"cannot decode {type(data).__name__} as JSON")
    if not isinstance(raw, dict):
        raise ValueError("JSON object expected")
    return raw


def _pop_id(raw: dict[str, Any], key: str = "id") -> int:
    value = raw.pop(key, None)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return int(value)
    return 0


def _pop_str(raw: dict[str, Any], key: str) -> str:
    value = raw.pop(key, None)
    return value if isinstance(value, str) else ""


def _pop_required_str(raw: dict[str, Any], key: str) -> str:
    if key not in raw:
        raise ValueError(f"missing field: {key}")
    value = raw.pop(key)
    if not isinstance(value, str):
        raise ValueError(f"field {key} must be a string")
    return value


def _merge_options(combined: dict[str, Any], options: Any) -> None:
    if options is None:
        return
    if not isinstance(options, dict):
        raise ValueError("options must be a JSON object")
    combined.update(options)


def _dumps(obj: Any) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


@dataclass
class Setting:
    table: ClassVar[str] = "settings"
    columns: ClassVar[tuple[tuple[str, str], ...]] = (
        ("id", _PK),
        ("key", "text"),
        ("value", "text"),
    )

    id: int = 0
    key: str = ""
    value: str = ""


@dataclass
class Tls:
    table: ClassVar[str] = "tls"
    columns: ClassVar[tuple[tuple[str, str], ...]] = (
        ("id", _PK),
        ("name", "text"),
        ("server", "blob"),
        ("client", "blob"),
    )

    id: int = 0
    name: str = ""
    server: Any = None
    client: Any = None


@dataclass
class User:
    table: ClassVar[str] = "users"
    columns: ClassVar[tuple[tuple[str, str], ...]] = (
        ("id", _PK),
        ("username", "text"),
        ("password", "text"),
        ("last_logins", "text"),
    )

    id: int = 0
    username: str = ""
    password: str = ""
    last_logins: str = ""


@dataclass
class Client:
    table: ClassVar[str] = "clients"
    columns: ClassVar[tuple[tuple[str, str], ...]] = (
        ("id", _PK),
        ("enable", "numeric"),
        ("name", "text"),
        ("config", "blob"),
        ("inbounds", "blob"),
        ("links", "blob"),
        ("volume", "integer"),
        ("expiry", "integer"),
        ("down", "integer"),
        ("up", "integer"),
        ("desc", "text"),
        ("group", "text"),
    )

    id: int = 0
    enable: bool = False
    name: str = ""
    config: Any = None
    inbounds: Any = None
    links: Any = None
    volume: int = 0
    expiry: int = 0
    down: int = 0
    up: int = 0
    desc: str = ""
    group: str = ""


@dataclass
class Stats:
    table: ClassVar[str] = "stats"
    columns: ClassVar[tuple[tuple[str, str], ...]] = (
        ("id", _PK),
        ("date_time", "integer"),
        ("resource", "text"),
        ("tag", "text"),
        ("direction", "numeric"),
        ("traffic", "integer"),
    )

    id: int = 0
    date_time: int = 0
    resource: str = ""
    tag: str = ""
    direction: bool = False
    traffic: int = 0


@dataclass
class Changes:
    table: ClassVar[str] = "changes"
    columns: ClassVar[tuple[tuple[str, str], ...]] = (
        ("id", _PK),
        ("date_time", "integer"),
        ("actor", "text"),
        ("key", "text"),
        ("action", "text"),
        ("obj", "blob"),
    )

    id: int = 0
    date_time: int = 0
    actor: str = ""
    key: str = ""
    action: str = ""
    obj: Any = None


@dataclass
class Tokens:
    table: ClassVar[str] = "tokens"
    columns: ClassVar[tuple[tuple[str, str], ...]] = (
        ("id", _PK),
        ("desc", "text"),
        ("token", "text"),
        ("expiry", "integer"),
        ("user_id", "integer"),
    )

    id: int = 0
    desc: str = ""
    token: str = ""
    expiry: int = 0
    user_id: int = 0
    user: Optional[User] = None


@dataclass
class Outbound:
    table: ClassVar[str] = "outbounds"
    columns: ClassVar[tuple[tuple[str, str], ...]] = (
        ("id", _PK),
        ("type", "text"),
        ("tag", "text UNIQUE"),
        ("options", "blob"),
    )

    id: int = 0
    type: str = ""
    tag: str = ""
    options: Optional[dict[str, Any]] = None

    @classmethod
    def from_json(cls, data: JsonInput) -> "Outbound":
        """Build from a JSON object; unknown fields go to ``options``."""
        raw = _load_object(data)
        ident = _pop_id(raw)
        kind = _pop_str(raw, "type")
        tag = _pop_required_str(raw, "tag")
        return cls(id=ident, type=kind, tag=tag, options=raw)

    def to_json(self) -> str:
        """Return the flat JSON form used in the proxy configuration."""
        combined: dict[str, Any] = {"type": self.type, "tag": self.tag}
        _merge_options(combined, self.options)
        return _dumps(combined)


@dataclass
class Endpoint:
    table: ClassVar[str] = "endpoints"
    columns: ClassVar[tuple[tuple[str, str], ...]] = (
        ("id", _PK),
        ("type", "text"),
        ("tag", "text UNIQUE"),
        ("options", "blob"),
        ("ext", "blob"),
    )

    id: int = 0
    type: str = ""
    tag: str = ""
    options: Optional[dict[str, Any]] = None
    ext: Any = None

    @classmethod
    def from_json(cls, data: JsonInput) -> "Endpoint":
        """Build from a JSON object; ``ext`` is kept apart from the options."""
        raw = _load_object(data)
        ident = _pop_id(raw)
        kind = _pop_str(raw, "type")
        tag = _pop_required_str(raw, "tag")
        ext = raw.pop("ext", None)
        return cls(id=ident, type=kind, tag=tag, options=raw, ext=ext)

    def to_json(self) -> str:
        """Return the flat JSON form; a ``warp`` endpoint becomes ``wireguard``."""
        kind = "wireguard" if self.type == "warp" else self.type
        combined: dict[str, Any] = {"type": kind, "tag": self.tag}
        _merge_options(combined, self.options)
        return _dumps(combined)


@dataclass
class Inbound:
    table: ClassVar[str] = "inbounds"
    columns: ClassVar[tuple[tuple[str, str], ...]] = (
        ("id", _PK),
        ("type", "text"),
        ("tag", "text UNIQUE"),
        ("tls_id", "integer"),
        ("addrs", "blob"),
        ("out_json", "blob"),
        ("options", "blob"),
    )

    id: int = 0
    type: str = ""
    tag: str = ""
    tls_id: int = 0
    tls: Optional[Tls] = None
    addrs: Any = None
    out_json: Any = None
    options: Optional[dict[str, Any]] = None

    @classmethod
    def from_json(cls, data: JsonInput) -> "Inbound":
        """Build from a JSON object; ``tls`` and ``users`` are dropped."""
        raw = _load_object(data)
        ident = _pop_id(raw)
        kind = _pop_str(raw, "type")
        tag = _pop_str(raw, "tag")
        tls_id = _pop_id(raw, "tls_id")
        raw.pop("tls", None)
        raw.pop("users", None)
        addrs = raw.pop("addrs", None)
        out_json = raw.pop("out_json", None)
        return cls(
            id=ident,
            type=kind,
            tag=tag,
            tls_id=tls_id,
            addrs=addrs,
            out_json=out_json,
            options=raw,
        )

    def to_json(self) -> str:
        """Return the flat JSON form, with the TLS server settings inlined."""
        combined: dict[str, Any] = {"type": self.type, "tag": self.tag}
        if self.tls is not None:
            combined["tls"] = self.tls.server
        _merge_options(combined, self.options)
        return _dumps(combined)

    def to_full(self) -> dict[str, Any]:
        """Return every stored field, options included, as one mapping."""
        combined: dict[str, Any] = {
            "id": self.id,
            "type": self.type,
            "tag": self.tag,
            "tls_id": self.tls_id,
            "addrs": self.addrs,
            "out_json": self.out_json,
        }
        _merge_options(combined, self.options)
        return combined


@dataclass
class Service:
    table: ClassVar[str] = "services"
    columns: ClassVar[tuple[tuple[str, str], ...]] = (
        ("id", _PK),
        ("type", "text"),
        ("tag", "text UNIQUE"),
        ("tls_id", "integer"),
        ("options", "blob"),
    )

    id: int = 0
    type: str = ""
    tag: str = ""
    tls_id: int = 0
    tls: Optional[Tls] = None
    options: Optional[dict[str, Any]] = None

    @classmethod
    def from_json(cls, data: JsonInput) -> "Service":
        """Build from a JSON object; ``tls`` is dropped."""
        raw = _load_object(data)
        ident = _pop_id(raw)
        kind = _pop_str(raw, "type")
        tag = _pop_str(raw, "tag")
        tls_id = _pop_id(raw, "tls_id")
        raw.pop("tls", None)
        return cls(id=ident, type=kind, tag=tag, tls_id=tls_id, options=raw)

    def to_json(self) -> str:
        """Return the flat JSON form, with the TLS server settings inlined."""
        combined: dict[str, Any] = {"type": self.type, "tag": self.tag}
        if self.tls is not None:
            combined["tls"] = self.tls.server
        _merge_options(combined, self.options)
        return _dumps(combined)

    def to_full(self) -> dict[str, Any]:
        """Return every stored field, options included, as one mapping."""
        combined: dict[str, Any] = {
            "id": self.id,
            "type": self.type,
            "tag": self.tag,
            "tls_id": self.tls_id,
        }
        _merge_options(combined, self.options)
        return combined


MODELS = (
    Setting,
    Tls,
    Inbound,
    Outbound,
    Service,
    Endpoint,
    User,
    Tokens,
    Stats,
    Client,
    Changes,
)


def ensure_tables(conn: sqlite3.Connection, *models: type) -> None:
    """Create missing tables and add missing columns for the given models.

    With no models given, every model is handled.
    """
    for model in models or MODELS:
        existing = {
            row[1] for row in conn.execute(f'PRAGMA table_info("{model.table}")')
        }
        if not existing:
            columns = ", ".join(f'"{name}" {decl}' for name, decl in model.columns)
            conn.execute(f'CREATE TABLE "{model.table}" ({columns})')
            continue
        for name, decl in model.columns:
            if name not in existing:
                sql_type = decl.split()[0]
                conn.execute(
                    f'ALTER TABLE "{model.table}" ADD COLUMN "{name}" {sql_type}'
                )


def drop_tables(conn: sqlite3.Connection, *models: type) -> None:
    """Drop the tables of the given models if they exist."""
    for model in models:
        conn.execute(f'DROP TABLE IF EXISTS "{model.table}"')