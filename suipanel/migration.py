"""Database schema and data migrations between panel versions."""

from __future__ import annotations

import json
import os
import re
import sqlite3
import sys
from typing import Any, Callable, Optional

from suipanel import config
from suipanel.model import Changes, Endpoint, Inbound, Outbound, Tls, ensure_tables


class MigrationError(Exception):
    """Raised when a migration step cannot be completed."""


_SCHEME_RE = re.compile(r"([A-Za-z][A-Za-z0-9+.\-]*):")
_TLS_CLIENT_KEYS = frozenset({"insecure", "disable_sni", "utls", "ech", "reality"})
_DNS_TRANSPORTS = frozenset({"udp", "tcp", "tls", "quic", "https", "h3"})
_DEPRECATED_INBOUND_FIELDS = (
    "sniff",
    "sniff_override_destination",
    "sniff_timeout",
    "domain_strategy",
)


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).decode("utf-8")
    return str(value)


def _load(value: Any) -> Any:
    """Decode a stored JSON column; an empty value is an error."""
    return json.loads(_text(value))


def _encode(obj: Any) -> bytes:
    return json.dumps(obj, indent=2, sort_keys=True, ensure_ascii=False).encode("utf-8")


def _encode_compact(obj: Any) -> bytes:
    return json.dumps(obj, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def _columns(conn: sqlite3.Connection, table: str) -> list[tuple[str, str]]:
    return [
        (row[1], row[2] or "")
        for row in conn.execute(f'PRAGMA table_info("{table}")').fetchall()
    ]


def _has_table(conn: sqlite3.Connection, table: str) -> bool:
    row = conn.execute(
        "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?", (table,)
    ).fetchone()
    return row is not None


def _insert(conn: sqlite3.Connection, table: str, values: dict[str, Any]) -> int:
    names = ", ".join(f'"{name}"' for name in values)
    marks = ", ".join("?" for _ in values)
    cursor = conn.execute(
        f'INSERT INTO "{table}" ({names}) VALUES ({marks})', tuple(values.values())
    )
    return int(cursor.lastrowid)


def _drop_column(conn: sqlite3.Connection, model: type, column: str) -> None:
    """Remove a column, rebuilding the table when SQLite cannot drop it."""
    table = model.table
    try:
        conn.execute(f'ALTER TABLE "{table}" DROP COLUMN "{column}"')
        return
    except sqlite3.OperationalError:
        pass
    old_table = f"{table}__old"
    old_columns = {name for name, _ in _columns(conn, table)}
    conn.execute(f'ALTER TABLE "{table}" RENAME TO "{old_table}"')
    ensure_tables(conn, model)
    shared = [name for name, _ in model.columns if name in old_columns and name != column]
    names = ", ".join(f'"{name}"' for name in shared)
    conn.execute(f'INSERT INTO "{table}" ({names}) SELECT {names} FROM "{old_table}"')
    conn.execute(f'DROP TABLE "{old_table}"')


# --- version 1.1 -----------------------------------------------------------


def migrate_client_schema(conn: sqlite3.Connection) -> None:
    """Turn the old text columns of clients into JSON documents."""
    for name, col_type in _columns(conn, "clients"):
        if name not in ("config", "inbounds", "links") or col_type != "text":
            continue
        print(f"Column {name} has type TEXT")
        rows = conn.execute(f'SELECT id, "{name}" FROM clients').fetchall()
        for client_id, value in rows:
            data = _text(value)
            if name == "inbounds":
                new_value: Any = data.split(",")
            else:
                try:
                    parsed = json.loads(data)
                except ValueError:
                    parsed = None
                if name == "config":
                    new_value = parsed if isinstance(parsed, dict) else {}
                else:
                    new_value = parsed if isinstance(parsed, list) else []
            conn.execute(
                f'UPDATE clients SET "{name}" = ? WHERE id = ?',
                (_encode(new_value), client_id),
            )


def delete_old_web_secret(conn: sqlite3.Connection) -> None:
    """Remove the obsolete webSecret setting."""
    conn.execute("DELETE FROM settings WHERE key = ?", ("webSecret",))


def changes_obj(conn: sqlite3.Connection) -> None:
    """Quote the bare objects recorded by the deplete job as JSON strings."""
    conn.execute(
        "UPDATE changes SET obj = CAST('\"' || CAST(obj AS TEXT) || '\"' AS BLOB) "
        "WHERE actor = ? and obj not like ?",
        ("DepleteJob", '"%"'),
    )


def to1_1(conn: sqlite3.Connection) -> None:
    """Apply every step of the 1.1 migration."""
    migrate_client_schema(conn)
    delete_old_web_secret(conn)
    changes_obj(conn)


# --- version 1.2 -----------------------------------------------------------


def _convert_addrs(raw: Any) -> Optional[list[dict[str, Any]]]:
    try:
        addrs = _load(raw)
    except ValueError:
        return None
    if not isinstance(addrs, list) or not all(isinstance(a, dict) for a in addrs):
        return None
    for addr in addrs:
        enabled = addr.get("tls")
        if not isinstance(enabled, bool):
            continue
        new_tls: dict[str, Any] = {"enabled": enabled}
        if isinstance(addr.get("insecure"), bool):
            new_tls["insecure"] = addr.pop("insecure")
        if isinstance(addr.get("server_name"), str):
            new_tls["server_name"] = addr.pop("server_name")
        addr["tls"] = new_tls
    return addrs


def _migrate_inbound(conn: sqlite3.Connection, inbound: dict[str, Any]) -> None:
    tag = inbound.get("tag") if isinstance(inbound.get("tag"), str) else ""
    if "tls" in inbound:
        row = conn.execute(
            "SELECT id FROM tls WHERE inbounds like ?", (f'%"{tag}"%',)
        ).fetchone()
        tls_id = int(row[0]) if row and row[0] else 0
        if tls_id > 0:
            inbound["tls_id"] = tls_id
        else:
            tls_server = _encode(inbound["tls"])
            if len(tls_server) > 5:
                inbound["tls_id"] = _insert(
                    conn,
                    Tls.table,
                    {"name": tag, "server": tls_server, "client": b"{}"},
                )

    try:
        data = conn.execute(
            "select id,addrs,out_json from inbound_data where tag = ?", (tag,)
        ).fetchone()
    except sqlite3.OperationalError:
        data = None
    if data and data[0]:
        out_json = data[2]
        inbound["out_json"] = None if not _text(out_json) else _load(out_json)
        inbound["addrs"] = _convert_addrs(data[1])
    else:
        inbound["out_json"] = {}
        inbound["addrs"] = []
    for field in _DEPRECATED_INBOUND_FIELDS:
        inbound.pop(field, None)

    record = Inbound.from_json(inbound)
    _insert(
        conn,
        Inbound.table,
        {
            "id": record.id or None,
            "type": record.type,
            "tag": record.tag,
            "tls_id": record.tls_id,
            "addrs": _encode(record.addrs),
            "out_json": _encode(record.out_json),
            "options": _encode(record.options),
        },
    )


def _migrate_outbounds(
    conn: sqlite3.Connection, outbounds: list[Any]
) -> tuple[list[str], list[str]]:
    block_tags: list[str] = []
    dns_tags: list[str] = []
    for outbound in outbounds:
        out_type = outbound.get("type") if isinstance(outbound, dict) else None
        if out_type == "wireguard":
            endpoint = Endpoint.from_json(outbound)
            _insert(
                conn,
                Endpoint.table,
                {
                    "id": endpoint.id or None,
                    "type": endpoint.type,
                    "tag": endpoint.tag,
                    "options": _encode(endpoint.options),
                    "ext": _encode(endpoint.ext),
                },
            )
            continue
        record = Outbound.from_json(outbound)
        if record.type == "direct" and record.options is not None:
            record.options.pop("override_address", None)
            record.options.pop("override_port", None)
        if record.type == "dns":
            dns_tags.append(record.tag)
        elif record.type == "block":
            block_tags.append(record.tag)
        else:
            _insert(
                conn,
                Outbound.table,
                {
                    "id": record.id or None,
                    "type": record.type,
                    "tag": record.tag,
                    "options": _encode(record.options),
                },
            )
    return block_tags, dns_tags


def _rewrite_rules(route: dict[str, Any], block_tags: list[str], dns_tags: list[str]) -> None:
    rules = route.get("rules")
    if not isinstance(rules, list):
        return
    has_dns = False
    for rule in rules:
        if not isinstance(rule, dict):
            continue
        outbound_tag = rule.get("outbound")
        is_block = outbound_tag in block_tags
        is_dns = outbound_tag in dns_tags
        if is_block:
            rule.pop("outbound", None)
            rule["action"] = "reject"
        if is_dns:
            has_dns = True
            rule.pop("outbound", None)
            rule["action"] = "hijack-dns"
        if not is_block and not is_dns:
            rule["action"] = "route"
    if has_dns:
        rules.append({"action": "sniff"})


def move_json_to_db(conn: sqlite3.Connection, config_path: str) -> None:
    """Move the old JSON configuration file into the database."""
    if not os.path.exists(config_path):
        return
    with open(config_path, encoding="utf-8") as handle:
        old_config = json.load(handle)
    if not isinstance(old_config, dict):
        raise MigrationError("configuration file does not hold a JSON object")

    inbounds = old_config.get("inbounds")
    if not isinstance(inbounds, list):
        raise MigrationError("configuration has no inbounds list")
    conn.execute(f'DROP TABLE IF EXISTS "{Inbound.table}"')
    ensure_tables(conn, Inbound)
    for inbound in inbounds:
        _migrate_inbound(conn, dict(inbound) if isinstance(inbound, dict) else {})
    del old_config["inbounds"]

    outbounds = old_config.get("outbounds")
    if not isinstance(outbounds, list):
        raise MigrationError("configuration has no outbounds list")
    conn.execute(f'DROP TABLE IF EXISTS "{Outbound.table}"')
    conn.execute(f'DROP TABLE IF EXISTS "{Endpoint.table}"')
    ensure_tables(conn, Outbound, Endpoint)
    block_tags, dns_tags = _migrate_outbounds(conn, outbounds)
    del old_config["outbounds"]

    route = old_config.get("route")
    if isinstance(route, dict):
        _rewrite_rules(route, block_tags, dns_tags)

    experimental = old_config.get("experimental")
    if isinstance(experimental, dict):
        experimental.pop("v2ray_api", None)
        experimental.pop("clash_api", None)

    other_configs = json.dumps(old_config, indent=2, sort_keys=True, ensure_ascii=False)
    _insert(conn, "settings", {"key": "config", "value": other_configs})


def migrate_tls(conn: sqlite3.Connection) -> None:
    """Drop the inbounds column of tls and trim the client settings."""
    if "inbounds" not in {name for name, _ in _columns(conn, Tls.table)}:
        return
    _drop_column(conn, Tls, "inbounds")
    for tls_id, client in conn.execute("SELECT id, client FROM tls").fetchall():
        try:
            tls_client = _load(client)
        except ValueError:
            continue
        if tls_client is None:
            new_client: Any = None
        elif isinstance(tls_client, dict):
            new_client = {k: v for k, v in tls_client.items() if k in _TLS_CLIENT_KEYS}
        else:
            continue
        conn.execute("UPDATE tls SET client = ? WHERE id = ?", (_encode(new_client), tls_id))


def drop_inbound_data(conn: sqlite3.Connection) -> None:
    """Drop the obsolete inbound_data table."""
    conn.execute("DROP TABLE IF EXISTS inbound_data")


def migrate_clients(conn: sqlite3.Connection) -> None:
    """Replace inbound tags in clients with inbound ids."""
    for client_id, inbounds in conn.execute("SELECT id, inbounds FROM clients").fetchall():
        tags = _load(inbounds)
        if tags is None:
            tags = []
        if not isinstance(tags, list) or not all(isinstance(t, str) for t in tags):
            raise MigrationError(f"client {client_id} has invalid inbounds")
        ids: list[int] = []
        if tags:
            marks = ", ".join("?" for _ in tags)
            ids = [
                int(row[0])
                for row in conn.execute(
                    f"SELECT id FROM inbounds WHERE tag in ({marks})", tags
                ).fetchall()
            ]
        conn.execute(
            "UPDATE clients SET inbounds = ? WHERE id = ?",
            (_encode_compact(ids or None), client_id),
        )


def migrate_changes(conn: sqlite3.Connection) -> None:
    """Drop the index column of changes."""
    if "index" in {name for name, _ in _columns(conn, Changes.table)}:
        _drop_column(conn, Changes, "index")


def to1_2(conn: sqlite3.Connection, config_path: str) -> None:
    """Apply every step of the 1.2 migration."""
    move_json_to_db(conn, config_path)
    migrate_tls(conn)
    drop_inbound_data(conn)
    migrate_clients(conn)
    migrate_changes(conn)


# --- version 1.3 -----------------------------------------------------------


def _parse_url(addr: str) -> Optional[tuple[str, str]]:
    """Split an address into scheme and host; None when it is not a URL."""
    raw = addr.split("#", 1)[0]
    match = _SCHEME_RE.match(raw)
    if match:
        scheme = match.group(1).lower()
        rest = raw[match.end():]
    elif raw.startswith(":"):
        return None
    else:
        scheme = ""
        rest = raw
    rest = rest.split("?", 1)[0]
    if rest.startswith("//") and (scheme or not rest.startswith("///")):
        authority = rest[2:].split("/", 1)[0]
        return scheme, authority.rpartition("@")[2]
    if not scheme and not rest.startswith("/") and ":" in rest.split("/", 1)[0]:
        return None
    return scheme, ""


def _url_port(host: str) -> str:
    colon = host.find(":")
    if colon == -1:
        return ""
    bracket = host.find("]:")
    if bracket != -1:
        return host[bracket + 2:]
    if ":" in host[colon + 1:]:
        return ""
    return host[colon + 1:]


def _migrate_dns_server(server: dict[str, Any]) -> None:
    addr = server.get("address")
    if not isinstance(addr, str) or not addr:
        return
    if addr in ("local", "fakeip"):
        del server["address"]
        server["type"] = addr
        return
    parsed = _parse_url(addr)
    if parsed is None:
        return
    scheme, host = parsed
    if scheme == "":
        server["type"] = "udp"
        server["server"] = addr
    elif scheme in _DNS_TRANSPORTS:
        server["type"] = scheme
        server["server"] = host
    elif scheme == "dhcp":
        server["type"] = scheme
        if host not in ("auto", ""):
            server["interface"] = host
    elif scheme == "rcode":
        server["type"] = "predefined"
        server["responses"] = [{"rcode": host.upper()}]
    del server["address"]
    port = _url_port(host)
    if port.isdigit():
        server["server_port"] = int(port)
    resolver = server.get("address_resolver")
    if isinstance(resolver, str) and resolver:
        del server["address_resolver"]
        server["domain_resolver"] = resolver
    server.pop("strategy", None)


def migrate_dns(conn: sqlite3.Connection) -> None:
    """Rewrite DNS servers from address strings to typed entries."""
    row = conn.execute(
        "SELECT value FROM settings WHERE key = ? ORDER BY id LIMIT 1", ("config",)
    ).fetchone()
    if row is None:
        raise MigrationError("record not found: config setting")
    config_str = _text(row[0])
    if not config_str:
        return
    settings = json.loads(config_str)
    dns_config = settings.get("dns") if isinstance(settings, dict) else None
    if not isinstance(dns_config, dict):
        return
    servers = dns_config.get("servers")
    if isinstance(servers, list):
        for server in servers:
            if isinstance(server, dict):
                _migrate_dns_server(server)
    conn.execute(
        "UPDATE settings SET value = ? WHERE key = ?",
        (json.dumps(settings, indent=2, sort_keys=True, ensure_ascii=False), "config"),
    )


def remove_outbound_strategy(conn: sqlite3.Connection) -> None:
    """Remove domain_strategy from every outbound's options."""
    for outbound_id, options in conn.execute("SELECT id, options FROM outbounds").fetchall():
        fields = _load(options)
        if isinstance(fields, dict):
            fields.pop("domain_strategy", None)
        elif fields is not None:
            raise MigrationError(f"outbound {outbound_id} has invalid options")
        conn.execute(
            "UPDATE outbounds SET options = ? WHERE id = ?", (_encode(fields), outbound_id)
        )


def anytls_user_config(conn: sqlite3.Connection) -> None:
    """Give every client an anytls entry copied from its trojan entry."""
    for client_id, client_config in conn.execute("SELECT id, config FROM clients").fetchall():
        configs = _load(client_config)
        if configs is None:
            configs = {}
        if not isinstance(configs, dict):
            raise MigrationError(f"client {client_id} has invalid config")
        if "anytls" in configs:
            continue
        configs["anytls"] = configs.get("trojan")
        conn.execute(
            "UPDATE clients SET config = ? WHERE id = ?", (_encode(configs), client_id)
        )


def to1_3(conn: sqlite3.Connection) -> None:
    """Apply every step of the 1.3 migration."""
    anytls_user_config(conn)
    migrate_dns(conn)
    remove_outbound_strategy(conn)


# --- driver -----------------------------------------------------------------


def default_config_path() -> str:
    """Return where the old JSON configuration file was kept."""
    bin_folder = os.environ.get("SUI_BIN_FOLDER") or "bin"
    base = os.path.abspath(os.path.dirname(sys.argv[0]))
    return base + "/" + bin_folder + "/config.json"


def _run_step(label: str, step: Callable[..., None], *args: Any) -> None:
    try:
        step(*args)
    except (sqlite3.Error, ValueError, TypeError, KeyError, OSError, MigrationError) as exc:
        raise MigrationError(f"{label} failed: {exc}") from exc


def migrate_db(path: Optional[str] = None, config_path: Optional[str] = None) -> None:
    """Bring the database at ``path`` up to the current version in one transaction."""
    path = path or config.get_db_path()
    config_path = config_path or default_config_path()
    if not os.path.exists(path):
        print("Database not found", file=sys.stderr)
        return

    conn = sqlite3.connect(path, isolation_level=None)
    try:
        conn.execute("BEGIN")
        try:
            current_version = config.get_version()
            try:
                row = conn.execute(
                    "SELECT value FROM settings WHERE key = ?", ("version",)
                ).fetchone()
            except sqlite3.OperationalError:
                row = None
            db_version = _text(row[0]) if row else ""
            print("Current version:", current_version, "\nDatabase version:", db_version)

            if current_version == db_version:
                print("Database is up to date, no need to migrate")
            else:
                print("Start migrating database...")
                if db_version == "":
                    _run_step("Migration to 1.1", to1_1, conn)
                    _run_step("Migration to 1.2", to1_2, conn, config_path)
                    db_version = "1.2"
                if db_version[0:3] == "1.2":
                    _run_step("Migration to 1.3", to1_3, conn)
                _run_step(
                    "Update version",
                    lambda: conn.execute(
                        "UPDATE settings SET value = ? WHERE key = ?",
                        (current_version, "version"),
                    ),
                )
                print("Migration done!")
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")
    finally:
        conn.close()