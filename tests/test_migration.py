import json
import sqlite3

import pytest

from suipanel import config
from suipanel.migration import (
    MigrationError,
    anytls_user_config,
    changes_obj,
    default_config_path,
    delete_old_web_secret,
    drop_inbound_data,
    migrate_changes,
    migrate_client_schema,
    migrate_clients,
    migrate_db,
    migrate_dns,
    migrate_tls,
    move_json_to_db,
    remove_outbound_strategy,
    to1_3,
)
from suipanel.model import ensure_tables


def _text(value):
    return value.decode() if isinstance(value, bytes) else value


def _columns(conn, table):
    return [row[1] for row in conn.execute(f'PRAGMA table_info("{table}")')]


@pytest.fixture
def conn():
    c = sqlite3.connect(":memory:")
    ensure_tables(c)
    yield c
    c.close()


def test_delete_old_web_secret(conn):
    conn.execute("INSERT INTO settings (key, value) VALUES ('webSecret', 'x')")
    conn.execute("INSERT INTO settings (key, value) VALUES ('webPort', '2095')")
    delete_old_web_secret(conn)
    keys = [r[0] for r in conn.execute("SELECT key FROM settings")]
    assert keys == ["webPort"]


def test_changes_obj_quotes_deplete_job_objects(conn):
    conn.execute("INSERT INTO changes (actor, obj) VALUES ('DepleteJob', CAST('alice' AS BLOB))")
    conn.execute("INSERT INTO changes (actor, obj) VALUES ('DepleteJob', CAST('\"bob\"' AS BLOB))")
    conn.execute("INSERT INTO changes (actor, obj) VALUES ('admin', CAST('carol' AS BLOB))")
    changes_obj(conn)
    objs = [_text(r[0]) for r in conn.execute("SELECT obj FROM changes ORDER BY id")]
    assert objs == ['"alice"', '"bob"', "carol"]


def test_migrate_client_schema_converts_text_columns():
    c = sqlite3.connect(":memory:")
    c.execute(
        "CREATE TABLE clients (id integer PRIMARY KEY, name text, "
        "config text, inbounds text, links text)"
    )
    c.execute(
        "INSERT INTO clients (name, config, inbounds, links) VALUES (?, ?, ?, ?)",
        ("u1", '{"vless": {"name": "u1"}}', "in1,in2", "not json"),
    )
    migrate_client_schema(c)
    config_value, inbounds, links = c.execute(
        "SELECT config, inbounds, links FROM clients"
    ).fetchone()
    assert json.loads(_text(config_value)) == {"vless": {"name": "u1"}}
    assert json.loads(_text(inbounds)) == ["in1", "in2"]
    assert json.loads(_text(links)) == []


def test_migrate_dns_rewrites_servers(conn):
    settings = {
        "dns": {
            "servers": [
                {"tag": "l", "address": "local"},
                {"tag": "p", "address": "8.8.8.8", "strategy": "ipv4_only"},
                {"tag": "t", "address": "tls://1.1.1.1:853", "address_resolver": "l"},
                {"tag": "d", "address": "dhcp://auto"},
                {"tag": "r", "address": "rcode://success"},
                {"tag": "bad", "address": "1.1.1.1:53"},
            ]
        }
    }
    conn.execute("INSERT INTO settings (key, value) VALUES ('config', ?)", (json.dumps(settings),))
    migrate_dns(conn)
    value = conn.execute("SELECT value FROM settings WHERE key = 'config'").fetchone()[0]
    servers = {s["tag"]: s for s in json.loads(value)["dns"]["servers"]}
    assert servers["l"] == {"tag": "l", "type": "local"}
    assert servers["p"] == {"tag": "p", "type": "udp", "server": "8.8.8.8"}
    assert servers["t"]["type"] == "tls"
    assert servers["t"]["server"] == "1.1.1.1:853"
    assert servers["t"]["server_port"] == 853
    assert servers["t"]["domain_resolver"] == "l"
    assert "address_resolver" not in servers["t"]
    assert servers["d"] == {"tag": "d", "type": "dhcp"}
    assert servers["r"]["type"] == "predefined"
    assert servers["r"]["responses"] == [{"rcode": "SUCCESS"}]
    assert servers["bad"] == {"tag": "bad", "address": "1.1.1.1:53"}


def test_migrate_dns_without_config_setting_raises(conn):
    with pytest.raises(MigrationError):
        migrate_dns(conn)


def test_remove_outbound_strategy(conn):
    conn.execute(
        "INSERT INTO outbounds (type, tag, options) VALUES ('direct', 'd', ?)",
        (b'{"domain_strategy": "ipv4_only", "tcp_fast_open": true}',),
    )
    remove_outbound_strategy(conn)
    options = conn.execute("SELECT options FROM outbounds").fetchone()[0]
    assert json.loads(_text(options)) == {"tcp_fast_open": True}


def test_anytls_user_config_copies_trojan(conn):
    conn.execute(
        "INSERT INTO clients (name, config) VALUES ('a', ?)",
        (b'{"trojan": {"name": "a", "password": "x"}}',),
    )
    conn.execute(
        "INSERT INTO clients (name, config) VALUES ('b', ?)",
        (b'{"trojan": {"name": "b"}, "anytls": {"name": "keep"}}',),
    )
    anytls_user_config(conn)
    rows = conn.execute("SELECT name, config FROM clients ORDER BY id").fetchall()
    first = json.loads(_text(rows[0][1]))
    second = json.loads(_text(rows[1][1]))
    assert first["anytls"] == first["trojan"]
    assert second["anytls"] == {"name": "keep"}


def test_migrate_clients_replaces_tags_with_ids(conn):
    conn.execute("INSERT INTO inbounds (type, tag) VALUES ('vless', 'in1')")
    conn.execute("INSERT INTO inbounds (type, tag) VALUES ('vmess', 'in2')")
    ids = dict(conn.execute("SELECT tag, id FROM inbounds").fetchall())
    conn.execute("INSERT INTO clients (name, inbounds) VALUES ('a', ?)", (b'["in1", "in2"]',))
    conn.execute("INSERT INTO clients (name, inbounds) VALUES ('b', ?)", (b'["missing"]',))
    migrate_clients(conn)
    rows = conn.execute("SELECT inbounds FROM clients ORDER BY id").fetchall()
    assert sorted(json.loads(_text(rows[0][0]))) == sorted([ids["in1"], ids["in2"]])
    assert json.loads(_text(rows[1][0])) is None


def test_migrate_clients_invalid_json_raises(conn):
    conn.execute("INSERT INTO clients (name, inbounds) VALUES ('a', ?)", (b"in1,in2",))
    with pytest.raises(ValueError):
        migrate_clients(conn)


def test_migrate_tls_drops_column_and_filters_client(conn):
    conn.execute("ALTER TABLE tls ADD COLUMN inbounds text")
    conn.execute(
        "INSERT INTO tls (name, server, client, inbounds) VALUES ('t', ?, ?, ?)",
        (b'{"enabled": true}', b'{"insecure": true, "server_name": "x", "utls": {}}', '["in1"]'),
    )
    migrate_tls(conn)
    assert "inbounds" not in _columns(conn, "tls")
    name, server, client = conn.execute("SELECT name, server, client FROM tls").fetchone()
    assert name == "t"
    assert json.loads(_text(server)) == {"enabled": True}
    assert json.loads(_text(client)) == {"insecure": True, "utls": {}}


def test_migrate_changes_and_drop_inbound_data(conn):
    conn.execute('ALTER TABLE changes ADD COLUMN "index" integer')
    conn.execute("INSERT INTO changes (actor, key) VALUES ('admin', 'clients')")
    conn.execute("CREATE TABLE inbound_data (id integer, tag text)")
    migrate_changes(conn)
    drop_inbound_data(conn)
    assert "index" not in _columns(conn, "changes")
    assert conn.execute("SELECT actor FROM changes").fetchall() == [("admin",)]
    assert _columns(conn, "inbound_data") == []


def test_move_json_to_db_missing_file_is_noop(conn, tmp_path):
    move_json_to_db(conn, str(tmp_path / "config.json"))
    assert conn.execute("SELECT COUNT(*) FROM settings").fetchone()[0] == 0


def test_move_json_to_db(conn, tmp_path):
    conn.execute("ALTER TABLE tls ADD COLUMN inbounds text")
    conn.execute("CREATE TABLE inbound_data (id integer PRIMARY KEY, tag text, addrs blob, out_json blob)")
    conn.execute(
        "INSERT INTO inbound_data (tag, addrs, out_json) VALUES ('in2', ?, ?)",
        (
            b'[{"server": "a.example.com", "tls": true, "insecure": true, '
            b'"server_name": "sni.example.com"}]',
            b'{"x": 1}',
        ),
    )
    old = {
        "inbounds": [
            {"type": "vless", "tag": "in1", "listen_port": 443, "sniff": True,
             "tls": {"enabled": True, "server_name": "example.com"}},
            {"type": "socks", "tag": "in2", "listen_port": 1080},
        ],
        "outbounds": [
            {"type": "direct", "tag": "direct", "override_address": "1.2.3.4"},
            {"type": "block", "tag": "block"},
            {"type": "dns", "tag": "dns-out"},
            {"type": "wireguard", "tag": "wg", "private_key": "placeholder"},
        ],
        "route": {"rules": [
            {"outbound": "block", "domain": ["ads.example.com"]},
            {"outbound": "dns-out", "protocol": "dns"},
            {"outbound": "direct", "ip_cidr": ["10.0.0.0/8"]},
        ]},
        "experimental": {"clash_api": {}, "v2ray_api": {}, "cache_file": {"enabled": True}},
        "log": {"level": "info"},
    }
    path = tmp_path / "config.json"
    path.write_text(json.dumps(old))
    move_json_to_db(conn, str(path))

    inbounds = {
        r[0]: r[1:]
        for r in conn.execute("SELECT tag, tls_id, addrs, out_json, options FROM inbounds")
    }
    tls_row = conn.execute("SELECT id, name, server FROM tls").fetchone()
    assert tls_row[1] == "in1"
    assert json.loads(_text(tls_row[2])) == {"enabled": True, "server_name": "example.com"}
    assert inbounds["in1"][0] == tls_row[0]
    assert json.loads(_text(inbounds["in1"][1])) == []
    assert json.loads(_text(inbounds["in1"][2])) == {}
    assert json.loads(_text(inbounds["in1"][3])) == {"listen_port": 443}
    assert json.loads(_text(inbounds["in2"][1])) == [
        {"server": "a.example.com",
         "tls": {"enabled": True, "insecure": True, "server_name": "sni.example.com"}}
    ]
    assert json.loads(_text(inbounds["in2"][2])) == {"x": 1}

    outbounds = conn.execute("SELECT tag, options FROM outbounds").fetchall()
    assert [o[0] for o in outbounds] == ["direct"]
    assert json.loads(_text(outbounds[0][1])) == {}
    endpoints = conn.execute("SELECT type, tag FROM endpoints").fetchall()
    assert endpoints == [("wireguard", "wg")]

    saved = json.loads(conn.execute("SELECT value FROM settings WHERE key = 'config'").fetchone()[0])
    assert "inbounds" not in saved and "outbounds" not in saved
    rules = saved["route"]["rules"]
    assert [r["action"] for r in rules] == ["reject", "hijack-dns", "route", "sniff"]
    assert "outbound" not in rules[0] and "outbound" not in rules[1]
    assert rules[2]["outbound"] == "direct"
    assert saved["experimental"] == {"cache_file": {"enabled": True}}
    assert saved["log"] == {"level": "info"}


def test_to1_3_runs_all_steps(conn):
    conn.execute("INSERT INTO settings (key, value) VALUES ('config', ?)",
                 (json.dumps({"dns": {"servers": [{"tag": "l", "address": "local"}]}}),))
    conn.execute("INSERT INTO clients (name, config) VALUES ('a', ?)", (b'{"trojan": {"name": "a"}}',))
    to1_3(conn)
    cfg = json.loads(_text(conn.execute("SELECT config FROM clients").fetchone()[0]))
    assert cfg["anytls"] == {"name": "a"}
    saved = json.loads(conn.execute("SELECT value FROM settings WHERE key = 'config'").fetchone()[0])
    assert saved["dns"]["servers"][0]["type"] == "local"


def test_default_config_path_uses_bin_folder(monkeypatch):
    monkeypatch.setenv("SUI_BIN_FOLDER", "custom")
    assert default_config_path().endswith("/custom/config.json")


def test_migrate_db_missing_database(tmp_path, capsys):
    migrate_db(str(tmp_path / "none.db"), str(tmp_path / "none.json"))
    assert "Database not found" in capsys.readouterr().err
    assert not (tmp_path / "none.db").exists()


def _make_db(path, version, with_config):
    c = sqlite3.connect(path)
    ensure_tables(c)
    c.execute("INSERT INTO settings (key, value) VALUES ('version', ?)", (version,))
    if with_config:
        c.execute("INSERT INTO settings (key, value) VALUES ('config', '{}')")
    c.execute("INSERT INTO clients (name, config) VALUES ('a', ?)", (b'{"trojan": {"name": "a"}}',))
    c.commit()
    c.close()


def _version(path):
    c = sqlite3.connect(path)
    try:
        return c.execute("SELECT value FROM settings WHERE key = 'version'").fetchone()[0]
    finally:
        c.close()


def test_migrate_db_from_1_2(tmp_path, capsys):
    db_path = str(tmp_path / "s-ui.db")
    _make_db(db_path, "1.2.5", with_config=True)
    migrate_db(db_path, str(tmp_path / "none.json"))
    assert _version(db_path) == config.get_version()
    assert "Migration done!" in capsys.readouterr().out
    c = sqlite3.connect(db_path)
    cfg = json.loads(_text(c.execute("SELECT config FROM clients").fetchone()[0]))
    c.close()
    assert cfg["anytls"] == {"name": "a"}


def test_migrate_db_up_to_date(tmp_path, capsys):
    db_path = str(tmp_path / "s-ui.db")
    _make_db(db_path, config.get_version(), with_config=False)
    migrate_db(db_path, str(tmp_path / "none.json"))
    assert "no need to migrate" in capsys.readouterr().out


def test_migrate_db_failure_rolls_back(tmp_path):
    db_path = str(tmp_path / "s-ui.db")
    _make_db(db_path, "1.2.0", with_config=False)
    with pytest.raises(MigrationError, match="Migration to 1.3 failed"):
        migrate_db(db_path, str(tmp_path / "none.json"))
    assert _version(db_path) == "1.2.0"
    c = sqlite3.connect(db_path)
    cfg = json.loads(_text(c.execute("SELECT config FROM clients").fetchone()[0]))
    c.close()
    assert "anytls" not in cfg