# suipanel

Building blocks of a proxy management panel, as a Python library: runtime
settings, logging with a history buffer, SQLite records and schema
migrations, database export and import, JSON reply helpers for an HTTP API,
automatic HTTP-to-HTTPS redirects and per-tag traffic counting.

## Modules

### `suipanel.config`

Settings read from the environment.

- `get_name()` and `get_version()` return the application name and version.
- `is_debug()` is true when `SUI_DEBUG` is `true`.
- `get_log_level()` returns a `LogLevel` (`DEBUG`, `INFO`, `WARN`, `ERROR`).
  Debug mode forces `debug`; an unset `SUI_LOG_LEVEL` means `info`; an
  unknown value raises `ValueError`.
- `get_db_folder_path()` returns `SUI_DB_FOLDER`, or a `db` folder next to the
  running program; `get_db_path()` returns `<folder>/<name>.db`.

### `suipanel.logger`

- `init_logger(level)` sends messages to syslog (`/dev/log`), or to stderr
  with a timestamp when syslog cannot be used.
- `debug`, `info`, `warning` and `error` take any number of arguments, log
  them and keep the message in a buffer of the last 10240 entries.
- `get_logs(count, level)` returns buffered lines at `level` or more severe,
  newest first, formatted as `YYYY/MM/DD HH:MM:SS LEVEL - message`. It stops
  once more than `count` lines are gathered, so up to `count + 1` come back.
  An unknown level name is treated as `ERROR`.
- `clear_logs()` empties the buffer; `get_logger()` returns the underlying
  `logging.Logger`.

### `suipanel.model`

Dataclasses for the database records: `Setting`, `Tls`, `User`, `Client`,
`Stats`, `Changes`, `Tokens`, `Outbound`, `Endpoint`, `Inbound` and
`Service`. Each carries its table name and column declarations.

`Outbound`, `Endpoint`, `Inbound` and `Service` keep their fixed fields apart
from free-form options:

- `from_json(data)` (a class method) accepts a JSON string, bytes or a
  mapping and moves every unknown field into `options`. `Outbound` and
  `Endpoint` require a string `tag`; `Inbound` drops `tls` and `users`,
  `Service` drops `tls`; `Endpoint` keeps `ext` separately.
- `to_json()` returns the flat JSON form with options merged back in. An
  `Endpoint` of type `warp` is written as `wireguard`; `Inbound` and
  `Service` inline `tls.server` as `tls` when a `Tls` is attached.
- `Inbound.to_full()` and `Service.to_full()` return every stored field,
  ids included, as one dictionary.

`ensure_tables(conn, *models)` creates missing tables and adds missing
columns (every model when none is given); `drop_tables(conn, *models)` drops
them.

### `suipanel.migration`

Upgrades of databases written by older versions.
`migrate_db(path=None, config_path=None)` reads the stored `version` setting
and, inside one transaction, runs `to1_1`, `to1_2` and `to1_3` as needed,
then records the current version. It prints its progress, does nothing when
the database file does not exist, and raises `MigrationError` (rolling back)
when a step fails. `path` defaults to `config.get_db_path()`; `config_path`
defaults to `default_config_path()`, a `config.json` in the `SUI_BIN_FOLDER`
folder (`bin` when unset) next to the program. Step 1.2 moves that file's
inbounds, outbounds, route rules and other settings into the database.

The individual steps are also public: `migrate_client_schema`,
`delete_old_web_secret`, `changes_obj`, `move_json_to_db`, `migrate_tls`,
`drop_inbound_data`, `migrate_clients`, `migrate_changes`, `migrate_dns`,
`remove_outbound_strategy` and `anytls_user_config`.

### `suipanel.database`

- `init_db(db_path)` opens the database (creating its folder), creates or
  completes the tables, adds a `direct` outbound when the outbounds table is
  new, and adds a first user named `admin` with the bcrypt-hashed password
  `admin` when there are no users. `open_db`, `get_db` and `close_db` manage
  the current connection; failures raise `DatabaseError`.
- `get_db_bytes(exclude="")` returns a copy of the database as file bytes.
  `exclude` is a comma separated list that may name `changes` and `stats` to
  leave those tables empty.
- `is_sqlite_db(file)` checks a binary file for the SQLite signature.
- `import_db(file, db_path=None)` replaces the database with an uploaded
  SQLite file: it checks the signature, keeps the current file aside, runs
  `migrate_db` and `init_db` on the new one, and puts the old file back if
  that fails. On success it calls `send_sighup`.
- `send_sighup(delay=3.0)` sends SIGHUP (SIGTERM on Windows) to the current
  process after `delay` seconds and returns the `threading.Timer`. Without a
  handler for that signal the process ends.

### `suipanel.httputil`

- `Msg(success, msg, obj)` is the reply envelope; `to_dict()` gives its JSON
  form.
- `json_msg_obj(msg, obj, err)` builds a successful reply, or a failed one
  whose message is `"<msg>: <err>"` (the error is also logged as a warning).
  `json_msg(msg, err=None)`, `json_obj(obj, err=None)` and
  `pure_json_msg(success, msg)` are shorthands.
- `get_remote_ip(headers, remote_addr)` returns the first `X-Forwarded-For`
  entry, or the host part of `remote_addr`.
- `get_hostname(host)` strips the port and brackets IPv6 addresses.
- `DomainValidator(app, domain)` is WSGI middleware answering `403 Forbidden`
  to requests whose host is not `domain`.

### `suipanel.autohttps`

`AutoHttpsListener(sock)` wraps a listening socket; `accept()` returns
`AutoHttpsConn` objects. On the first `recv`, a connection reads up to 2048
bytes: if they hold a complete plain HTTP request head, it replies
`307 Temporary Redirect` to `https://<host><uri>`, closes, and raises
`ConnectionAbortedError`; anything else (such as a TLS handshake) is handed
back to the reader unchanged.

### `suipanel.trackers`

- `StatsTracker.routed_connection(conn, inbound, outbound, user)` and
  `routed_packet_connection(...)` wrap a connection in a `CountingConn` that
  adds the bytes it receives and sends to the `Counter` of each non-empty tag.
  `get_stats()` returns the traffic since the last call as `Stats` records,
  a download row (`direction=False`, bytes sent) followed by an upload row
  (`direction=True`, bytes received) per tag that moved, and resets the
  counters.
- `ConnTracker.routed_connection(conn, inbound)` and
  `routed_packet_connection(conn, inbound)` return a `TrackedConn` that is
  forgotten when closed. `close_conn_by_inbound(inbound)` closes every
  tracked connection of an inbound and returns how many; `len(tracker)` is
  the number of open connections.

## Examples

```python
from suipanel import config, database, migration

migration.migrate_db(config.get_db_path(), migration.default_config_path())
database.init_db(config.get_db_path())
conn = database.get_db()
```

```python
from suipanel.model import Outbound

outbound = Outbound.from_json('{"type": "direct", "tag": "direct"}')
print(outbound.to_json())   # {"tag":"direct","type":"direct"}
```

```python
from suipanel.httputil import json_obj

print(json_obj({"onlines": []}).to_dict())
# {'success': True, 'msg': '', 'obj': {'onlines': []}}
```

```python
from suipanel.trackers import StatsTracker

tracker = StatsTracker()
wrapped = tracker.routed_connection(sock, "vless-in", "direct", "alice")
wrapped.sendall(b"hello")
for row in tracker.get_stats():
    print(row.resource, row.tag, row.direction, row.traffic)
```

## Environment variables

| Variable         | Meaning                                                          |
|------------------|------------------------------------------------------------------|
| `SUI_DEBUG`      | `true` turns on debug mode and the `debug` log level             |
| `SUI_LOG_LEVEL`  | `debug`, `info`, `warn` or `error`; `info` when unset            |
| `SUI_DB_FOLDER`  | folder of the database; a `db` folder next to the program otherwise |
| `SUI_BIN_FOLDER` | folder of an old `config.json` to migrate; `bin` otherwise       |

## What this package does not do

It is a library, not a running panel. It has no command line, no web server
or API routes, no login sessions, no subscription server, no scheduled jobs
and no proxy engine: nothing here starts, stops or configures proxy
inbounds and outbounds. The trackers count and close connections that the
caller hands them; they do not accept or route traffic themselves.

## Running the tests

Install the `test` extra and run `pytest` from the project folder.