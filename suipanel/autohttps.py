"""Sockets that redirect plain HTTP requests arriving on an HTTPS port."""

from __future__ import annotations

import re
import socket
import threading
from typing import Any, Optional

_FIRST_READ = 2048
_METHOD = re.compile(r"^[!#$%&'*+\-.^_`|~0-9A-Za-z]+$")
_PROTO = re.compile(r"^HTTP/\d+\.\d+$")
_ABSOLUTE = re.compile(r"^[A-Za-z][A-Za-z0-9+.\-]*://([^/?#]*)")


def _parse_request(data: bytes) -> Optional[tuple[str, str]]:
    """Return (host, request URI) if ``data`` holds a full HTTP request head."""
    try:
        text = data.decode("latin-1")
    except UnicodeDecodeError:
        return None
    lines = text.split("\n")
    # The last fragment has no newline after it, so it cannot end the head.
    complete = [line[:-1] if line.endswith("\r") else line for line in lines[:-1]]
    if not complete:
        return None
    parts = complete[0].split(" ")
    if len(parts) != 3:
        return None
    method, uri, proto = parts
    if not _METHOD.match(method) or not _PROTO.match(proto) or not uri:
        return None
    absolute = _ABSOLUTE.match(uri)
    if not absolute and not uri.startswith("/") and uri != "*":
        return None

    header_host = ""
    for line in complete[1:]:
        if line == "":
            break
        name, colon, value = line.partition(":")
        if not colon or not name or name != name.strip():
            return None
        if name.lower() == "host" and not header_host:
            header_host = value.strip()
    else:
        return None

    host = absolute.group(1).rpartition("@")[2] if absolute else header_host
    return host, uri


class AutoHttpsConn:
    """A socket wrapper that answers a plain HTTP first request with a redirect.

    Any other first bytes, such as a TLS handshake, are handed back to the
    reader unchanged.
    """

    def __init__(self, sock: socket.socket) -> None:
        self._sock = sock
        self._lock = threading.Lock()
        self._checked = False
        self._redirected = False
        self._pending: Optional[bytes] = None

    def _read_request(self) -> None:
        data = self._sock.recv(_FIRST_READ)
        request = _parse_request(data)
        if request is None:
            self._pending = data
            return
        host, uri = request
        response = (
            "HTTP/1.1 307 Temporary Redirect\r\n"
            f"Location: https://{host}{uri}\r\n"
            "Content-Length: 0\r\n"
            "\r\n"
        ).encode("latin-1")
        try:
            self._sock.sendall(response)
        except OSError:
            pass
        self.close()
        self._redirected = True

    def recv(self, bufsize: int) -> bytes:
        with self._lock:
            if not self._checked:
                self._checked = True
                self._read_request()
            if self._redirected:
                raise ConnectionAbortedError("plain HTTP request redirected to HTTPS")
            if self._pending is not None:
                chunk = self._pending[:bufsize]
                rest = self._pending[bufsize:]
                self._pending = rest if rest or bufsize == 0 and self._pending else None
                return chunk
        return self._sock.recv(bufsize)

    def sendall(self, data: bytes) -> None:
        self._sock.sendall(data)

    def close(self) -> None:
        self._sock.close()

    def __getattr__(self, name: str) -> Any:
        return getattr(self._sock, name)

    def __enter__(self) -> "AutoHttpsConn":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


class AutoHttpsListener:
    """A listening socket whose accepted connections are AutoHttpsConn."""

    def __init__(self, listener: socket.socket) -> None:
        self._listener = listener

    def accept(self) -> tuple[AutoHttpsConn, Any]:
        conn, addr = self._listener.accept()
        return AutoHttpsConn(conn), addr

    def close(self) -> None:
        self._listener.close()

    def __getattr__(self, name: str) -> Any:
        return getattr(self._listener, name)

    def __enter__(self) -> "AutoHttpsListener":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()