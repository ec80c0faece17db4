"""JSON reply helpers, client address helpers and a host-checking WSGI middleware."""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import Any, Optional

from suipanel import logger


@dataclass
class Msg:
    """The reply body every API call returns."""

    success: bool = False
    msg: str = ""
    obj: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {"success": self.success, "msg": self.msg, "obj": self.obj}


def _split_host_port(hostport: str) -> tuple[str, str]:
    """Split ``host:port`` or ``[host]:port``; raise ValueError otherwise."""
    if hostport.startswith("["):
        end = hostport.find("]")
        if end == -1:
            raise ValueError(f"missing ']' in address: {hostport}")
        if end + 1 == len(hostport):
            raise ValueError(f"missing port in address: {hostport}")
        if hostport[end + 1] != ":":
            raise ValueError(f"too many colons in address: {hostport}")
        return hostport[1:end], hostport[end + 2:]
    colon = hostport.rfind(":")
    if colon == -1:
        raise ValueError(f"missing port in address: {hostport}")
    host = hostport[:colon]
    if ":" in host:
        raise ValueError(f"too many colons in address: {hostport}")
    return host, hostport[colon + 1:]


def _header(headers: Mapping[str, str], name: str) -> str:
    wanted = name.lower()
    for key, value in headers.items():
        if key.lower() == wanted:
            return value
    return ""


def get_remote_ip(headers: Mapping[str, str], remote_addr: str) -> str:
    """Return the client address, preferring the first X-Forwarded-For entry."""
    forwarded = _header(headers, "X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0]
    try:
        host, _ = _split_host_port(remote_addr)
    except ValueError:
        return ""
    return host


def get_hostname(host: str) -> str:
    """Return the request host without its port, bracketing IPv6 addresses."""
    if ":" in host:
        try:
            host, _ = _split_host_port(host)
        except ValueError:
            host = ""
        if ":" in host:
            host = f"[{host}]"
    return host


def json_msg_obj(msg: str, obj: Any, err: Optional[BaseException]) -> Msg:
    """Build a reply; an error marks it failed and is appended to the message."""
    if err is None:
        return Msg(success=True, msg=msg, obj=obj)
    logger.warning("failed :", err)
    return Msg(success=False, msg=f"{msg}: {err}", obj=obj)


def json_msg(msg: str, err: Optional[BaseException] = None) -> Msg:
    return json_msg_obj(msg, None, err)


def json_obj(obj: Any, err: Optional[BaseException] = None) -> Msg:
    return json_msg_obj("", obj, err)


def pure_json_msg(success: bool, msg: str) -> Msg:
    return Msg(success=success, msg=msg)


class DomainValidator:
    """WSGI middleware answering 403 to requests for any other host."""

    def __init__(self, app: Callable[..., Iterable[bytes]], domain: str) -> None:
        self.app = app
        self.domain = domain

    def __call__(self, environ: dict[str, Any], start_response: Callable[..., Any]) -> Iterable[bytes]:
        host = environ.get("HTTP_HOST") or environ.get("SERVER_NAME", "")
        if ":" in host:
            try:
                host, _ = _split_host_port(host)
            except ValueError:
                host = ""
        if host != self.domain:
            start_response("403 Forbidden", [("Content-Length", "0")])
            return []
        return self.app(environ, start_response)