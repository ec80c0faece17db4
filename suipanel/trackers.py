"""Traffic counters and open-connection bookkeeping for routed connections."""

from __future__ import annotations

import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional

from suipanel.model import Stats

_RESOURCES = ("inbound", "outbound", "user")


@dataclass
class Counter:
    """Bytes read from and written to connections under one tag."""

    read: int = 0
    write: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def add_read(self, count: int) -> None:
        with self._lock:
            self.read += count

    def add_write(self, count: int) -> None:
        with self._lock:
            self.write += count

    def swap(self) -> tuple[int, int]:
        """Return (read, write) and reset both to zero."""
        with self._lock:
            values = (self.read, self.write)
            self.read = 0
            self.write = 0
        return values


class CountingConn:
    """A connection wrapper adding every byte moved to a set of counters."""

    def __init__(self, conn: Any, counters: list[Counter]) -> None:
        self._conn = conn
        self._counters = counters

    def _count_read(self, count: int) -> None:
        for counter in self._counters:
            counter.add_read(count)

    def _count_write(self, count: int) -> None:
        for counter in self._counters:
            counter.add_write(count)

    def recv(self, bufsize: int) -> bytes:
        data = self._conn.recv(bufsize)
        self._count_read(len(data))
        return data

    def recv_into(self, buffer: Any, nbytes: int = 0) -> int:
        count = self._conn.recv_into(buffer, nbytes)
        self._count_read(count)
        return count

    def recvfrom(self, bufsize: int) -> tuple[bytes, Any]:
        data, addr = self._conn.recvfrom(bufsize)
        self._count_read(len(data))
        return data, addr

    def send(self, data: bytes) -> int:
        count = self._conn.send(data)
        self._count_write(count)
        return count

    def sendall(self, data: bytes) -> None:
        self._conn.sendall(data)
        self._count_write(len(data))

    def sendto(self, data: bytes, addr: Any) -> int:
        count = self._conn.sendto(data, addr)
        self._count_write(count)
        return count

    def close(self) -> None:
        self._conn.close()

    def __getattr__(self, name: str) -> Any:
        return getattr(self._conn, name)

    def __enter__(self) -> "CountingConn":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


class StatsTracker:
    """Counts traffic per inbound, outbound and user tag."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: dict[str, dict[str, Counter]] = {r: {} for r in _RESOURCES}

    def _counters_for(self, inbound: str, outbound: str, user: str) -> list[Counter]:
        found: list[Counter] = []
        with self._lock:
            for resource, tag in zip(_RESOURCES, (inbound, outbound, user)):
                if tag:
                    found.append(self._counters[resource].setdefault(tag, Counter()))
        return found

    def routed_connection(
        self, conn: Any, inbound: str = "", outbound: str = "", user: str = ""
    ) -> CountingConn:
        """Wrap a stream connection so its traffic is counted."""
        return CountingConn(conn, self._counters_for(inbound, outbound, user))

    def routed_packet_connection(
        self, conn: Any, inbound: str = "", outbound: str = "", user: str = ""
    ) -> CountingConn:
        """Wrap a datagram connection so its traffic is counted."""
        return CountingConn(conn, self._counters_for(inbound, outbound, user))

    def get_stats(self) -> list[Stats]:
        """Return the traffic since the last call and reset the counters.

        Tags without traffic are left out; each other tag gives a download
        record (direction False) followed by an upload record (direction True).
        """
        now = int(time.time())
        stats: list[Stats] = []
        with self._lock:
            for resource in _RESOURCES:
                for tag, counter in self._counters[resource].items():
                    up, down = counter.swap()
                    if down > 0 or up > 0:
                        stats.append(Stats(date_time=now, resource=resource, tag=tag,
                                           direction=False, traffic=down))
                        stats.append(Stats(date_time=now, resource=resource, tag=tag,
                                           direction=True, traffic=up))
        return stats


@dataclass
class ConnectionInfo:
    """An open connection and the inbound it came through."""

    id: str
    conn: Any
    inbound: str
    type: str


class TrackedConn:
    """A connection that removes itself from its tracker when closed."""

    def __init__(self, conn: Any, info: ConnectionInfo, tracker: "ConnTracker") -> None:
        self._conn = conn
        self.info = info
        self._tracker = tracker

    @property
    def conn_id(self) -> str:
        return self.info.id

    def close(self) -> None:
        self._tracker._untrack(self.info.id)
        self._conn.close()

    def __getattr__(self, name: str) -> Any:
        return getattr(self._conn, name)

    def __enter__(self) -> "TrackedConn":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


class ConnTracker:
    """Keeps the open routed connections so they can be closed by inbound."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._connections: dict[str, ConnectionInfo] = {}

    def _track(self, conn: Any, inbound: str, kind: str) -> TrackedConn:
        info = ConnectionInfo(id=str(uuid.uuid4()), conn=conn, inbound=inbound, type=kind)
        with self._lock:
            self._connections[info.id] = info
        return TrackedConn(conn, info, self)

    def _untrack(self, conn_id: str) -> Optional[ConnectionInfo]:
        with self._lock:
            return self._connections.pop(conn_id, None)

    def routed_connection(self, conn: Any, inbound: str) -> TrackedConn:
        """Track a stream connection."""
        return self._track(conn, inbound, "tcp")

    def routed_packet_connection(self, conn: Any, inbound: str) -> TrackedConn:
        """Track a datagram connection."""
        return self._track(conn, inbound, "udp")

    def close_conn_by_inbound(self, inbound: str) -> int:
        """Close every connection of ``inbound``; return how many were closed."""
        with self._lock:
            matching = [i for i in self._connections.values() if i.inbound == inbound]
            for info in matching:
                info.conn.close()
                del self._connections[info.id]
        return len(matching)

    def __len__(self) -> int:
        with self._lock:
            return len(self._connections)