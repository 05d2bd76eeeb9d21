"""Connection hook applying node limits, traffic counting and forced closing."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from typing import Any

from proxynode.bucket import TokenBucket
from proxynode.limiter import LimiterNotFoundError, get_limiter, user_tag
from proxynode.stats import Counter

log = logging.getLogger(__name__)


class ConnectionRejected(Exception):
    """Raised when a routed connection is refused and closed."""


class ConnClear:
    """The open connections of one user, so that they can all be closed at once."""

    def __init__(self, conns: dict[int, Any] | None = None) -> None:
        self.conns: dict[int, Any] = dict(conns or {})
        self._lock = threading.Lock()

    def add_conn(self, conn: Any) -> int:
        """Remember a connection and return its key."""
        with self._lock:
            key = len(self.conns)
            self.conns[key] = conn
            return key

    def del_conn(self, key: int) -> None:
        """Forget the connection stored under ``key``."""
        with self._lock:
            self.conns.pop(key, None)

    def clear_conn(self) -> None:
        """Close every remembered connection."""
        with self._lock:
            for conn in self.conns.values():
                conn.close()


class Tracker:
    """Collects callbacks to run when a connection ends."""

    def __init__(self) -> None:
        self._on_leave: list[Callable[[], None]] = []

    def add_leave(self, func: Callable[[], None]) -> None:
        self._on_leave.append(func)

    def leave(self) -> None:
        """Run the callbacks in the order they were added."""
        for func in self._on_leave:
            func()


class _ConnWrapper:
    def __init__(self, conn: Any) -> None:
        self._conn = conn

    def __getattr__(self, name: str) -> Any:
        return getattr(self._conn, name)

    def close(self) -> None:
        self._conn.close()


class _RateLimitedConn(_ConnWrapper):
    def __init__(
        self, conn: Any, bucket: TokenBucket, sleep: Callable[[float], None] = time.sleep
    ) -> None:
        super().__init__(conn)
        self.bucket = bucket
        self._sleep = sleep

    def _wait(self, size: int) -> None:
        delay = self.bucket.take(size)
        if delay > 0:
            self._sleep(delay)

    def read(self, *args: Any) -> bytes:
        data = self._conn.read(*args)
        self._wait(len(data))
        return data

    def write(self, data: bytes) -> Any:
        self._wait(len(data))
        return self._conn.write(data)


class _CountedConn(_ConnWrapper):
    def __init__(self, conn: Any, up: Counter, down: Counter) -> None:
        super().__init__(conn)
        self.up = up
        self.down = down

    def read(self, *args: Any) -> bytes:
        data = self._conn.read(*args)
        self.up.add(len(data))
        return data

    def write(self, data: bytes) -> Any:
        result = self._conn.write(data)
        self.down.add(len(data))
        return result


class HookServer:
    """Applies a node's limiter to routed connections and counts their traffic."""

    def __init__(self, enable_conn_clear: bool = False) -> None:
        self.enable_conn_clear = enable_conn_clear
        self._counters: dict[str, dict[str, tuple[Counter, Counter]]] = {}
        self._conn_clears: dict[str, ConnClear] = {}
        self._lock = threading.Lock()

    def _user_counters(self, inbound: str, user: str) -> tuple[Counter, Counter]:
        with self._lock:
            users = self._counters.setdefault(inbound, {})
            if user not in users:
                users[user] = (Counter(), Counter())
            return users[user]

    def _register_clear(self, inbound: str, user: str, conn: Any, tracker: Tracker) -> None:
        with self._lock:
            clear = self._conn_clears.get(inbound + user)
            if clear is None:
                clear = ConnClear({0: conn})
                self._conn_clears[inbound + user] = clear
                key = 0
            else:
                key = clear.add_conn(conn)
        tracker.add_leave(lambda: clear.del_conn(key))

    def _route(
        self,
        inbound: str,
        user: str,
        domain: str,
        protocol: str,
        source_ip: str,
        conn: Any,
        stream: bool,
    ) -> tuple[Any, Tracker]:
        tracker = Tracker()
        try:
            limiter = get_limiter(inbound)
        except LimiterNotFoundError as err:
            log.warning("get limiter for %s error: %s", inbound, err)
            return conn, tracker
        if limiter.check_domain_rule(domain):
            conn.close()
            log.error("[%s] Limited %s access to %s by domain rule", inbound, user, domain)
            raise ConnectionRejected(f"{user} access to {domain} rejected by domain rule")
        if limiter.check_protocol_rule(protocol):
            conn.close()
            log.error("[%s] Limited %s use %s by protocol rule", inbound, user, domain)
            raise ConnectionRejected(f"{user} use of {protocol} rejected by protocol rule")
        bucket, rejected = limiter.check_limit(user_tag(inbound, user), source_ip, True)
        if rejected:
            conn.close()
            log.error("[%s] Limited %s by ip or conn", inbound, user)
            raise ConnectionRejected(f"{user} limited by ip or conn")
        if bucket is not None:
            conn = _RateLimitedConn(conn, bucket)
        if stream:
            tracker.add_leave(
                lambda: limiter.conn_limiter.del_conn_count(user, source_ip)
            )
        if self.enable_conn_clear:
            self._register_clear(inbound, user, conn, tracker)
        up, down = self._user_counters(inbound, user)
        return _CountedConn(conn, up, down), tracker

    def route(
        self,
        inbound: str,
        user: str,
        domain: str,
        protocol: str,
        source_ip: str,
        conn: Any,
    ) -> tuple[Any, Tracker]:
        """Apply the limits to a stream connection.

        Returns the wrapped connection and its tracker; raises
        ``ConnectionRejected`` after closing ``conn`` if it is refused.
        """
        return self._route(inbound, user, domain, protocol, source_ip, conn, True)

    def route_packet(
        self,
        inbound: str,
        user: str,
        domain: str,
        protocol: str,
        source_ip: str,
        conn: Any,
    ) -> tuple[Any, Tracker]:
        """Apply the limits to a packet connection, as ``route`` does."""
        return self._route(inbound, user, domain, protocol, source_ip, conn, False)

    def get_user_traffic(
        self, inbound: str, user: str, reset: bool = False
    ) -> tuple[int, int]:
        """Return the user's uploaded and downloaded bytes, optionally resetting them."""
        with self._lock:
            counters = self._counters.get(inbound, {}).get(user)
        if counters is None:
            return 0, 0
        up, down = counters
        if reset:
            return up.set(0), down.set(0)
        return up.value, down.value

    def clear_conn(self, inbound: str, user: str) -> None:
        """Close all open connections of a user and forget them."""
        with self._lock:
            clear = self._conn_clears.pop(inbound + user, None)
        if clear is not None:
            clear.clear_conn()