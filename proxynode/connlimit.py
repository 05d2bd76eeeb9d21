"""Per-user connection and online-IP limits."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable

_IDLE_TIMEOUT = 60.0


class ConnLimiter:
    """Tracks TCP connection counts and online IPs per user.

    In realtime mode an IP's entry counts 2 per open TCP connection, or is 1
    for packet protocols. Otherwise an IP's entry holds its last-seen time.
    """

    def __init__(
        self,
        conn_limit: int,
        ip_limit: int,
        realtime: bool,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.conn_limit = conn_limit
        self.ip_limit = ip_limit
        self.realtime = realtime
        self._clock = clock or time.monotonic
        self._counts: dict[str, int] = {}
        self._ips: dict[str, dict[str, float]] = {}
        self._lock = threading.Lock()

    def _mark(self, is_tcp: bool) -> float:
        if self.realtime:
            return 2 if is_tcp else 1
        return self._clock()

    def add_conn_count(self, user: str, ip: str, is_tcp: bool) -> bool:
        """Register a connection; return True if it goes over a limit."""
        with self._lock:
            if self.conn_limit:
                count = self._counts.get(user)
                if count is not None and count >= self.conn_limit:
                    return True
                if is_tcp:
                    self._counts[user] = (count or 0) + 1
            if not self.ip_limit:
                return False
            ips = self._ips.get(user)
            if ips is None:
                self._ips[user] = {ip: self._mark(is_tcp)}
                return False
            if ip in ips:
                if not self.realtime:
                    ips[ip] = self._clock()
                elif is_tcp:
                    ips[ip] += 2
                return False
            if len(ips) >= self.ip_limit:
                return True
            ips[ip] = self._mark(is_tcp)
            return False

    def del_conn_count(self, user: str, ip: str) -> None:
        """Release a TCP connection; only meaningful in realtime mode."""
        if not self.realtime:
            return
        with self._lock:
            if self.conn_limit:
                count = self._counts.get(user)
                if count is not None:
                    if count == 1:
                        del self._counts[user]
                    else:
                        self._counts[user] = count - 1
            if not self.ip_limit:
                return
            ips = self._ips.get(user)
            if ips is None or ip not in ips:
                return
            if ips[ip] == 2:
                del ips[ip]
            else:
                ips[ip] -= 2
            if not ips:
                del self._ips[user]

    def clear_online_ip(self) -> None:
        """Drop packet-protocol IPs (realtime) or IPs idle for a minute."""
        with self._lock:
            deadline = self._clock() - _IDLE_TIMEOUT
            for user in list(self._ips):
                ips = self._ips[user]
                if self.realtime:
                    stale = [ip for ip, value in ips.items() if value == 1]
                else:
                    stale = [ip for ip, seen in ips.items() if seen < deadline]
                for ip in stale:
                    del ips[ip]
                if not ips:
                    del self._ips[user]