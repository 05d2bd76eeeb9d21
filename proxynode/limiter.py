"""Per-node user limits: speed, devices, connections, IPs and access rules."""

from __future__ import annotations

import logging
import re
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime

from proxynode.bucket import TokenBucket
from proxynode.connlimit import ConnLimiter

log = logging.getLogger(__name__)

_IPV4_MAPPED_PREFIX = "::ffff:"

_registry: dict[str, Limiter] = {}
_registry_lock = threading.RLock()


class LimiterNotFoundError(LookupError):
    """Raised when a limiter or a user's limit entry does not exist."""


@dataclass
class UserInfo:
    id: int
    uuid: str
    speed_limit: int = 0
    device_limit: int = 0


@dataclass
class LimitConfig:
    speed_limit: int = 0
    ip_limit: int = 0
    conn_limit: int = 0
    enable_realtime: bool = False


@dataclass(frozen=True)
class OnlineUser:
    uid: int
    ip: str


@dataclass
class UserLimitInfo:
    uid: int = 0
    speed_limit: int = 0
    device_limit: int = 0
    dynamic_speed_limit: int = 0
    expire_time: int = 0
    over_limit: bool = False


@dataclass
class Rules:
    regexp: list[str] = field(default_factory=list)
    protocol: list[str] = field(default_factory=list)


def user_tag(tag: str, uuid: str) -> str:
    """Return the key identifying a user within an inbound."""
    return f"{tag}|{uuid}"


def determine_speed_limit(limit1: int, limit2: int) -> int:
    """Return the smaller non-zero limit, or 0 if both are 0."""
    if limit1 == 0 or limit2 == 0:
        return max(limit1, limit2) if limit1 != limit2 else 0
    return min(limit1, limit2)


class Limiter:
    """Limits applied to the users of one node."""

    def __init__(self, config: LimitConfig, alive_list: dict[int, int]) -> None:
        self.domain_rules: list[re.Pattern[str]] = []
        self.protocol_rules: list[str] = []
        self.speed_limit = config.speed_limit
        self.user_online_ip: dict[str, dict[str, int]] = {}
        self.old_user_online: dict[str, int] = {}
        self.uuid_to_uid: dict[str, int] = {}
        self.user_limit_info: dict[str, UserLimitInfo] = {}
        self.conn_limiter = ConnLimiter(
            config.conn_limit, config.ip_limit, config.enable_realtime
        )
        self.speed_limiter: dict[str, TokenBucket] = {}
        self.alive_list = alive_list
        self._lock = threading.RLock()

    def update_user(
        self, tag: str, added: list[UserInfo], deleted: list[UserInfo]
    ) -> None:
        """Drop the deleted users' limits and set up the added users'."""
        with self._lock:
            for user in deleted:
                self.user_limit_info.pop(user_tag(tag, user.uuid), None)
                self.uuid_to_uid.pop(user.uuid, None)
            for user in added:
                self.user_limit_info[user_tag(tag, user.uuid)] = UserLimitInfo(
                    uid=user.id,
                    speed_limit=user.speed_limit,
                    device_limit=user.device_limit,
                )
                self.uuid_to_uid[user.uuid] = user.id

    def add_dynamic_speed_limit(
        self, tag: str, user: UserInfo, limit: int, expire: int
    ) -> None:
        """Give a user a speed limit that lasts ``expire`` seconds."""
        with self._lock:
            self.user_limit_info[user_tag(tag, user.uuid)] = UserLimitInfo(
                dynamic_speed_limit=limit,
                expire_time=int(time.time() + expire),
            )

    def update_dynamic_speed_limit(
        self, tag: str, uuid: str, limit: int, expire: datetime
    ) -> None:
        """Change an existing user's dynamic speed limit and its expiry."""
        with self._lock:
            info = self.user_limit_info.get(user_tag(tag, uuid))
            if info is None:
                raise LimiterNotFoundError("not found")
            info.dynamic_speed_limit = limit
            info.expire_time = int(expire.timestamp())

    def check_limit(
        self, tag_uuid: str, ip: str, is_tcp: bool, no_ss_udp: bool = True
    ) -> tuple[TokenBucket | None, bool]:
        """Apply the limits to a new connection.

        Returns the rate bucket to throttle it with (or None) and whether
        the connection is rejected.
        """
        if ip.startswith(_IPV4_MAPPED_PREFIX):
            ip = ip[len(_IPV4_MAPPED_PREFIX):]

        if self.conn_limiter.add_conn_count(tag_uuid, ip, is_tcp):
            return None, True

        with self._lock:
            user_limit = 0
            device_limit = 0
            uid = 0
            info = self.user_limit_info.get(tag_uuid)
            if info is not None:
                device_limit = info.device_limit
                uid = info.uid
                if info.expire_time != 0 and info.expire_time < int(time.time()):
                    if info.speed_limit != 0:
                        user_limit = info.speed_limit
                        info.dynamic_speed_limit = 0
                        info.expire_time = 0
                    else:
                        del self.user_limit_info[tag_uuid]
                else:
                    user_limit = determine_speed_limit(
                        info.speed_limit, info.dynamic_speed_limit
                    )

            if no_ss_udp:
                alive_ip = self.alive_list.get(uid, 0)
                ip_map = self.user_online_ip.get(tag_uuid)
                if ip_map is not None:
                    if ip not in ip_map:
                        ip_map[ip] = uid
                        if 0 < device_limit <= alive_ip:
                            del ip_map[ip]
                            return None, True
                else:
                    self.user_online_ip[tag_uuid] = {ip: uid}
                    if self.old_user_online.get(ip, 0) == uid:
                        self.old_user_online.pop(ip, None)
                    elif 0 < device_limit <= alive_ip:
                        del self.user_online_ip[tag_uuid]
                        return None, True

            limit = determine_speed_limit(self.speed_limit, user_limit) * 1000000 // 8
            if limit <= 0:
                return None, False
            bucket = self.speed_limiter.get(tag_uuid)
            if bucket is None:
                bucket = TokenBucket(1.0, limit, limit)
                self.speed_limiter[tag_uuid] = bucket
            return bucket, False

    def get_online_device(self) -> list[OnlineUser]:
        """Return the devices seen since the last call and reset the record."""
        with self._lock:
            online: list[OnlineUser] = []
            for ip_map in self.user_online_ip.values():
                for ip, uid in ip_map.items():
                    self.old_user_online[ip] = uid
                    online.append(OnlineUser(uid=uid, ip=ip))
            self.user_online_ip.clear()
            return online

    def check_domain_rule(self, destination: str) -> bool:
        """Return True if the destination matches a blocked domain pattern."""
        return any(rule.search(destination) for rule in self.domain_rules)

    def check_protocol_rule(self, protocol: str) -> bool:
        """Return True if the protocol is blocked."""
        return protocol in self.protocol_rules

    def update_rule(self, rules: Rules) -> None:
        """Replace the domain and protocol rules."""
        self.domain_rules = [re.compile(pattern) for pattern in rules.regexp]
        self.protocol_rules = list(rules.protocol)


def add_limiter(
    tag: str,
    config: LimitConfig,
    users: list[UserInfo],
    alive_list: dict[int, int],
) -> Limiter:
    """Create a limiter for a node, register it under ``tag`` and return it."""
    limiter = Limiter(config, alive_list)
    limiter.update_user(tag, users, [])
    with _registry_lock:
        _registry[tag] = limiter
    return limiter


def get_limiter(tag: str) -> Limiter:
    """Return the limiter registered under ``tag``."""
    with _registry_lock:
        try:
            return _registry[tag]
        except KeyError:
            raise LimiterNotFoundError("not found") from None


def delete_limiter(tag: str) -> None:
    """Unregister the limiter for ``tag`` if there is one."""
    with _registry_lock:
        _registry.pop(tag, None)


def clear_online_ip() -> None:
    """Clear stale online IPs in every registered limiter."""
    log.debug("Clear online ip...")
    with _registry_lock:
        limiters = list(_registry.values())
    for limiter in limiters:
        limiter.conn_limiter.clear_online_ip()
    log.debug("Clear online ip done")


def start_online_ip_cleaner(
    interval: float = 180.0, delay: float = 180.0
) -> threading.Event:
    """Run ``clear_online_ip`` every ``interval`` seconds after ``delay``.

    Returns an event; setting it stops the cleaner.
    """
    stop = threading.Event()

    def run() -> None:
        log.debug("ClearOnlineIP started")
        if stop.wait(delay):
            return
        while True:
            clear_online_ip()
            if stop.wait(interval):
                return

    threading.Thread(target=run, name="online-ip-cleaner", daemon=True).start()
    return stop