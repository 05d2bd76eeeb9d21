"""Dispatching inbound connections to outbounds under the node's limits."""

from __future__ import annotations

import ipaddress
import logging
import threading
import time
from collections import deque
from collections.abc import Callable, Iterable, Mapping, MutableMapping
from dataclasses import dataclass
from typing import Any

from proxynode.bucket import TokenBucket
from proxynode.limiter import Limiter, LimiterNotFoundError, get_limiter
from proxynode.sniffer import TCP
from proxynode.stats import Counter, SizeStatWriter

log = logging.getLogger(__name__)

_CACHE_READ_TIMEOUT = 0.1


class DispatchRejected(Exception):
    """Raised when a connection is refused; its link has been closed."""


@dataclass
class Destination:
    """Where a connection is going: its network and a domain or IP address."""

    address: str
    network: str = TCP

    @property
    def is_domain(self) -> bool:
        try:
            ipaddress.ip_address(self.address)
        except ValueError:
            return True
        return False


@dataclass
class InboundSession:
    """What is known about a connection when it arrives on an inbound."""

    tag: str
    user_email: str | None = None
    source_ip: str = ""
    forced_outbound_tag: str = ""


@dataclass
class Link:
    """A reader and a writer joined to the other side of a connection."""

    reader: Any
    writer: Any


class _Pipe:
    """An in-memory channel of byte chunks between two sides of a link."""

    def __init__(self) -> None:
        self._chunks: deque[bytes] = deque()
        self._cond = threading.Condition()
        self._closed = False
        self._interrupted = False

    def write(self, chunks: Iterable[bytes]) -> None:
        with self._cond:
            if self._closed or self._interrupted:
                raise BrokenPipeError("pipe closed")
            self._chunks.extend(chunk for chunk in chunks if chunk)
            self._cond.notify_all()

    def read(self, timeout: float | None = None) -> list[bytes]:
        """Return the buffered chunks, waiting up to ``timeout`` for some.

        Returns an empty list on timeout; raises ``EOFError`` once the pipe
        is closed and drained, or interrupted.
        """
        with self._cond:
            self._cond.wait_for(
                lambda: self._chunks or self._closed or self._interrupted, timeout
            )
            if self._interrupted:
                raise EOFError("pipe interrupted")
            if self._chunks:
                chunks = list(self._chunks)
                self._chunks.clear()
                return chunks
            if self._closed:
                raise EOFError("pipe closed")
            return []

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    def interrupt(self) -> None:
        with self._cond:
            self._interrupted = True
            self._chunks.clear()
            self._cond.notify_all()


class _RateLimitWriter:
    """Holds writes back until the bucket has tokens for them."""

    def __init__(
        self,
        writer: Any,
        bucket: TokenBucket,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.writer = writer
        self.bucket = bucket
        self._sleep = sleep

    def write(self, chunks: Iterable[bytes]) -> Any:
        chunks = list(chunks)
        delay = self.bucket.take(sum(len(chunk) for chunk in chunks))
        if delay > 0:
            self._sleep(delay)
        return self.writer.write(chunks)

    def close(self) -> None:
        _close(self.writer)

    def interrupt(self) -> None:
        _interrupt(self.writer)


def _close(obj: Any) -> None:
    close = getattr(obj, "close", None)
    if close is not None:
        close()


def _interrupt(obj: Any) -> None:
    interrupt = getattr(obj, "interrupt", None)
    if interrupt is not None:
        interrupt()
    else:
        _close(obj)


def _shut(link: Link) -> None:
    _close(link.writer)
    _interrupt(link.reader)


class CachedReader:
    """A reader that keeps what sniffing has read so it is still delivered later."""

    def __init__(self, reader: Any) -> None:
        self.reader = reader
        self._cache: list[bytes] = []
        self._lock = threading.Lock()

    def cache(self, max_size: int) -> bytes:
        """Read whatever arrives shortly, keep it, and return up to ``max_size`` cached bytes."""
        try:
            chunks = self.reader.read(timeout=_CACHE_READ_TIMEOUT)
        except EOFError:
            chunks = []
        with self._lock:
            self._cache.extend(chunk for chunk in chunks if chunk)
            return b"".join(self._cache)[:max_size]

    def read(self) -> list[bytes]:
        """Return the cached chunks, or read from the underlying reader if there are none."""
        with self._lock:
            if self._cache:
                cached, self._cache = self._cache, []
                return cached
        return self.reader.read()

    def interrupt(self) -> None:
        """Drop the cache and interrupt the underlying reader."""
        with self._lock:
            self._cache = []
        _interrupt(self.reader)


def detour_label(in_tag: str, out_tag: str, pick_route: int) -> str:
    """Describe the route taken, as shown in access logs.

    ``pick_route`` is 1 for a forced outbound, 2 for a routed one, 0 otherwise.
    """
    if not out_tag:
        return ""
    if not in_tag:
        return out_tag
    if pick_route == 1:
        return f"{in_tag} ==> {out_tag}"
    if pick_route == 2:
        return f"{in_tag} -> {out_tag}"
    return f"{in_tag} >> {out_tag}"


class Dispatcher:
    """Joins inbound connections to outbound handlers.

    ``outbounds`` maps tags to handlers with a ``dispatch(link)`` method; the
    first one is the default. ``router``, if given, is called with the session
    and destination and returns an outbound tag, or raises ``LookupError``.
    ``stats`` receives a traffic counter per user and direction.
    """

    def __init__(
        self,
        outbounds: Mapping[str, Any],
        router: Callable[[InboundSession, Destination], str] | None = None,
        stats: MutableMapping[str, Counter] | None = None,
        user_uplink: bool = True,
        user_downlink: bool = True,
    ) -> None:
        self.outbounds = outbounds
        self.router = router
        self.stats = stats
        self.user_uplink = user_uplink
        self.user_downlink = user_downlink

    def _counter(self, name: str) -> Counter | None:
        if self.stats is None:
            return None
        counter = self.stats.get(name)
        if counter is None:
            counter = Counter()
            self.stats[name] = counter
        return counter

    def get_link(
        self, session: InboundSession, is_tcp: bool
    ) -> tuple[Link, Link, Limiter | None]:
        """Create the inbound and outbound sides of a connection.

        Applies the user's limits, throttling and counting when needed.
        Raises ``DispatchRejected`` if the user is refused.
        """
        uplink = _Pipe()
        downlink = _Pipe()
        inbound = Link(reader=downlink, writer=uplink)
        outbound = Link(reader=uplink, writer=downlink)

        email = session.user_email
        if not email:
            return inbound, outbound, None

        try:
            limiter = get_limiter(session.tag)
        except LimiterNotFoundError as err:
            log.info("get limiter %s error: %s", session.tag, err)
            _shut(outbound)
            _shut(inbound)
            raise DispatchRejected(f"get limiter {session.tag} error: {err}") from err

        bucket, rejected = limiter.check_limit(email, session.source_ip, is_tcp)
        if rejected:
            log.info("Limited %s by conn or ip", email)
            _shut(outbound)
            _shut(inbound)
            raise DispatchRejected(f"Limited {email} by conn or ip")
        if bucket is not None:
            inbound.writer = _RateLimitWriter(inbound.writer, bucket)
            outbound.writer = _RateLimitWriter(outbound.writer, bucket)
        if self.user_uplink:
            counter = self._counter(f"user>>>{email}>>>traffic>>>uplink")
            if counter is not None:
                inbound.writer = SizeStatWriter(counter, inbound.writer)
        if self.user_downlink:
            counter = self._counter(f"user>>>{email}>>>traffic>>>downlink")
            if counter is not None:
                outbound.writer = SizeStatWriter(counter, outbound.writer)
        return inbound, outbound, limiter

    def _check_rules(
        self,
        session: InboundSession,
        link: Link,
        destination: Destination,
        limiter: Limiter,
        protocol: str,
    ) -> None:
        email = session.user_email
        if limiter.check_domain_rule(destination.address):
            log.error("User %s access domain %s reject by rule", email, destination.address)
            _shut(link)
            raise DispatchRejected(
                f"User {email} access domain {destination.address} reject by rule"
            )
        if protocol and limiter.check_protocol_rule(protocol):
            log.error("User %s access protocol %s reject by rule", email, protocol)
            _shut(link)
            raise DispatchRejected(
                f"User {email} access protocol {protocol} reject by rule"
            )

    def _pick_handler(
        self, session: InboundSession, link: Link, destination: Destination
    ) -> tuple[str, Any, int]:
        forced = session.forced_outbound_tag
        if forced:
            handler = self.outbounds.get(forced)
            if handler is None:
                log.error("non existing tag for platform initialized detour: %s", forced)
                _shut(link)
                raise DispatchRejected(
                    f"non existing tag for platform initialized detour: {forced}"
                )
            log.info("taking platform initialized detour [%s] for [%s]", forced, destination.address)
            return forced, handler, 1
        if self.router is not None:
            try:
                out_tag = self.router(session, destination)
            except LookupError:
                log.info("default route for %s", destination.address)
            else:
                handler = self.outbounds.get(out_tag)
                if handler is not None:
                    log.info("taking detour [%s] for [%s]", out_tag, destination.address)
                    return out_tag, handler, 2
                log.warning("non existing outTag: %s", out_tag)
        handler = self.outbounds.get(session.tag)
        if handler is not None:
            return session.tag, handler, 0
        for tag, handler in self.outbounds.items():
            return tag, handler, 0
        log.info("default outbound handler not exist")
        _shut(link)
        raise DispatchRejected("default outbound handler not exist")

    def routed_dispatch(
        self,
        session: InboundSession,
        link: Link,
        destination: Destination,
        limiter: Limiter | None = None,
        protocol: str = "",
    ) -> str:
        """Check the access rules, hand the link to an outbound and return its tag.

        A limiter passed in means this dispatch holds a TCP connection count,
        which is released when the dispatch ends. Raises ``DispatchRejected``
        after closing the link if the connection is refused.
        """
        release: Callable[[], None] | None = None
        email = session.user_email
        if email is not None:
            if limiter is not None:
                if destination.network == TCP:
                    held = limiter
                    release = lambda: held.conn_limiter.del_conn_count(  # noqa: E731
                        email, session.source_ip
                    )
            else:
                try:
                    limiter = get_limiter(session.tag)
                except LimiterNotFoundError as err:
                    log.error("get limiter %s error: %s", session.tag, err)
        try:
            if email is not None and limiter is not None:
                self._check_rules(session, link, destination, limiter, protocol)
            out_tag, handler, pick_route = self._pick_handler(session, link, destination)
            detour = detour_label(session.tag, out_tag, pick_route)
            if detour:
                log.debug("detour %s", detour)
            handler.dispatch(link)
            return out_tag
        finally:
            if release is not None:
                release()