import itertools

import pytest

from proxynode.dispatcher import (
    CachedReader,
    Destination,
    Dispatcher,
    DispatchRejected,
    InboundSession,
    detour_label,
)
from proxynode.limiter import LimitConfig, Rules, add_limiter, delete_limiter, get_limiter

_tags = itertools.count()


@pytest.fixture
def tag():
    name = f"dispatch-test-{next(_tags)}"
    yield name
    delete_limiter(name)


class _Handler:
    def __init__(self):
        self.links = []

    def dispatch(self, link):
        self.links.append(link)


class _FakeReader:
    def __init__(self, batches):
        self.batches = list(batches)
        self.interrupted = False

    def read(self, timeout=None):
        if self.batches:
            return self.batches.pop(0)
        return []

    def interrupt(self):
        self.interrupted = True


def test_detour_label_forms():
    assert detour_label("", "out", 2) == "out"
    assert detour_label("in", "out", 1) == "in ==> out"
    assert detour_label("in", "out", 2) == "in -> out"
    assert detour_label("in", "out", 0) == "in >> out"
    assert detour_label("in", "", 2) == ""


def test_destination_is_domain():
    assert Destination("example.com").is_domain
    assert not Destination("10.0.0.1").is_domain
    assert not Destination("::1").is_domain


def test_get_link_without_user_joins_both_sides():
    dispatcher = Dispatcher({"direct": _Handler()})
    inbound, outbound, limiter = dispatcher.get_link(InboundSession("in"), True)
    assert limiter is None
    inbound.writer.write([b"ab", b"cd"])
    assert outbound.reader.read(timeout=0) == [b"ab", b"cd"]
    outbound.writer.write([b"reply"])
    assert inbound.reader.read(timeout=0) == [b"reply"]


def test_get_link_counts_user_traffic(tag):
    add_limiter(tag, LimitConfig(), [], {})
    stats = {}
    dispatcher = Dispatcher({"direct": _Handler()}, stats=stats)
    email = f"{tag}|user"
    session = InboundSession(tag, user_email=email, source_ip="10.0.0.1")
    inbound, outbound, limiter = dispatcher.get_link(session, True)
    assert limiter is get_limiter(tag)
    upload = b"abcd"
    download = b"efg"
    inbound.writer.write([upload])
    outbound.writer.write([download])
    assert stats[f"user>>>{email}>>>traffic>>>uplink"].value == len(upload)
    assert stats[f"user>>>{email}>>>traffic>>>downlink"].value == len(download)
    assert outbound.reader.read(timeout=0) == [upload]


def test_get_link_without_stats_flags_registers_nothing(tag):
    add_limiter(tag, LimitConfig(), [], {})
    stats = {}
    dispatcher = Dispatcher(
        {"direct": _Handler()}, stats=stats, user_uplink=False, user_downlink=False
    )
    session = InboundSession(tag, user_email=f"{tag}|user", source_ip="10.0.0.1")
    inbound, _, _ = dispatcher.get_link(session, True)
    inbound.writer.write([b"data"])
    assert stats == {}


def test_get_link_rate_limited_still_delivers(tag):
    add_limiter(tag, LimitConfig(speed_limit=8), [], {})
    dispatcher = Dispatcher({"direct": _Handler()})
    session = InboundSession(tag, user_email=f"{tag}|user", source_ip="10.0.0.1")
    inbound, outbound, _ = dispatcher.get_link(session, True)
    inbound.writer.write([b"payload"])
    assert outbound.reader.read(timeout=0) == [b"payload"]


def test_get_link_unknown_limiter_rejected():
    dispatcher = Dispatcher({"direct": _Handler()})
    session = InboundSession("no-such-node", user_email="no-such-node|user")
    with pytest.raises(DispatchRejected):
        dispatcher.get_link(session, True)


def test_get_link_over_conn_limit_rejected(tag):
    add_limiter(tag, LimitConfig(conn_limit=1, enable_realtime=True), [], {})
    dispatcher = Dispatcher({"direct": _Handler()})
    session = InboundSession(tag, user_email=f"{tag}|user", source_ip="10.0.0.1")
    dispatcher.get_link(session, True)
    with pytest.raises(DispatchRejected):
        dispatcher.get_link(session, True)


def test_routed_dispatch_releases_tcp_count(tag):
    add_limiter(tag, LimitConfig(conn_limit=1, enable_realtime=True), [], {})
    handler = _Handler()
    dispatcher = Dispatcher({"direct": handler})
    session = InboundSession(tag, user_email=f"{tag}|user", source_ip="10.0.0.1")
    _, outbound, limiter = dispatcher.get_link(session, True)
    used = dispatcher.routed_dispatch(
        session, outbound, Destination("example.com"), limiter
    )
    assert used == "direct"
    assert handler.links == [outbound]
    _, again, _ = dispatcher.get_link(session, True)
    assert again is not outbound


def test_routed_dispatch_uses_router_choice():
    direct, proxy = _Handler(), _Handler()
    dispatcher = Dispatcher(
        {"direct": direct, "proxy": proxy}, router=lambda session, dest: "proxy"
    )
    session = InboundSession("in")
    _, outbound, _ = dispatcher.get_link(session, True)
    assert dispatcher.routed_dispatch(session, outbound, Destination("example.com")) == "proxy"
    assert proxy.links == [outbound]
    assert direct.links == []


def test_routed_dispatch_falls_back_to_inbound_tag_then_default():
    def no_route(session, dest):
        raise LookupError("no route")

    first, same_tag = _Handler(), _Handler()
    dispatcher = Dispatcher({"first": first, "node": same_tag}, router=no_route)
    _, link, _ = dispatcher.get_link(InboundSession("node"), True)
    assert dispatcher.routed_dispatch(InboundSession("node"), link, Destination("a.example.com")) == "node"
    _, other, _ = dispatcher.get_link(InboundSession("other"), True)
    assert dispatcher.routed_dispatch(InboundSession("other"), other, Destination("a.example.com")) == "first"
    assert first.links == [other]


def test_routed_dispatch_unknown_router_tag_falls_back():
    handler = _Handler()
    dispatcher = Dispatcher({"direct": handler}, router=lambda s, d: "missing")
    session = InboundSession("in")
    _, link, _ = dispatcher.get_link(session, True)
    assert dispatcher.routed_dispatch(session, link, Destination("example.com")) == "direct"


def test_routed_dispatch_forced_tag():
    forced, other = _Handler(), _Handler()
    dispatcher = Dispatcher({"other": other, "forced": forced}, router=lambda s, d: "other")
    session = InboundSession("in", forced_outbound_tag="forced")
    _, link, _ = dispatcher.get_link(session, True)
    assert dispatcher.routed_dispatch(session, link, Destination("example.com")) == "forced"
    assert forced.links == [link]


def test_routed_dispatch_missing_forced_tag_closes_link():
    dispatcher = Dispatcher({"direct": _Handler()})
    session = InboundSession("in", forced_outbound_tag="missing")
    inbound, outbound, _ = dispatcher.get_link(session, True)
    with pytest.raises(DispatchRejected):
        dispatcher.routed_dispatch(session, outbound, Destination("example.com"))
    with pytest.raises(BrokenPipeError):
        outbound.writer.write([b"x"])
    with pytest.raises(EOFError):
        inbound.reader.read(timeout=0)


def test_routed_dispatch_no_outbounds_rejected():
    dispatcher = Dispatcher({})
    session = InboundSession("in")
    _, link, _ = dispatcher.get_link(session, True)
    with pytest.raises(DispatchRejected):
        dispatcher.routed_dispatch(session, link, Destination("example.com"))


def test_routed_dispatch_domain_rule_rejects(tag):
    limiter = add_limiter(tag, LimitConfig(), [], {})
    limiter.update_rule(Rules(regexp=[r"blocked\.example\.com"]))
    handler = _Handler()
    dispatcher = Dispatcher({"direct": handler})
    session = InboundSession(tag, user_email=f"{tag}|user", source_ip="10.0.0.1")
    _, outbound, _ = dispatcher.get_link(session, True)
    with pytest.raises(DispatchRejected):
        dispatcher.routed_dispatch(session, outbound, Destination("blocked.example.com"))
    assert handler.links == []
    with pytest.raises(BrokenPipeError):
        outbound.writer.write([b"x"])


def test_routed_dispatch_protocol_rule_rejects(tag):
    limiter = add_limiter(tag, LimitConfig(), [], {})
    limiter.update_rule(Rules(protocol=["bittorrent"]))
    handler = _Handler()
    dispatcher = Dispatcher({"direct": handler})
    session = InboundSession(tag, user_email=f"{tag}|user", source_ip="10.0.0.1")
    _, outbound, _ = dispatcher.get_link(session, True)
    with pytest.raises(DispatchRejected):
        dispatcher.routed_dispatch(
            session, outbound, Destination("example.com"), protocol="bittorrent"
        )
    assert handler.links == []


def test_routed_dispatch_looks_up_limiter_when_not_given(tag):
    limiter = add_limiter(tag, LimitConfig(), [], {})
    limiter.update_rule(Rules(regexp=["example"]))
    dispatcher = Dispatcher({"direct": _Handler()})
    session = InboundSession(tag, user_email=f"{tag}|user")
    _, link, _ = dispatcher.get_link(InboundSession("plain"), True)
    with pytest.raises(DispatchRejected):
        dispatcher.routed_dispatch(session, link, Destination("www.example.org"))


def test_cached_reader_keeps_sniffed_bytes():
    reader = _FakeReader([[b"he", b"llo"], [b" world"], [b"later"]])
    cached = CachedReader(reader)
    assert cached.cache(100) == b"hello"
    assert cached.cache(100) == b"hello world"
    assert cached.read() == [b"he", b"llo", b" world"]
    assert cached.read() == [b"later"]


def test_cached_reader_truncates_to_max_size():
    cached = CachedReader(_FakeReader([[b"abcdef"]]))
    assert cached.cache(3) == b"abc"
    assert cached.read() == [b"abcdef"]


def test_cached_reader_interrupt_drops_cache():
    reader = _FakeReader([[b"data"]])
    cached = CachedReader(reader)
    cached.cache(10)
    cached.interrupt()
    assert reader.interrupted
    assert cached.read() == []


def test_cached_reader_over_closed_pipe():
    dispatcher = Dispatcher({"direct": _Handler()})
    inbound, outbound, _ = dispatcher.get_link(InboundSession("in"), True)
    inbound.writer.write([b"GET /"])
    inbound.writer.close()
    cached = CachedReader(outbound.reader)
    assert cached.cache(100) == b"GET /"
    assert cached.cache(100) == b"GET /"
    assert cached.read() == [b"GET /"]
    with pytest.raises(EOFError):
        cached.read()