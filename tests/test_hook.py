import itertools

import pytest

from proxynode.hook import ConnClear, ConnectionRejected, HookServer, Tracker
from proxynode.limiter import LimitConfig, Rules, add_limiter, delete_limiter

_tags = itertools.count()


class FakeConn:
    def __init__(self, incoming=b""):
        self.incoming = incoming
        self.written = []
        self.closed = False

    def read(self, size=-1):
        data, self.incoming = self.incoming, b""
        return data

    def write(self, data):
        self.written.append(data)
        return len(data)

    def close(self):
        self.closed = True


@pytest.fixture
def node():
    created = []

    def make(config=None, rules=None):
        tag = f"hook-node-{next(_tags)}"
        limiter = add_limiter(tag, config or LimitConfig(), [], {})
        if rules is not None:
            limiter.update_rule(rules)
        created.append(tag)
        return tag

    yield make
    for tag in created:
        delete_limiter(tag)


def test_conn_clear_keys_and_close():
    clear = ConnClear()
    a, b = FakeConn(), FakeConn()
    assert clear.add_conn(a) == 0
    assert clear.add_conn(b) == 1
    clear.del_conn(0)
    clear.clear_conn()
    assert (a.closed, b.closed) == (False, True)


def test_tracker_runs_in_order():
    calls = []
    tracker = Tracker()
    tracker.add_leave(lambda: calls.append("first"))
    tracker.add_leave(lambda: calls.append("second"))
    tracker.leave()
    assert calls == ["first", "second"]


def test_route_without_limiter_returns_conn_unchanged():
    server = HookServer()
    conn = FakeConn()
    routed, _ = server.route("missing-node", "u", "example.com", "tls", "192.0.2.1", conn)
    assert routed is conn


def test_route_counts_traffic(node):
    tag = node()
    server = HookServer()
    conn = FakeConn(incoming=b"hello")
    routed, _ = server.route(tag, "u", "example.com", "tls", "192.0.2.1", conn)
    assert routed.read(1024) == b"hello"
    routed.write(b"abcd")
    assert conn.written == [b"abcd"]
    assert server.get_user_traffic(tag, "u") == (5, 4)
    assert server.get_user_traffic(tag, "u", reset=True) == (5, 4)
    assert server.get_user_traffic(tag, "u") == (0, 0)


def test_unknown_user_traffic_is_zero():
    assert HookServer().get_user_traffic("nowhere", "nobody") == (0, 0)


def test_domain_rule_rejects_and_closes(node):
    tag = node(rules=Rules(regexp=[r"blocked\.example\.com"]))
    conn = FakeConn()
    with pytest.raises(ConnectionRejected):
        HookServer().route(tag, "u", "www.blocked.example.com", "tls", "192.0.2.1", conn)
    assert conn.closed


def test_protocol_rule_rejects_and_closes(node):
    tag = node(rules=Rules(protocol=["bittorrent"]))
    conn = FakeConn()
    with pytest.raises(ConnectionRejected):
        HookServer().route(tag, "u", "example.com", "bittorrent", "192.0.2.1", conn)
    assert conn.closed


def test_ip_limit_rejects_second_ip(node):
    tag = node(LimitConfig(ip_limit=1, enable_realtime=True))
    server = HookServer()
    first = FakeConn()
    server.route(tag, "u", "example.com", "tls", "192.0.2.1", first)
    second = FakeConn()
    with pytest.raises(ConnectionRejected):
        server.route(tag, "u", "example.com", "tls", "192.0.2.2", second)
    assert second.closed
    assert not first.closed


def test_speed_limit_wraps_but_passes_data(node):
    tag = node(LimitConfig(speed_limit=100))
    conn = FakeConn()
    routed, _ = HookServer().route(tag, "u", "example.com", "tls", "192.0.2.1", conn)
    routed.write(b"data")
    assert conn.written == [b"data"]


def test_clear_conn_closes_all_user_conns(node):
    tag = node()
    server = HookServer(enable_conn_clear=True)
    conns = [FakeConn(), FakeConn()]
    for conn in conns:
        server.route(tag, "u", "example.com", "tls", "192.0.2.1", conn)
    other = FakeConn()
    server.route(tag, "v", "example.com", "tls", "192.0.2.9", other)
    server.clear_conn(tag, "u")
    assert [c.closed for c in conns] == [True, True]
    assert not other.closed


def test_clear_conn_disabled_keeps_conns(node):
    tag = node()
    server = HookServer()
    conn = FakeConn()
    server.route(tag, "u", "example.com", "tls", "192.0.2.1", conn)
    server.clear_conn(tag, "u")
    assert not conn.closed


def test_route_packet_counts_traffic(node):
    tag = node()
    server = HookServer()
    routed, _ = server.route_packet(tag, "u", "example.com", "quic", "192.0.2.1", FakeConn())
    routed.write(b"xyz")
    assert server.get_user_traffic(tag, "u") == (0, 3)