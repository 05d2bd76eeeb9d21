# proxynode

Building blocks for a multi-user proxy node: connection and online-IP
limits, device limits, per-user speed limits with token buckets, domain and
protocol rules, byte counters, DNS configuration files, account settings
for common proxy protocols, traffic sniffing and outbound selection.

The package is pure Python and has no runtime dependencies.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Modules

### `proxynode.bucket`

`TokenBucket(fill_interval, capacity, quantum, clock=None)` starts full and
adds `quantum` tokens every `fill_interval` seconds, up to `capacity`.
`available()` returns the current tokens (negative after an over-draw),
`take_available(count)` takes what it can without waiting, and
`take(count)` always takes the tokens and returns how many seconds the
caller should wait. The clock defaults to `time.monotonic` and can be
replaced for tests.

### `proxynode.connlimit`

`ConnLimiter(conn_limit, ip_limit, realtime, clock=None)` counts TCP
connections and online IPs per user. A limit of 0 disables that check.
`add_conn_count(user, ip, is_tcp)` returns `True` when the connection goes
over a limit; `del_conn_count(user, ip)` releases a TCP connection (realtime
mode only); `clear_online_ip()` drops packet-protocol IPs in realtime mode,
or IPs idle for more than a minute otherwise.

### `proxynode.limiter`

A registry of per-node limiters: `add_limiter(tag, config, users,
alive_list)`, `get_limiter(tag)` (raises `LimiterNotFoundError`),
`delete_limiter(tag)`, `clear_online_ip()` for every registered limiter, and
`start_online_ip_cleaner(interval=180.0, delay=180.0)`, which runs the
clearing on a daemon thread and returns a `threading.Event` that stops it.

`Limiter` holds the node's limits:

- `check_limit(tag_uuid, ip, is_tcp, no_ss_udp=True)` returns
  `(bucket, rejected)`. It applies the connection and IP limits, the device
  limit (against the `alive_list` counts given per user id) and builds a
  shared `TokenBucket` per user when a speed limit applies. A leading
  `::ffff:` is stripped from the IP.
- `update_user(tag, added, deleted)`, `add_dynamic_speed_limit(tag, user,
  limit, expire)` and `update_dynamic_speed_limit(tag, uuid, limit, expire)`
  manage per-user limits; an expired dynamic limit falls back to the user's
  own limit.
- `get_online_device()` returns the `OnlineUser` entries seen since the last
  call and resets the record.
- `update_rule(Rules(...))`, `check_domain_rule(destination)` and
  `check_protocol_rule(protocol)` handle regular-expression domain rules and
  blocked protocols.

Users are keyed by `user_tag(tag, uuid)`, which gives `"tag|uuid"`.
`determine_speed_limit(a, b)` returns the smaller non-zero limit, or 0.
The data classes are `UserInfo`, `LimitConfig`, `UserLimitInfo`, `Rules`
and `OnlineUser`.

### `proxynode.dnsconfig`

`build_sing_dns_config(dns_map)` and `build_xray_dns_config(dns_map)` return
JSON documents (as bytes) built from a map of DNS servers, each with an
`address` and, for the first format, `domains` entries such as
`"domain:example.com"` or `"geosite:cn"`. The second format splits a
`host:port` address into `address` and `port`.

`save_dns_config(data, dns_path)` overwrites an existing file only when the
content differs and returns whether it wrote; it raises if the path is empty
or cannot be read. `update_sing_dns_config(raw_dns, dns_path)` and
`update_xray_dns_config(raw_dns, dns_path)` take a `RawDNS`, whose raw
`dns_json`, if set, is re-indented and saved as is; otherwise its `dns_map`
is built and saved.

### `proxynode.stats`

`Counter` is a thread-safe integer (`add` returns the new value, `set` the
previous one, `value` reads it). `SizeStatWriter(counter, writer)` adds the
total size of each `write(chunks)` to the counter before forwarding it.

### `proxynode.accounts`

`build_ss_users`, `build_trojan_users`, `build_vmess_users` and
`build_vless_users` turn `UserInfo` entries into `ProxyUser` records whose
`email` is the user tag and whose `account` holds the protocol settings.
`cipher_from_string(name)` maps cipher names and aliases to `CipherType`;
`ss2022_key(uuid, cipher)` derives a Shadowsocks 2022 key from the uuid.
`build_freedom_outbound(tag, send_ip="", enable_dns=False, dns_type="")`
returns a direct outbound settings dict, and `parse_fallbacks(fallbacks)`
turns per-ALPN fallbacks with string ports into server options, raising
`ValueError` on a bad port.

### `proxynode.hook`

`HookServer(enable_conn_clear=False)` applies the registered limiter of an
inbound to connections: `route(...)` for streams and `route_packet(...)` for
packet connections return the wrapped connection (rate-limited and counted)
and a `Tracker` whose `leave()` runs the clean-up callbacks. A refused
connection is closed and `ConnectionRejected` is raised.
`get_user_traffic(inbound, user, reset=False)` returns uploaded and
downloaded bytes, and `clear_conn(inbound, user)` closes all of a user's
remembered connections (with `enable_conn_clear`). `ConnClear` and
`Tracker` are also usable on their own.

### `proxynode.sniffer`

`Sniffer` runs `ProtocolSniffer` functions you supply, narrowing to those
that raise `NoClue`. `sniff(sniffer, read_payload, metadata_only=False,
network="tcp", max_size=8192)` combines metadata and content sniffing, with
at most two reads. `new_fake_dns_sniffer(engine, target)` and
`new_fake_dns_then_others(fake_dns_sniffer, others)` add fake-DNS lookups,
and `should_override(result, request, destination, fake_dns=None)` decides
whether a sniffed domain replaces the destination under a `SniffingRequest`.

### `proxynode.dispatcher`

`Dispatcher(outbounds, router=None, stats=None, user_uplink=True,
user_downlink=True)` joins connections to outbound handlers (objects with a
`dispatch(link)` method; the first one is the default).
`get_link(session, is_tcp)` builds the inbound and outbound `Link` pair,
applying the user's limiter, throttling and counters named
`user>>>EMAIL>>>traffic>>>uplink` / `downlink`. `routed_dispatch(session,
link, destination, limiter=None, protocol="")` checks the domain and
protocol rules, picks a forced, routed, same-tag or default outbound,
dispatches, and returns the chosen tag. Refusals close the link and raise
`DispatchRejected`. `CachedReader` keeps sniffed bytes for later reads, and
`detour_label(in_tag, out_tag, pick_route)` formats the route taken.

## Example

```python
from proxynode.limiter import LimitConfig, UserInfo, add_limiter, user_tag

users = [UserInfo(id=1, uuid="user-one", speed_limit=10)]
limiter = add_limiter("node1", LimitConfig(ip_limit=2), users, {})

bucket, rejected = limiter.check_limit(user_tag("node1", "user-one"), "203.0.113.5", True, True)
if rejected:
    print("connection refused")
elif bucket is not None:
    wait = bucket.take(1024)
```

Speed limits are given in Mbit/s; buckets are sized in bytes per second.
A limit of zero means "no limit", and when both a node and a user limit are
set the smaller one applies.

## What this package does not do

It is a library, not a proxy. It has no command to run, listens on no
sockets, and implements no proxy protocol, encryption or transport: the
account builders only produce settings, and the sniffer ships no protocol
detectors of its own. It does not talk to a management panel or fetch users;
users, limits and rules are handed to it by the caller.