"""Building and saving the DNS configuration files of the proxy cores."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

log = logging.getLogger(__name__)

_SING_RULE_TYPES = ("domain_suffix", "domain_keyword", "domain_regex", "geosite")
_XRAY_DEFAULT_SERVERS = ("1.1.1.1", "localhost")
_XRAY_DNS_TAG = "dns_inbound"

_HTML_ESCAPES = {
    "&": "\\u0026",
    "<": "\\u003c",
    ">": "\\u003e",
    "\u2028": "\\u2028",
    "\u2029": "\\u2029",
}


@dataclass
class RawDNS:
    """DNS settings handed out by the panel: a raw JSON document or a server map."""

    dns_map: dict[str, dict[str, Any]] = field(default_factory=dict)
    dns_json: bytes = b""


def _sorted_keys(obj: Any) -> Any:
    if isinstance(obj, dict):
        return {key: _sorted_keys(obj[key]) for key in sorted(obj)}
    if isinstance(obj, (list, tuple)):
        return [_sorted_keys(item) for item in obj]
    return obj


def _marshal(obj: Any, indent: int) -> bytes:
    text = json.dumps(obj, indent=indent, ensure_ascii=False)
    for char, escaped in _HTML_ESCAPES.items():
        text = text.replace(char, escaped)
    return text.encode()


def _indent_json(raw: bytes | str) -> bytes:
    """Re-indent a JSON document with one space per level."""
    document = json.loads(raw)
    return json.dumps(document, indent=1, ensure_ascii=False).encode()


def _split_host_port(address: str) -> tuple[str, str]:
    if address.startswith("["):
        end = address.find("]")
        if end < 0:
            raise ValueError(f"address {address}: missing ']' in address")
        rest = address[end + 1:]
        if not rest.startswith(":"):
            raise ValueError(f"address {address}: missing port in address")
        host, port = address[1:end], rest[1:]
        if ":" in port:
            raise ValueError(f"address {address}: too many colons in address")
        return host, port
    host, sep, port = address.rpartition(":")
    if not sep:
        raise ValueError(f"address {address}: missing port in address")
    if ":" in host:
        raise ValueError(f"address {address}: too many colons in address")
    if "[" in host or "]" in host:
        raise ValueError(f"address {address}: unexpected bracket in address")
    return host, port


def _parse_port(port: str) -> int:
    if not port.isdigit():
        return 0
    value = int(port)
    return value if value <= 0xFFFF else 0


def build_sing_dns_config(dns_map: dict[str, dict[str, Any]]) -> bytes:
    """Build a DNS configuration document with a server and a rule per map entry."""
    servers: list[dict[str, Any]] = [
        {
            "tag": "default",
            "address": "https://8.8.8.8/dns-query",
            "detour": "direct",
        }
    ]
    rules: list[dict[str, Any]] = []
    for server_id, value in dns_map.items():
        servers.append(
            {
                "tag": server_id,
                "address": value.get("address"),
                "address_resolver": "default",
                "detour": "direct",
            }
        )
        rule: dict[str, Any] = {"server": server_id, "disable_cache": True}
        entries = value.get("domains") or []
        for rule_type in _SING_RULE_TYPES:
            domains: list[str] = []
            for entry in entries:
                prefix, sep, domain = entry.partition(":")
                prefix = prefix.lower()
                if prefix == rule_type or (
                    prefix == "domain" and rule_type == "domain_suffix"
                ):
                    if sep:
                        domains.append(domain)
            if domains:
                rule[rule_type] = domains
        rules.append(rule)
    document = {"servers": _sorted_keys(servers), "rules": _sorted_keys(rules)}
    return _marshal(document, 2)


def build_xray_dns_config(dns_map: dict[str, dict[str, Any]]) -> bytes:
    """Build a DNS configuration document listing the map's servers.

    An address of the form ``host:port`` is split into its address and port.
    """
    servers: list[Any] = list(_XRAY_DEFAULT_SERVERS)
    for value in dns_map.values():
        server = dict(value)
        address = server["address"]
        if ":" in address and "/" not in address:
            host, port = _split_host_port(address)
            server["address"] = host
            server["port"] = _parse_port(port)
        servers.append(server)
    document = {"servers": _sorted_keys(servers), "tag": _XRAY_DNS_TAG}
    return _marshal(document, 2)


def save_dns_config(data: bytes | str, dns_path: str | Path) -> bool:
    """Write ``data`` to an existing file if it differs; return True if written."""
    if isinstance(data, str):
        data = data.encode()
    if not str(dns_path):
        raise FileNotFoundError("DNS config path is not set")
    path = Path(dns_path)
    try:
        current = path.read_bytes()
    except OSError:
        log.error("Failed to read DNS config file %s", path)
        raise
    if current == data:
        return False
    try:
        path.write_bytes(data)
    except OSError:
        log.error("Failed to write DNS config file %s", path)
        raise
    return True


def update_sing_dns_config(raw_dns: RawDNS, dns_path: str | Path) -> None:
    """Save the node's DNS settings in the format of the sing core."""
    if raw_dns.dns_json:
        save_dns_config(_indent_json(raw_dns.dns_json), dns_path)
    elif raw_dns.dns_map:
        save_dns_config(build_sing_dns_config(raw_dns.dns_map), dns_path)


def update_xray_dns_config(raw_dns: RawDNS, dns_path: str | Path) -> None:
    """Save the node's DNS settings in the format of the xray core."""
    if raw_dns.dns_json:
        save_dns_config(_indent_json(raw_dns.dns_json), dns_path)
    elif raw_dns.dns_map:
        save_dns_config(build_xray_dns_config(raw_dns.dns_map), dns_path)