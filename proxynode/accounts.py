"""Proxy user accounts and outbound settings built from panel users."""

from __future__ import annotations

import base64
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from proxynode.limiter import UserInfo, user_tag

_SS2022_KEY_LENGTHS = {
    "2022-blake3-aes-128-gcm": 16,
    "2022-blake3-aes-256-gcm": 32,
}

_PORT_PATTERN = re.compile(r"[+-]?[0-9]+")


class CipherType(Enum):
    """Shadowsocks ciphers understood by the classic shadowsocks inbound."""

    UNKNOWN = "unknown"
    AES_128_GCM = "aes-128-gcm"
    AES_256_GCM = "aes-256-gcm"
    CHACHA20_POLY1305 = "chacha20-poly1305"
    NONE = "none"


_CIPHER_ALIASES = {
    "aes-128-gcm": CipherType.AES_128_GCM,
    "aead_aes_128_gcm": CipherType.AES_128_GCM,
    "aes-256-gcm": CipherType.AES_256_GCM,
    "aead_aes_256_gcm": CipherType.AES_256_GCM,
    "chacha20-poly1305": CipherType.CHACHA20_POLY1305,
    "aead_chacha20_poly1305": CipherType.CHACHA20_POLY1305,
    "chacha20-ietf-poly1305": CipherType.CHACHA20_POLY1305,
    "none": CipherType.NONE,
    "plain": CipherType.NONE,
}


@dataclass(frozen=True)
class ProxyUser:
    """A user as registered with an inbound: its e-mail tag and account settings."""

    email: str
    account: dict[str, Any] = field(default_factory=dict)
    level: int = 0


def cipher_from_string(name: str) -> CipherType:
    """Map a cipher name, in any case and any of its aliases, to a ``CipherType``."""
    return _CIPHER_ALIASES.get(name.lower(), CipherType.UNKNOWN)


def ss2022_key(uuid: str, cipher: str) -> str:
    """Derive a Shadowsocks 2022 user key from the leading bytes of the uuid.

    Ciphers other than the 2022 ones take no bytes and give an empty key.
    """
    length = _SS2022_KEY_LENGTHS.get(cipher, 0)
    raw = uuid.encode()
    if len(raw) < length:
        raise ValueError(
            f"uuid is too short for {cipher}: need {length} bytes, got {len(raw)}"
        )
    return base64.b64encode(raw[:length]).decode()


def build_ss_users(
    tag: str, users: Iterable[UserInfo], cipher: str, server_key: str
) -> list[ProxyUser]:
    """Build Shadowsocks users; with a server key they are 2022-style users."""
    result = []
    for user in users:
        if server_key:
            account: dict[str, Any] = {"key": ss2022_key(user.uuid, cipher)}
        else:
            account = {
                "password": user.uuid,
                "cipher_type": cipher_from_string(cipher),
            }
        result.append(ProxyUser(email=user_tag(tag, user.uuid), account=account))
    return result


def build_trojan_users(tag: str, users: Iterable[UserInfo]) -> list[ProxyUser]:
    """Build Trojan users whose password is their uuid."""
    return [
        ProxyUser(email=user_tag(tag, user.uuid), account={"password": user.uuid})
        for user in users
    ]


def build_vmess_users(tag: str, users: Iterable[UserInfo]) -> list[ProxyUser]:
    """Build VMess users with automatic security."""
    return [
        ProxyUser(
            email=user_tag(tag, user.uuid),
            account={"id": user.uuid, "security": "auto"},
        )
        for user in users
    ]


def build_vless_users(
    tag: str, users: Iterable[UserInfo], flow: str
) -> list[ProxyUser]:
    """Build VLESS users sharing one flow."""
    return [
        ProxyUser(email=user_tag(tag, user.uuid), account={"id": user.uuid, "flow": flow})
        for user in users
    ]


def build_freedom_outbound(
    tag: str, send_ip: str = "", enable_dns: bool = False, dns_type: str = ""
) -> dict[str, Any]:
    """Build the direct ("freedom") outbound that a node's traffic leaves through."""
    domain_strategy = "Asis"
    if enable_dns:
        domain_strategy = dns_type or "UseIP"
    outbound: dict[str, Any] = {
        "protocol": "freedom",
        "tag": tag,
        "settings": {"domainStrategy": domain_strategy},
    }
    if send_ip:
        outbound["sendThrough"] = send_ip
    return outbound


def parse_fallbacks(
    fallbacks: Mapping[str, Mapping[str, str]],
) -> dict[str, dict[str, Any]]:
    """Turn per-ALPN fallbacks with string ports into server options.

    Each value holds ``server`` and ``server_port``; the port is parsed as a
    decimal integer and wrapped into 16 bits.
    """
    result: dict[str, dict[str, Any]] = {}
    for alpn, fallback in fallbacks.items():
        port_text = str(fallback.get("server_port", ""))
        if not _PORT_PATTERN.fullmatch(port_text):
            raise ValueError(
                "unable to parse fallbackForALPN server port error: "
                f"invalid syntax {port_text!r}"
            )
        result[alpn] = {
            "server": fallback.get("server", ""),
            "server_port": int(port_text) & 0xFFFF,
        }
    return result