"""Protocol sniffing of the first bytes and metadata of a connection."""

from __future__ import annotations

import ipaddress
import logging
import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

log = logging.getLogger(__name__)

TCP = "tcp"
UDP = "udp"
UNKNOWN = "unknown"

DEFAULT_MAX_SIZE = 8192
_MAX_ATTEMPTS = 2


class NoClue(Exception):
    """Raised when a sniffer needs more data before it can decide."""


class UnknownContentError(Exception):
    """Raised when no sniffer recognises the content."""

    def __init__(self, message: str = "unknown content") -> None:
        super().__init__(message)


class SniffingTimeoutError(Exception):
    """Raised when sniffing gives up after its read attempts."""

    def __init__(self, message: str = "timeout on sniffing") -> None:
        super().__init__(message)


@dataclass(frozen=True)
class SniffResult:
    """The protocol a sniffer recognised and the domain it found, if any."""

    protocol: str
    domain: str = ""


@dataclass(frozen=True)
class CompositeResult:
    """A result taking its domain from one sniff and its protocol from another."""

    domain_result: Any
    protocol_result: Any

    @property
    def protocol(self) -> str:
        return self.protocol_result.protocol

    @property
    def domain(self) -> str:
        return self.domain_result.domain

    @property
    def protocol_for_domain_result(self) -> str:
        return self.domain_result.protocol


@dataclass(frozen=True)
class FakeDNSSniffResult:
    """A domain recovered from the fake DNS pool."""

    domain: str

    @property
    def protocol(self) -> str:
        return "fakedns"


@dataclass(frozen=True)
class DNSThenOthersSniffResult:
    """A result found by other sniffers for an address in the fake DNS pool."""

    domain: str
    protocol_original_name: str

    @property
    def protocol(self) -> str:
        return "fakedns+others"

    def is_proto_subset_of(self, protocol_name: str) -> bool:
        return protocol_name.startswith(self.protocol_original_name)


@dataclass
class ProtocolSniffer:
    """A sniffing function and when it applies.

    ``func`` receives the payload (``None`` for metadata sniffers) and returns
    a result, returns ``None`` or raises to say "not this protocol", or raises
    ``NoClue`` to ask for more data. A metadata sniffer runs once when the
    connection is established.
    """

    func: Callable[[bytes | None], Any]
    metadata_sniffer: bool = False
    network: str = UNKNOWN


@dataclass
class _FakeDNSSniffer(ProtocolSniffer):
    in_range: Callable[[], bool | None] = field(default=lambda: None)


@dataclass
class SniffingRequest:
    """The sniffing settings of an inbound connection."""

    enabled: bool = False
    override_destination_for_protocol: list[str] = field(default_factory=list)
    exclude_for_domain: list[str] = field(default_factory=list)
    metadata_only: bool = False
    route_only: bool = False


def new_fake_dns_sniffer(engine: Any, target: Callable[[], Any]) -> ProtocolSniffer:
    """Build a metadata sniffer that looks the target address up in the fake DNS pool.

    ``target`` returns the connection's current destination, which has
    ``network`` and ``address`` attributes.
    """
    if engine is None:
        raise ValueError("FakeDNSEngine is not initialized, but such a sniffer is used")

    def sniff_fake_dns(payload: bytes | None) -> FakeDNSSniffResult:
        destination = target()
        if destination.network in (TCP, UDP):
            domain = engine.get_domain_from_fake_dns(destination.address)
            if domain:
                log.info("fake dns got domain: %s for ip: %s", domain, destination.address)
                return FakeDNSSniffResult(domain)
        raise NoClue()

    def in_range() -> bool | None:
        is_in_pool = getattr(engine, "is_ip_in_ip_pool", None)
        if is_in_pool is None:
            return None
        return bool(is_in_pool(target().address))

    return _FakeDNSSniffer(func=sniff_fake_dns, metadata_sniffer=True, in_range=in_range)


def new_fake_dns_then_others(
    fake_dns_sniffer: ProtocolSniffer, others: Iterable[ProtocolSniffer]
) -> ProtocolSniffer:
    """Build a sniffer that runs ``others`` for addresses inside the fake DNS pool."""
    others = list(others)
    in_range = getattr(fake_dns_sniffer, "in_range", None)

    def sniff_then_others(payload: bytes | None) -> DNSThenOthersSniffResult | FakeDNSSniffResult:
        try:
            result = fake_dns_sniffer.func(payload)
        except Exception:
            result = None
        if result is not None:
            return result
        address_in_range = in_range() if in_range is not None else None
        if address_in_range is None:
            log.warning("fake dns sniffer did not set address in range option, assume false.")
            raise NoClue()
        if not address_in_range:
            log.debug("ip address not in fake dns range, return as is")
            raise NoClue()
        for other in others:
            if not (other.metadata_sniffer or payload is not None):
                continue
            try:
                found = other.func(payload)
            except Exception:
                continue
            if found is not None:
                return DNSThenOthersSniffResult(
                    domain=found.domain, protocol_original_name=found.protocol
                )
        raise NoClue()

    return ProtocolSniffer(func=sniff_then_others, metadata_sniffer=False)


class Sniffer:
    """Runs a set of protocol sniffers, narrowing to those still undecided."""

    def __init__(self, sniffers: Iterable[ProtocolSniffer]) -> None:
        self.sniffers: list[ProtocolSniffer] = list(sniffers)

    def sniff(self, payload: bytes, network: str) -> Any:
        """Sniff ``payload`` with the content sniffers for ``network``."""
        pending: list[ProtocolSniffer] = []
        for sniffer in self.sniffers:
            if sniffer.metadata_sniffer or sniffer.network != network:
                continue
            try:
                result = sniffer.func(payload)
            except NoClue:
                pending.append(sniffer)
                continue
            except Exception:
                continue
            if result is not None:
                return result
        if pending:
            self.sniffers = pending
            raise NoClue()
        raise UnknownContentError()

    def sniff_metadata(self) -> Any:
        """Run the metadata sniffers."""
        pending: list[ProtocolSniffer] = []
        for sniffer in self.sniffers:
            if not sniffer.metadata_sniffer:
                pending.append(sniffer)
                continue
            try:
                result = sniffer.func(None)
            except NoClue:
                pending.append(sniffer)
                continue
            except Exception:
                continue
            if result is not None:
                return result
        if pending:
            self.sniffers = pending
            raise NoClue()
        raise UnknownContentError()


def _sniff_content(
    sniffer: Sniffer, read_payload: Callable[[], bytes], network: str, max_size: int
) -> Any:
    for _ in range(_MAX_ATTEMPTS):
        payload = read_payload()
        if payload:
            try:
                return sniffer.sniff(payload, network)
            except NoClue:
                pass
        if len(payload) >= max_size:
            raise UnknownContentError()
    raise SniffingTimeoutError()


def sniff(
    sniffer: Sniffer,
    read_payload: Callable[[], bytes],
    metadata_only: bool = False,
    network: str = TCP,
    max_size: int = DEFAULT_MAX_SIZE,
) -> Any:
    """Sniff a connection from its metadata and, unless told not to, its first bytes.

    ``read_payload`` returns the bytes buffered so far; it is called at most twice.
    """
    meta_result: Any = None
    meta_error: Exception | None = None
    try:
        meta_result = sniffer.sniff_metadata()
    except (NoClue, UnknownContentError) as err:
        meta_error = err
    if metadata_only:
        if meta_error is not None:
            raise meta_error
        return meta_result
    try:
        content_result = _sniff_content(sniffer, read_payload, network, max_size)
    except (UnknownContentError, SniffingTimeoutError):
        if meta_error is None:
            return meta_result
        raise
    if meta_error is None:
        return CompositeResult(meta_result, content_result)
    return content_result


def _is_ip(address: Any) -> bool:
    try:
        ipaddress.ip_address(str(address))
    except ValueError:
        return False
    return True


def should_override(
    result: Any, request: SniffingRequest, destination: Any, fake_dns: Any = None
) -> bool:
    """Decide whether the sniffed domain replaces the destination address."""
    domain = result.domain
    if not domain:
        return False
    for excluded in request.exclude_for_domain:
        if excluded.startswith("regexp:"):
            try:
                pattern = re.compile(excluded[len("regexp:"):])
            except re.error:
                log.info("Unable to compile regex")
                continue
            if pattern.search(domain):
                return False
        elif domain.lower() == excluded:
            return False
    protocol = getattr(result, "protocol_for_domain_result", result.protocol)
    is_in_pool = getattr(fake_dns, "is_ip_in_ip_pool", None)
    is_subset = getattr(result, "is_proto_subset_of", None)
    for override in request.override_destination_for_protocol:
        if protocol.startswith(override):
            return True
        if (
            is_in_pool is not None
            and protocol != "bittorrent"
            and override == "fakedns"
            and _is_ip(destination.address)
            and is_in_pool(destination.address)
        ):
            log.info("Using sniffer %s since the fake DNS missed", protocol)
            return True
        if is_subset is not None and is_subset(override):
            return True
    return False