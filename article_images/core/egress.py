from __future__ import annotations

import asyncio
import ipaddress
import logging
import re
import socket
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

BLOCKED_HOSTNAMES = {
    "localhost",
    "localhost.localdomain",
    "ip6-localhost",
    "ip6-loopback",
    "0.0.0.0",
    "[::]",
}
ALLOWED_SCHEMES = {"http", "https"}
_LEGACY_NUMERIC_HOST_RE = re.compile(r"^(?:0x[0-9a-f]+|[0-9]+)(?:\.(?:0x[0-9a-f]+|[0-9]+)){0,3}$", re.IGNORECASE)

Resolver = Callable[[str], Awaitable[list[str]]]
IPAddress = ipaddress.IPv4Address | ipaddress.IPv6Address


@dataclass(slots=True, frozen=True)
class EgressDecision:
    valid: bool
    reason: str | None = None


ALLOWED = EgressDecision(valid=True)


def is_blocked_address(address: IPAddress) -> bool:
    if isinstance(address, ipaddress.IPv6Address):
        if address.teredo is not None:
            return any(is_blocked_address(embedded) for embedded in address.teredo)
        embedded = address.ipv4_mapped or address.sixtofour
        if embedded is not None:
            address = embedded
    return (
        address.is_private
        or address.is_loopback
        or address.is_link_local
        or address.is_reserved
        or address.is_multicast
        or address.is_unspecified
        or not address.is_global
    )


def parse_host_address(host: str) -> IPAddress | None:
    """Interpret a hostname as an IP literal, including legacy numeric IPv4 forms."""
    candidate = host.strip("[]")
    try:
        return ipaddress.ip_address(candidate)
    except ValueError:
        pass
    if _LEGACY_NUMERIC_HOST_RE.match(candidate):
        try:
            return ipaddress.IPv4Address(socket.inet_aton(candidate))
        except OSError:
            return None
    return None


def check_url(url: str) -> EgressDecision:
    """Literal egress check: scheme, blocked host names and IP literals. No I/O."""
    try:
        parsed = urlparse(url.strip())
        host = (parsed.hostname or "").lower().rstrip(".")
    except ValueError:
        return EgressDecision(valid=False, reason="malformed_url")

    if parsed.scheme.lower() not in ALLOWED_SCHEMES:
        return EgressDecision(valid=False, reason="unsupported_scheme")
    if not host:
        return EgressDecision(valid=False, reason="missing_host")
    if host in BLOCKED_HOSTNAMES or any(host.endswith(f".{blocked}") for blocked in BLOCKED_HOSTNAMES):
        return EgressDecision(valid=False, reason="blocked_hostname")

    address = parse_host_address(host)
    if address is not None and is_blocked_address(address):
        return EgressDecision(valid=False, reason="private_address")
    return ALLOWED


async def resolve_host(host: str) -> list[str]:
    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(host, None, type=socket.SOCK_STREAM)
    return [str(info[4][0]) for info in infos]


class EgressGuard:
    """Decides whether an outbound URL may be fetched.

    With ``resolve_dns`` the hostname is resolved and every returned address is
    checked, which closes the gap of public names pointing at private ranges.
    Resolution failures are allowed through: the fetch will fail on its own.
    """

    def __init__(self, *, resolve_dns: bool = True, resolver: Resolver | None = None) -> None:
        self.resolve_dns = resolve_dns
        self._resolver = resolver or resolve_host

    def check_literal(self, url: str) -> EgressDecision:
        return check_url(url)

    async def check(self, url: str) -> EgressDecision:
        decision = check_url(url)
        if not decision.valid or not self.resolve_dns:
            return decision

        host = (urlparse(url.strip()).hostname or "").lower().rstrip(".")
        if parse_host_address(host) is not None:
            return decision

        try:
            addresses = await self._resolver(host)
        except (OSError, UnicodeError) as exc:
            logger.debug("egress dns lookup failed host=%s error=%s; allowing", host, exc)
            return decision

        for raw_address in addresses:
            try:
                address = ipaddress.ip_address(raw_address.split("%", maxsplit=1)[0])
            except ValueError:
                continue
            if is_blocked_address(address):
                return EgressDecision(valid=False, reason="resolves_to_private_address")
        return decision
