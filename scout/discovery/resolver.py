"""Seed reference parsing and hostname resolution.

Recognised reference formats (selected by prefix):

  - ``enode://<node id>@<host>:<tcp port>[?discport=<udp port>]``
  - ``udp://<host>:<port>``

Hosts that are already IP literals are used as-is. Hostnames are looked up
through the event loop's resolver; when that fails the literal hostname is
kept so a tolerant table can still try it.
"""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import re
import socket
from typing import Iterable

from scout.discovery.peers import PeerAddress

logger = logging.getLogger(__name__)

_ENODE_RE = re.compile(
    r"^enode://(?P<node_id>[0-9a-fA-F]{128})"
    r"@(?P<host>\[[0-9a-fA-F:.]+\]|[^:@/?\[\]]+)"
    r":(?P<port>\d{1,5})"
    r"(?:\?discport=(?P<discport>\d{1,5}))?$"
)
_UDP_RE = re.compile(r"^udp://(?P<host>\[[0-9a-fA-F:.]+\]|[^:@/?\[\]]+):(?P<port>\d{1,5})$")


class MalformedReferenceError(ValueError):
    """The reference matches none of the recognised formats."""


class ResolutionError(OSError):
    """A hostname could not be resolved to a network address."""


def is_ip_literal(host: str) -> bool:
    try:
        ipaddress.ip_address(host)
    except ValueError:
        return False
    return True


def _port(value: str, reference: str) -> int:
    port = int(value)
    if not 0 < port <= 65535:
        raise MalformedReferenceError(f"Port out of range in {reference!r}: {port}")
    return port


def parse_reference(reference: str) -> tuple[str, int, int, str | None]:
    """Split *reference* into ``(host, udp_port, tcp_port, node_id)``.

    No network access happens here; the host is returned as written (IPv6
    brackets stripped).
    """
    reference = reference.strip()
    if reference.startswith("enode://"):
        m = _ENODE_RE.match(reference)
        if not m:
            raise MalformedReferenceError(f"Invalid enode format: {reference!r}")
        tcp_port = _port(m.group("port"), reference)
        udp_port = _port(m.group("discport"), reference) if m.group("discport") else tcp_port
        return m.group("host").strip("[]"), udp_port, tcp_port, m.group("node_id").lower()
    if reference.startswith("udp://"):
        m = _UDP_RE.match(reference)
        if not m:
            raise MalformedReferenceError(f"Invalid udp address: {reference!r}")
        port = _port(m.group("port"), reference)
        return m.group("host").strip("[]"), port, port, None
    raise MalformedReferenceError(
        f"Unrecognised node reference (expected enode:// or udp://): {reference!r}"
    )


class AddressResolver:
    """Turns seed references into :class:`PeerAddress` values.

    Args:
        timeout: Upper bound in seconds for a single hostname lookup.
    """

    def __init__(self, timeout: float = 5.0) -> None:
        self.timeout = timeout

    async def resolve(self, reference: str) -> PeerAddress:
        """Parse *reference* and resolve its host.

        Raises:
            MalformedReferenceError: *reference* does not parse.
        """
        host, udp_port, tcp_port, node_id = parse_reference(reference)
        if not is_ip_literal(host):
            try:
                host = await self.lookup_host(host)
            except ResolutionError as exc:
                logger.warning("%s — using hostname %r as the address", exc, host)
        return PeerAddress(host=host, udp_port=udp_port, tcp_port=tcp_port, node_id=node_id)

    async def resolve_all(self, references: Iterable[str]) -> list[PeerAddress]:
        """Resolve *references* concurrently, skipping any that fail.

        Duplicates (same host and UDP port) are collapsed; order follows the
        input.
        """
        refs = list(references)
        results = await asyncio.gather(
            *(self.resolve(ref) for ref in refs), return_exceptions=True
        )
        peers: list[PeerAddress] = []
        for ref, result in zip(refs, results):
            if isinstance(result, MalformedReferenceError):
                logger.warning("Skipping seed: %s", result)
            elif isinstance(result, Exception):
                logger.warning("Skipping seed %r: %s", ref, result)
            elif isinstance(result, BaseException):
                raise result
            elif result not in peers:
                peers.append(result)
        return peers

    async def lookup_host(self, host: str) -> str:
        """Resolve *host* to an IP address string, preferring IPv4.

        Raises:
            ResolutionError: lookup failed, returned nothing, or timed out.
        """
        loop = asyncio.get_running_loop()
        try:
            infos = await asyncio.wait_for(
                loop.getaddrinfo(host, None, type=socket.SOCK_DGRAM),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as exc:
            raise ResolutionError(f"Timed out resolving {host} after {self.timeout}s") from exc
        except (OSError, UnicodeError) as exc:
            # UnicodeError: IDNA rejects empty or over-long labels
            raise ResolutionError(f"Could not resolve hostname {host}: {exc}") from exc

        if not infos:
            raise ResolutionError(f"Could not resolve hostname: {host}")
        for family, _, _, _, sockaddr in infos:
            if family == socket.AF_INET:
                return sockaddr[0]
        return infos[0][4][0]
