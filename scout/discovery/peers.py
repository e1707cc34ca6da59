"""Peer address records and the in-memory peer registry."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PeerAddress:
    """Network location of a discovery peer.

    Two addresses are the same peer when ``host`` and ``udp_port`` match;
    ``tcp_port`` and ``node_id`` are carried along for reporting only.
    """

    host: str
    udp_port: int
    tcp_port: int = field(default=0, compare=False)
    node_id: str | None = field(default=None, compare=False)

    def __post_init__(self) -> None:
        for name in ("udp_port", "tcp_port"):
            port = getattr(self, name)
            if not 0 <= port <= 65535:
                raise ValueError(f"{name} out of range: {port}")

    @property
    def identity(self) -> str:
        """Registry key — ``host:udp_port``."""
        return f"{self.host}:{self.udp_port}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "identity": self.identity,
            "host": self.host,
            "udp_port": self.udp_port,
            "tcp_port": self.tcp_port,
            "node_id": self.node_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PeerAddress:
        return cls(
            host=data["host"],
            udp_port=int(data["udp_port"]),
            tcp_port=int(data.get("tcp_port") or 0),
            node_id=data.get("node_id"),
        )


@dataclass(frozen=True)
class DiscoverySnapshot:
    """Registry size at a given round, taken just before a refresh."""

    count: int
    round: int


class PeerRegistry:
    """Deduplicated ``identity -> PeerAddress`` map of everything found so far.

    Entries are kept in discovery order and are never deleted: a peer evicted
    from the discovery table is only flagged (see :meth:`mark_removed`).
    Mutated from a single task, so :meth:`add` needs no lock — the membership
    check and the insert happen without a suspension point in between.
    """

    def __init__(self) -> None:
        self._peers: dict[str, PeerAddress] = {}
        self._removed: set[str] = set()

    def add(self, peer: PeerAddress) -> bool:
        """Insert *peer*; return ``True`` if its identity was new.

        Re-adding a known identity is a no-op apart from clearing its
        removed flag.
        """
        key = peer.identity
        if key in self._peers:
            self._removed.discard(key)
            return False
        self._peers[key] = peer
        return True

    def mark_removed(self, peer: PeerAddress) -> bool:
        """Flag *peer* as evicted from the table. Unknown peers are ignored."""
        key = peer.identity
        if key not in self._peers:
            logger.debug("Removal for unknown peer %s ignored", key)
            return False
        self._removed.add(key)
        return True

    def get(self, identity: str) -> PeerAddress | None:
        return self._peers.get(identity)

    def peers(self) -> list[PeerAddress]:
        """All peers in discovery order."""
        return list(self._peers.values())

    def removed(self) -> list[PeerAddress]:
        """Peers currently flagged as evicted, in discovery order."""
        return [p for k, p in self._peers.items() if k in self._removed]

    def snapshot(self, round_: int) -> DiscoverySnapshot:
        return DiscoverySnapshot(count=len(self._peers), round=round_)

    def __contains__(self, peer: object) -> bool:
        if isinstance(peer, PeerAddress):
            return peer.identity in self._peers
        return peer in self._peers

    def __len__(self) -> int:
        return len(self._peers)

    def __iter__(self) -> Iterator[PeerAddress]:
        return iter(list(self._peers.values()))
