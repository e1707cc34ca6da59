"""pytest configuration and shared fakes for scout tests."""

from __future__ import annotations

import asyncio

import pytest

from scout.config import DiscoveryConfig
from scout.discovery.peers import PeerAddress
from scout.discovery.transport import DiscoveryTable


def pytest_configure(config):
    config.addinivalue_line(
        "markers", "asyncio: mark test as async"
    )


def peer(n: int, port: int = 30303) -> PeerAddress:
    """Deterministic test peer ``10.0.<n // 256>.<n % 256>:port``."""
    return PeerAddress(host=f"10.0.{n // 256}.{n % 256}", udp_port=port, tcp_port=port)


class FakeTable(DiscoveryTable):
    """Scripted in-memory discovery table.

    - ``bootstrap(p)`` announces ``p`` itself (when ``emit_self``) and then
      every peer listed under ``neighbours[p.identity]``.
    - ``refresh()`` announces the next batch from ``refresh_batches``.
    """

    def __init__(self, emit_self: bool = True) -> None:
        super().__init__()
        self.emit_self = emit_self
        self.neighbours: dict[str, list[PeerAddress]] = {}
        self.refresh_batches: list[list[PeerAddress]] = []
        self.fail_bootstrap: set[str] = set()
        self.bootstrap_errors: int = 0
        self.bootstrap_delay: float = 0.0
        self.refresh_error: Exception | None = None
        self.start_delay: float = 0.0
        self.start_error: Exception | None = None
        self.bootstrapped: list[PeerAddress] = []
        self.refresh_calls = 0
        self.in_flight = 0
        self.max_in_flight = 0
        self.max_tasks = 0
        self.started = False
        self.closed = False

    async def start(self) -> None:
        self.started = True
        if self.start_delay:
            await asyncio.sleep(self.start_delay)
        if self.start_error is not None:
            raise self.start_error

    async def bootstrap(self, peer: PeerAddress) -> None:
        self.bootstrapped.append(peer)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        self.max_tasks = max(self.max_tasks, len(asyncio.all_tasks()))
        try:
            if self.bootstrap_delay:
                await asyncio.sleep(self.bootstrap_delay)
            for _ in range(self.bootstrap_errors):
                self._error(ConnectionResetError("packet dropped"))
            if peer.identity in self.fail_bootstrap:
                raise ConnectionRefusedError(f"{peer.identity} unreachable")
            if self.emit_self:
                self._peer_added(peer)
            for neighbour in self.neighbours.get(peer.identity, []):
                self._peer_added(neighbour)
        finally:
            self.in_flight -= 1

    async def refresh(self) -> None:
        self.refresh_calls += 1
        if self.refresh_error is not None:
            raise self.refresh_error
        if self.refresh_batches:
            for p in self.refresh_batches.pop(0):
                self._peer_added(p)

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def table() -> FakeTable:
    return FakeTable()


@pytest.fixture
def config(tmp_path) -> DiscoveryConfig:
    return DiscoveryConfig(
        seeds=("udp://10.0.0.1:30303", "udp://10.0.0.2:30303"),
        refresh_interval=0.05,
        max_rounds=20,
        min_rounds=3,
        max_nodes=0,
        timeout=5.0,
        bootstrap_timeout=1.0,
        refresh_timeout=1.0,
        output_dir=str(tmp_path / "out"),
    )
