"""Tests for PeerAddress and PeerRegistry."""

from __future__ import annotations

import dataclasses
import random

import pytest

from scout.discovery.peers import DiscoverySnapshot, PeerAddress, PeerRegistry


class TestPeerAddress:
    def test_identity(self):
        p = PeerAddress(host="1.2.3.4", udp_port=30303, tcp_port=30304)
        assert p.identity == "1.2.3.4:30303"

    def test_equality_ignores_tcp_port_and_node_id(self):
        a = PeerAddress(host="1.2.3.4", udp_port=30303, tcp_port=30303, node_id="aa")
        b = PeerAddress(host="1.2.3.4", udp_port=30303, tcp_port=40404, node_id=None)
        assert a == b
        assert hash(a) == hash(b)

    def test_different_udp_port_is_different_peer(self):
        a = PeerAddress(host="1.2.3.4", udp_port=30303)
        b = PeerAddress(host="1.2.3.4", udp_port=30304)
        assert a != b

    def test_port_out_of_range(self):
        with pytest.raises(ValueError):
            PeerAddress(host="1.2.3.4", udp_port=70000)
        with pytest.raises(ValueError):
            PeerAddress(host="1.2.3.4", udp_port=1, tcp_port=-1)

    def test_frozen(self):
        p = PeerAddress(host="1.2.3.4", udp_port=30303)
        with pytest.raises(dataclasses.FrozenInstanceError):
            p.host = "5.6.7.8"  # type: ignore[misc]

    def test_dict_round_trip(self):
        p = PeerAddress(host="1.2.3.4", udp_port=30303, tcp_port=30305, node_id="ab" * 64)
        data = p.to_dict()
        assert data["identity"] == "1.2.3.4:30303"
        restored = PeerAddress.from_dict(data)
        assert restored == p
        assert restored.tcp_port == 30305
        assert restored.node_id == p.node_id


class TestPeerRegistry:
    def test_add_new_and_duplicate(self):
        registry = PeerRegistry()
        p = PeerAddress(host="1.2.3.4", udp_port=30303)
        assert registry.add(p) is True
        assert registry.add(PeerAddress(host="1.2.3.4", udp_port=30303, tcp_port=1)) is False
        assert len(registry) == 1
        # First record wins
        assert registry.get("1.2.3.4:30303").tcp_port == 0

    def test_never_holds_duplicate_identities(self):
        rng = random.Random(1234)
        pool = [PeerAddress(host=f"10.0.0.{i}", udp_port=30303) for i in range(20)]
        registry = PeerRegistry()
        for _ in range(500):
            base = rng.choice(pool)
            registry.add(PeerAddress(host=base.host, udp_port=base.udp_port,
                                     tcp_port=rng.randint(1, 65535)))
        identities = [p.identity for p in registry.peers()]
        assert len(identities) == len(set(identities))
        assert len(registry) <= len(pool)

    def test_discovery_order_preserved(self):
        registry = PeerRegistry()
        peers = [PeerAddress(host=f"10.0.0.{i}", udp_port=30303) for i in (5, 1, 3)]
        for p in peers:
            registry.add(p)
        assert registry.peers() == peers
        assert list(registry) == peers

    def test_contains(self):
        registry = PeerRegistry()
        p = PeerAddress(host="1.2.3.4", udp_port=30303)
        registry.add(p)
        assert p in registry
        assert "1.2.3.4:30303" in registry
        assert PeerAddress(host="1.2.3.4", udp_port=1) not in registry

    def test_mark_removed_keeps_entry(self):
        registry = PeerRegistry()
        p = PeerAddress(host="1.2.3.4", udp_port=30303)
        registry.add(p)
        assert registry.mark_removed(p) is True
        assert len(registry) == 1
        assert registry.removed() == [p]

    def test_mark_removed_unknown_peer(self):
        registry = PeerRegistry()
        assert registry.mark_removed(PeerAddress(host="1.2.3.4", udp_port=30303)) is False
        assert registry.removed() == []

    def test_readd_clears_removed_flag(self):
        registry = PeerRegistry()
        p = PeerAddress(host="1.2.3.4", udp_port=30303)
        registry.add(p)
        registry.mark_removed(p)
        assert registry.add(p) is False
        assert registry.removed() == []
        assert len(registry) == 1

    def test_snapshot(self):
        registry = PeerRegistry()
        registry.add(PeerAddress(host="1.2.3.4", udp_port=30303))
        registry.add(PeerAddress(host="1.2.3.5", udp_port=30303))
        assert registry.snapshot(4) == DiscoverySnapshot(count=2, round=4)
