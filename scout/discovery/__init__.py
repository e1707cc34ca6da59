"""scout.discovery — iterative peer discovery.

Exports:
    PeerAddress, PeerRegistry        — peer records and the dedup registry
    AddressResolver                  — enode:// / udp:// seed resolution
    DiscoveryTable                   — interface for an external protocol table
    DiscoveryTransport               — queue-based adapter around a table
    DiscoveryOrchestrator            — rounds, frontier expansion, termination
    ResultRecorder                   — NDJSON peer log and run summary
    run_discovery                    — one-call convenience wrapper
"""

from __future__ import annotations

from scout.discovery.orchestrator import (
    DiscoveryOrchestrator,
    DiscoveryResult,
    DiscoveryState,
    build_orchestrator,
    run_discovery,
)
from scout.discovery.peers import DiscoverySnapshot, PeerAddress, PeerRegistry
from scout.discovery.recorder import (
    RecorderError,
    ResultRecorder,
    read_log,
    read_log_peers,
    read_summary,
)
from scout.discovery.resolver import (
    AddressResolver,
    MalformedReferenceError,
    ResolutionError,
)
from scout.discovery.tables import available_tables, create_table, register_table
from scout.discovery.transport import (
    BootstrapError,
    DiscoveryTable,
    DiscoveryTransport,
    PeerAdded,
    PeerRemoved,
    RefreshError,
    TransportError,
    TransportStartupError,
)

__all__ = [
    "AddressResolver",
    "BootstrapError",
    "DiscoveryOrchestrator",
    "DiscoveryResult",
    "DiscoverySnapshot",
    "DiscoveryState",
    "DiscoveryTable",
    "DiscoveryTransport",
    "MalformedReferenceError",
    "PeerAdded",
    "PeerAddress",
    "PeerRegistry",
    "PeerRemoved",
    "RecorderError",
    "RefreshError",
    "ResolutionError",
    "ResultRecorder",
    "TransportError",
    "TransportStartupError",
    "available_tables",
    "build_orchestrator",
    "create_table",
    "read_log",
    "read_log_peers",
    "read_summary",
    "register_table",
    "run_discovery",
]
