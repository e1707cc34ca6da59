"""Configuration for a discovery run.

One immutable :class:`DiscoveryConfig` value is built before the run (from a
JSON file, the environment and CLI flags) and handed to the orchestrator,
which never mutates it.
"""

from __future__ import annotations

import dataclasses
import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

# Story mainnet bootnodes.
DEFAULT_SEEDS: tuple[str, ...] = (
    "enode://f42110982b6ddaa4de8031f9fecb619d181902db5529a43bc9b1187debbc67771"
    "bf937b2210cbfd33babd2acbe138506596e23d0d1792ab3cb5229c5bb051544@b1.storyrpc.io:30303",
    "enode://2ae459a7cc28b59822377deec266e24e5ed00374d7a83e2e8d0d67dd89dc2b8036"
    "6c1353c7909fe81b840f6081188850677fa20dd5d262c9e3f67eb23d0be0b5@b2.storyrpc.io:30303",
)


def default_output_dir() -> str:
    return os.environ.get("SCOUT_DATA_DIR", "./data")


@dataclass(frozen=True)
class DiscoveryConfig:
    """Discovery run configuration — loaded from a JSON file."""

    seeds: tuple[str, ...] = DEFAULT_SEEDS

    # Local endpoint the discovery table listens on
    bind_address: str = "0.0.0.0"
    udp_port: int = 30303
    tcp_port: int = 30303

    # Rounds and termination
    refresh_interval: float = 30.0  # seconds between refresh ticks
    max_rounds: int = 20
    min_rounds: int = 3  # stagnation is ignored before this many rounds
    max_nodes: int = 0  # 0 = unlimited
    timeout: float = 120.0  # wall-clock ceiling for the whole run

    # Per-operation bounds
    bootstrap_timeout: float = 10.0
    refresh_timeout: float = 10.0
    resolve_timeout: float = 5.0
    max_concurrent_bootstraps: int = 16

    # Discovery table: registry name or "package.module:factory"
    table: str | None = None
    table_options: dict = field(default_factory=dict)

    output_dir: str = field(default_factory=default_output_dir)

    def __post_init__(self) -> None:
        # JSON gives lists
        if not isinstance(self.seeds, tuple):
            object.__setattr__(self, "seeds", tuple(self.seeds))
        self.validate()

    @classmethod
    def load(cls, path: str | Path) -> DiscoveryConfig:
        path = Path(path)
        if path.exists():
            with open(path) as f:
                data = json.load(f)
            known = {f.name for f in dataclasses.fields(cls)}
            unknown = sorted(set(data) - known)
            if unknown:
                logger.warning("Ignoring unknown config keys in %s: %s", path, ", ".join(unknown))
            filtered = {k: v for k, v in data.items() if k in known}
            return cls(**filtered)
        logger.warning("Config not found at %s, using defaults", path)
        return cls()

    @classmethod
    def from_env(cls, base: DiscoveryConfig | None = None) -> DiscoveryConfig:
        """Apply ``SCOUT_*`` environment overrides on top of *base*.

        Recognised variables: ``SCOUT_SEEDS`` (comma-separated),
        ``SCOUT_TABLE``, ``SCOUT_DATA_DIR``, ``SCOUT_TIMEOUT`` and
        ``SCOUT_MAX_NODES``.
        """
        config = base if base is not None else cls()
        changes: dict[str, Any] = {}
        if os.environ.get("SCOUT_SEEDS"):
            changes["seeds"] = tuple(
                s.strip() for s in os.environ["SCOUT_SEEDS"].split(",") if s.strip()
            )
        if os.environ.get("SCOUT_TABLE"):
            changes["table"] = os.environ["SCOUT_TABLE"]
        if os.environ.get("SCOUT_DATA_DIR"):
            changes["output_dir"] = os.environ["SCOUT_DATA_DIR"]
        if os.environ.get("SCOUT_TIMEOUT"):
            changes["timeout"] = float(os.environ["SCOUT_TIMEOUT"])
        if os.environ.get("SCOUT_MAX_NODES"):
            changes["max_nodes"] = int(os.environ["SCOUT_MAX_NODES"])
        return config.replace(**changes) if changes else config

    def replace(self, **changes: Any) -> DiscoveryConfig:
        """Return a validated copy with *changes* applied."""
        return dataclasses.replace(self, **changes)

    def validate(self) -> None:
        """Raise :class:`ValueError` on inconsistent settings."""
        for name in ("refresh_interval", "timeout", "bootstrap_timeout",
                     "refresh_timeout", "resolve_timeout"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive, got {getattr(self, name)!r}")
        if self.max_rounds < 0:
            raise ValueError(f"max_rounds must be >= 0, got {self.max_rounds}")
        if not 0 <= self.min_rounds <= self.max_rounds:
            raise ValueError(
                f"min_rounds must be between 0 and max_rounds ({self.max_rounds}), "
                f"got {self.min_rounds}"
            )
        if self.max_nodes < 0:
            raise ValueError(f"max_nodes must be >= 0, got {self.max_nodes}")
        for name in ("udp_port", "tcp_port"):
            port = getattr(self, name)
            if not 0 <= port <= 65535:
                raise ValueError(f"{name} out of range: {port}")
        if self.max_concurrent_bootstraps < 1:
            raise ValueError("max_concurrent_bootstraps must be >= 1")

    def to_dict(self) -> dict[str, Any]:
        data = dataclasses.asdict(self)
        data["seeds"] = list(self.seeds)
        return data

    def save(self, path: str | Path) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(self.to_dict(), f, indent=2)

    @property
    def log_path(self) -> Path:
        """Append-only peer log inside :attr:`output_dir`."""
        return Path(self.output_dir) / "peers.ndjson"

    @property
    def summary_path(self) -> Path:
        """Final run summary inside :attr:`output_dir`."""
        return Path(self.output_dir) / "summary.json"
