"""Result recorder — append-only peer log plus a final run summary.

``peers.ndjson`` gets one JSON object per discovered peer as soon as it is
registered, so an interrupted run still leaves a readable record.
``summary.json`` is written once, after the run ends; its absence means the
run did not finish.
"""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Sequence

from scout.discovery.peers import PeerAddress

logger = logging.getLogger(__name__)


class RecorderError(Exception):
    """Run artifacts could not be prepared or the summary could not be written."""


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class ResultRecorder:
    """Writes discovery artifacts to disk.

    Args:
        log_path:     Append-only NDJSON peer log.
        summary_path: Final summary document.
    """

    def __init__(self, log_path: str | Path, summary_path: str | Path) -> None:
        self.log_path = Path(log_path)
        self.summary_path = Path(summary_path)
        self._seeds: list[str] = []
        self._started_at: str | None = None
        self._summary_written = False
        self.recorded = 0
        self.failed_appends = 0

    @classmethod
    def for_directory(cls, output_dir: str | Path) -> ResultRecorder:
        output_dir = Path(output_dir)
        return cls(output_dir / "peers.ndjson", output_dir / "summary.json")

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #

    def begin(self, seeds: Sequence[str]) -> None:
        """Start a new run: fresh log, no stale summary.

        Raises:
            RecorderError: the output directory or log cannot be prepared.
        """
        self._seeds = list(seeds)
        self._started_at = _now()
        try:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            self.summary_path.parent.mkdir(parents=True, exist_ok=True)
            self.log_path.write_text("")
            if self.summary_path.exists():
                self.summary_path.unlink()
                logger.debug("Removed stale summary %s", self.summary_path)
        except OSError as exc:
            raise RecorderError(f"Could not prepare {self.log_path.parent}: {exc}") from exc

    def record_peer(self, peer: PeerAddress, registry_size: int, round_: int) -> bool:
        """Append *peer* to the log. Returns ``False`` if the write failed."""
        record = peer.to_dict()
        record.update(
            registry_size=registry_size,
            round=round_,
            discovered_at=_now(),
        )
        try:
            with open(self.log_path, "a", encoding="utf-8") as f:
                f.write(json.dumps(record) + "\n")
                f.flush()
        except OSError as exc:
            self.failed_appends += 1
            logger.error("Failed to append %s to %s: %s", peer.identity, self.log_path, exc)
            return False
        self.recorded += 1
        return True

    def write_summary(
        self,
        peers: Sequence[PeerAddress],
        rounds_completed: int,
        complete: bool,
        reason: str | None = None,
        removed: Iterable[PeerAddress] = (),
        stats: dict[str, int] | None = None,
    ) -> Path:
        """Write the final summary. May only be called once per recorder.

        Raises:
            RecorderError: on a second call or when the file cannot be written.
        """
        if self._summary_written:
            raise RecorderError(f"Summary already written to {self.summary_path}")
        self._summary_written = True

        summary: dict[str, Any] = {
            "started_at": self._started_at,
            "finished_at": _now(),
            "seeds": self._seeds,
            "total_peers": len(peers),
            "peers": [p.to_dict() for p in peers],
            "removed": [p.identity for p in removed],
            "rounds_completed": rounds_completed,
            "complete": complete,
            "reason": reason,
            "stats": dict(stats or {}, failed_appends=self.failed_appends),
        }

        tmp_path = self.summary_path.with_name(self.summary_path.name + ".tmp")
        try:
            self.summary_path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(summary, f, indent=2)
            os.replace(tmp_path, self.summary_path)
        except OSError as exc:
            raise RecorderError(f"Could not write summary {self.summary_path}: {exc}") from exc

        logger.info(
            "Summary written to %s (%d peers, %d rounds, complete=%s)",
            self.summary_path, len(peers), rounds_completed, complete,
        )
        return self.summary_path

    @property
    def summary_written(self) -> bool:
        return self._summary_written


# ------------------------------------------------------------------ #
# Readers
# ------------------------------------------------------------------ #

def read_log(path: str | Path) -> list[dict[str, Any]]:
    """Replay a peer log in order.

    A truncated last line (process killed mid-write) is skipped. A missing
    file reads as an empty log.
    """
    path = Path(path)
    if not path.exists():
        return []
    records: list[dict[str, Any]] = []
    with open(path, encoding="utf-8") as f:
        for lineno, line in enumerate(f, 1):
            line = line.strip()
            if not line:
                continue
            try:
                records.append(json.loads(line))
            except json.JSONDecodeError:
                logger.warning("Skipping unreadable line %d in %s", lineno, path)
    return records


def read_log_peers(path: str | Path) -> list[PeerAddress]:
    """Replay a peer log into unique :class:`PeerAddress` values."""
    peers: dict[str, PeerAddress] = {}
    for record in read_log(path):
        peer = PeerAddress.from_dict(record)
        peers.setdefault(peer.identity, peer)
    return list(peers.values())


def read_summary(path: str | Path) -> dict[str, Any] | None:
    """Load a summary, or ``None`` if the run never wrote one."""
    path = Path(path)
    if not path.exists():
        return None
    with open(path, encoding="utf-8") as f:
        return json.load(f)
