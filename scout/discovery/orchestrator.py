"""Discovery orchestrator — drives rounds, frontier expansion and termination.

One asyncio task owns the run. It waits on whichever comes first: the next
event from the transport queue, the next refresh tick, the wall-clock
deadline or :meth:`DiscoveryOrchestrator.stop`. Every newly registered peer
is appended to the peer log and then queued on the frontier, where a fixed
pool of ``max_concurrent_bootstraps`` workers bootstraps from it. That is how
coverage grows past the seeds' neighbours.

The deadline is taken when :meth:`DiscoveryOrchestrator.run` starts, so it
also bounds opening the discovery table.

Tick evaluation, in priority order:

  1. round >= max_rounds                          → complete
  2. max_nodes > 0 and registry size >= max_nodes → complete
  3. size unchanged since last tick and
     round >= min_rounds                          → complete (stagnation)
  4. otherwise round += 1 and refresh the table
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from scout.config import DiscoveryConfig
from scout.discovery.peers import DiscoverySnapshot, PeerAddress, PeerRegistry
from scout.discovery.recorder import ResultRecorder
from scout.discovery.resolver import AddressResolver
from scout.discovery.transport import (
    BootstrapError,
    DiscoveryEvent,
    DiscoveryTransport,
    PeerAdded,
    PeerRemoved,
    RefreshError,
    TableFactory,
    TransportError,
    TransportStartupError,
)

logger = logging.getLogger(__name__)

REASON_MAX_ROUNDS = "max rounds reached"
REASON_MAX_NODES = "max nodes reached"
REASON_STAGNATION = "stagnation after minimum coverage"
REASON_TIMEOUT = "timeout"
REASON_CANCELLED = "cancelled"


class DiscoveryState(enum.Enum):
    RUNNING = "running"
    COMPLETE = "complete"
    STOPPED = "stopped"


@dataclass(frozen=True)
class DiscoveryResult:
    """Outcome of :meth:`DiscoveryOrchestrator.run`."""

    state: DiscoveryState
    reason: str | None
    rounds_completed: int
    peers: list[PeerAddress]
    removed: list[PeerAddress] = field(default_factory=list)
    started_at: str | None = None
    finished_at: str | None = None
    summary_path: Path | None = None

    @property
    def complete(self) -> bool:
        return self.state is DiscoveryState.COMPLETE


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class DiscoveryOrchestrator:
    """Runs one discovery session.

    Args:
        config:    Immutable run configuration.
        transport: Adapter around the discovery table (not yet opened).
        recorder:  Destination for the peer log and the summary.
        resolver:  Seed resolver; defaults to one using ``config.resolve_timeout``.
    """

    def __init__(
        self,
        config: DiscoveryConfig,
        transport: DiscoveryTransport,
        recorder: ResultRecorder,
        resolver: AddressResolver | None = None,
    ) -> None:
        self.config = config
        self._transport = transport
        self._recorder = recorder
        self._resolver = resolver or AddressResolver(timeout=config.resolve_timeout)
        self._registry = PeerRegistry()
        self._state = DiscoveryState.RUNNING
        self._reason: str | None = None
        self._round = 0
        self._last_snapshot: DiscoverySnapshot | None = None
        self._halt = asyncio.Event()
        self._deadline = 0.0
        self._frontier: asyncio.Queue[tuple[PeerAddress, bool]] = asyncio.Queue()
        self._workers: list[asyncio.Task] = []
        self._contacted: set[str] = set()
        self._started = False
        self.stats: dict[str, int] = {
            "events": 0,
            "duplicates": 0,
            "ignored": 0,
            "removed": 0,
            "bootstrap_failures": 0,
            "refresh_failures": 0,
            "transport_errors": 0,
        }

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #

    async def run(self) -> DiscoveryResult:
        """Run until a termination condition, :meth:`stop`, or the timeout.

        The summary is written on every exit path once the table is open,
        including cancellation of the calling task. Artifacts of a previous
        run are only replaced after the table has opened.

        Raises:
            TransportStartupError: the table could not be opened before the
                                   timeout or :meth:`stop`; nothing ran.
            RecorderError:         the artifacts could not be written.
        """
        if self._started:
            raise RuntimeError("DiscoveryOrchestrator.run() may only be called once")
        self._started = True

        self._deadline = asyncio.get_running_loop().time() + self.config.timeout
        await self._open_transport()
        try:
            self._recorder.begin(self.config.seeds)
        except Exception as exc:
            self._finish(DiscoveryState.STOPPED, f"error: {exc}")
            await self._transport.close()
            raise
        started_at = _now()
        logger.info(
            "Discovery started: %d seed(s), refresh every %ss, rounds %d..%d, "
            "max nodes %s, timeout %ss",
            len(self.config.seeds),
            self.config.refresh_interval,
            self.config.min_rounds,
            self.config.max_rounds,
            self.config.max_nodes or "unlimited",
            self.config.timeout,
        )

        try:
            await self._drive()
        except asyncio.CancelledError:
            self._finish(DiscoveryState.STOPPED, REASON_CANCELLED)
            raise
        except Exception as exc:
            self._finish(DiscoveryState.STOPPED, f"error: {exc}")
            raise
        finally:
            await self._teardown()
            summary_path = self._recorder.write_summary(
                self._registry.peers(),
                rounds_completed=self._round,
                complete=self._state is DiscoveryState.COMPLETE,
                reason=self._reason,
                removed=self._registry.removed(),
                stats=self.stats,
            )

        return DiscoveryResult(
            state=self._state,
            reason=self._reason,
            rounds_completed=self._round,
            peers=self._registry.peers(),
            removed=self._registry.removed(),
            started_at=started_at,
            finished_at=_now(),
            summary_path=summary_path,
        )

    def stop(self, reason: str = "stopped") -> bool:
        """Request an external stop. Returns ``False`` if already finished.

        Takes effect immediately: no further event side effects happen.
        """
        if self._state is not DiscoveryState.RUNNING:
            return False
        self._finish(DiscoveryState.STOPPED, reason)
        return True

    @property
    def state(self) -> DiscoveryState:
        return self._state

    @property
    def reason(self) -> str | None:
        return self._reason

    @property
    def round(self) -> int:
        return self._round

    @property
    def registry(self) -> PeerRegistry:
        return self._registry

    # ------------------------------------------------------------------ #
    # Main loop
    # ------------------------------------------------------------------ #

    async def _open_transport(self) -> None:
        """Open the transport, racing it against the deadline and :meth:`stop`.

        Raises:
            TransportStartupError: open failed, timed out, or was stopped.
        """
        loop = asyncio.get_running_loop()
        open_task = asyncio.ensure_future(self._transport.open())
        halt_task = asyncio.ensure_future(self._halt.wait())
        done: set[asyncio.Future] = set()
        try:
            done, _ = await asyncio.wait(
                {open_task, halt_task},
                timeout=max(self._deadline - loop.time(), 0),
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            halt_task.cancel()
            if not open_task.done():
                open_task.cancel()
                await asyncio.gather(open_task, return_exceptions=True)

        if open_task in done:
            open_task.result()
            return
        if self._state is DiscoveryState.RUNNING:
            logger.warning("Discovery table did not start within %ss", self.config.timeout)
            self._finish(DiscoveryState.STOPPED, REASON_TIMEOUT)
        raise TransportStartupError(f"Discovery table did not start ({self._reason})")

    async def _drive(self) -> None:
        loop = asyncio.get_running_loop()
        interval = self.config.refresh_interval
        deadline = self._deadline

        self._workers = [
            asyncio.create_task(self._bootstrap_worker())
            for _ in range(self.config.max_concurrent_bootstraps)
        ]
        await self._bootstrap_seeds()

        next_tick = loop.time() + interval
        halt_task = asyncio.ensure_future(self._halt.wait())
        get_task: asyncio.Future | None = None
        try:
            while self._state is DiscoveryState.RUNNING:
                now = loop.time()
                if now >= deadline:
                    logger.warning("Discovery timed out after %ss", self.config.timeout)
                    self._finish(DiscoveryState.STOPPED, REASON_TIMEOUT)
                    break
                if now >= next_tick:
                    await self._tick()
                    next_tick += interval
                    if next_tick <= loop.time():
                        next_tick = loop.time() + interval
                    continue

                if get_task is None:
                    get_task = asyncio.ensure_future(self._transport.events.get())
                done, _ = await asyncio.wait(
                    {get_task, halt_task},
                    timeout=min(next_tick, deadline) - now,
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if get_task in done:
                    event = get_task.result()
                    get_task = None
                    self._handle_event(event)
                    self._drain_events()
        finally:
            for task in (get_task, halt_task):
                if task is not None and not task.done():
                    task.cancel()

    async def _bootstrap_seeds(self) -> None:
        seeds = await self._resolver.resolve_all(self.config.seeds)
        if not seeds:
            logger.warning("No usable seed addresses — waiting for inbound peers only")
        for seed in seeds:
            if self._state is not DiscoveryState.RUNNING:
                return
            self._enqueue_bootstrap(seed, seed=True)

    async def _tick(self) -> None:
        snapshot = self._registry.snapshot(self._round)
        previous, self._last_snapshot = self._last_snapshot, snapshot

        if self._round >= self.config.max_rounds:
            self._finish(DiscoveryState.COMPLETE, REASON_MAX_ROUNDS)
        elif self.config.max_nodes > 0 and snapshot.count >= self.config.max_nodes:
            self._finish(DiscoveryState.COMPLETE, REASON_MAX_NODES)
        elif (
            previous is not None
            and snapshot.count == previous.count
            and self._round >= self.config.min_rounds
        ):
            self._finish(DiscoveryState.COMPLETE, REASON_STAGNATION)
        else:
            self._round += 1
            try:
                await self._transport.refresh()
            except RefreshError as exc:
                self.stats["refresh_failures"] += 1
                logger.warning("Error during discovery refresh: %s", exc)
            logger.info(
                "Round %d/%d: %d peer(s) known",
                self._round, self.config.max_rounds, len(self._registry),
            )

    # ------------------------------------------------------------------ #
    # Events
    # ------------------------------------------------------------------ #

    def _drain_events(self) -> None:
        queue = self._transport.events
        while self._state is DiscoveryState.RUNNING and not queue.empty():
            self._handle_event(queue.get_nowait())

    def _handle_event(self, event: DiscoveryEvent) -> None:
        self.stats["events"] += 1
        if self._state is not DiscoveryState.RUNNING:
            return
        if isinstance(event, PeerAdded):
            self._on_peer_added(event.peer)
        elif isinstance(event, PeerRemoved):
            if self._registry.mark_removed(event.peer):
                self.stats["removed"] += 1
                logger.debug("Peer removed: %s", event.peer.identity)
        elif isinstance(event, TransportError):
            self.stats["transport_errors"] += 1
            logger.warning("Discovery table error: %s", event.cause)

    def _on_peer_added(self, peer: PeerAddress) -> None:
        max_nodes = self.config.max_nodes
        if max_nodes > 0 and len(self._registry) >= max_nodes:
            self.stats["ignored"] += 1
            return
        if not self._registry.add(peer):
            self.stats["duplicates"] += 1
            return

        size = len(self._registry)
        logger.info(
            "New peer discovered: %s (tcp %d) — %d known",
            peer.identity, peer.tcp_port, size,
        )
        # Registry first, then the log: the log never names an unregistered peer.
        self._recorder.record_peer(peer, registry_size=size, round_=self._round)

        if max_nodes > 0 and size >= max_nodes:
            self._finish(DiscoveryState.COMPLETE, REASON_MAX_NODES)
            return
        self._enqueue_bootstrap(peer)

    # ------------------------------------------------------------------ #
    # Frontier expansion
    # ------------------------------------------------------------------ #

    def _enqueue_bootstrap(self, peer: PeerAddress, seed: bool = False) -> None:
        # Each address is contacted at most once per run
        if peer.identity in self._contacted:
            return
        self._contacted.add(peer.identity)
        self._frontier.put_nowait((peer, seed))

    async def _bootstrap_worker(self) -> None:
        while self._state is DiscoveryState.RUNNING:
            peer, seed = await self._frontier.get()
            if self._state is not DiscoveryState.RUNNING:
                return
            try:
                await self._transport.bootstrap(peer)
            except BootstrapError as exc:
                self.stats["bootstrap_failures"] += 1
                if seed:
                    logger.warning("Failed to bootstrap with seed: %s", exc)
                else:
                    logger.debug("Frontier bootstrap failed: %s", exc)
                continue
            if seed:
                logger.info("Bootstrapped with seed %s", peer.identity)

    # ------------------------------------------------------------------ #
    # Termination
    # ------------------------------------------------------------------ #

    def _finish(self, state: DiscoveryState, reason: str) -> None:
        if self._state is not DiscoveryState.RUNNING:
            return
        self._state = state
        self._reason = reason
        self._halt.set()
        logger.info(
            "Discovery %s (%s) at round %d with %d peer(s)",
            state.value, reason, self._round, len(self._registry),
        )

    async def _teardown(self) -> None:
        workers, self._workers = self._workers, []
        for task in workers:
            task.cancel()
        if workers:
            await asyncio.gather(*workers, return_exceptions=True)
        await self._transport.close()


def build_orchestrator(
    config: DiscoveryConfig,
    table_factory: TableFactory | None = None,
) -> DiscoveryOrchestrator:
    """Wire transport, recorder and resolver for *config*."""
    return DiscoveryOrchestrator(
        config,
        DiscoveryTransport(config, table_factory=table_factory),
        ResultRecorder(config.log_path, config.summary_path),
        AddressResolver(timeout=config.resolve_timeout),
    )


async def run_discovery(
    config: DiscoveryConfig,
    table_factory: TableFactory | None = None,
) -> DiscoveryResult:
    """Build an orchestrator for *config* and run it to completion."""
    return await build_orchestrator(config, table_factory).run()
