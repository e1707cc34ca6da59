"""Discovery transport — façade over an external discovery table.

A :class:`DiscoveryTable` is the protocol implementation (UDP ping/pong,
identity checks, k-buckets); this project does not ship one. Tables report
what happens through callbacks; :class:`DiscoveryTransport` turns those
callbacks into events on an :class:`asyncio.Queue` so the orchestrator can
consume them from one loop, and wraps every table call in a timeout.
"""

from __future__ import annotations

import abc
import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Union

from scout.config import DiscoveryConfig
from scout.discovery.peers import PeerAddress

logger = logging.getLogger(__name__)

PeerCallback = Callable[[PeerAddress], None]
ErrorCallback = Callable[[BaseException], None]


class TransportStartupError(Exception):
    """The discovery table could not be created or started. Fatal for a run."""


class BootstrapError(Exception):
    """Contacting a peer address failed or timed out."""


class RefreshError(Exception):
    """A table maintenance pass failed or timed out."""


# ------------------------------------------------------------------ #
# Events
# ------------------------------------------------------------------ #

@dataclass(frozen=True)
class PeerAdded:
    peer: PeerAddress


@dataclass(frozen=True)
class PeerRemoved:
    peer: PeerAddress


@dataclass(frozen=True)
class TransportError:
    """Asynchronous error reported by the table. Recoverable."""

    cause: BaseException


DiscoveryEvent = Union[PeerAdded, PeerRemoved, TransportError]


# ------------------------------------------------------------------ #
# Table interface
# ------------------------------------------------------------------ #

class DiscoveryTable(abc.ABC):
    """Abstract interface for a discovery-protocol table.

    Implementations call :meth:`_peer_added`, :meth:`_peer_removed` and
    :meth:`_error` to notify subscribers. Notifications are expected on the
    event-loop thread; :class:`DiscoveryTransport` also accepts them from
    other threads.
    """

    def __init__(self) -> None:
        self._added_callbacks: list[PeerCallback] = []
        self._removed_callbacks: list[PeerCallback] = []
        self._error_callbacks: list[ErrorCallback] = []

    async def start(self) -> None:
        """Bind sockets / start background work. Default: nothing to do."""

    @abc.abstractmethod
    async def bootstrap(self, peer: PeerAddress) -> None:
        """Contact *peer* and start exchanging routing information."""
        raise NotImplementedError

    @abc.abstractmethod
    async def refresh(self) -> None:
        """Run one routing-table maintenance pass."""
        raise NotImplementedError

    @abc.abstractmethod
    async def close(self) -> None:
        """Release sockets and stop background work."""
        raise NotImplementedError

    # ── Subscriptions ──────────────────────────────────────────────

    def on_peer_added(self, callback: PeerCallback) -> None:
        self._added_callbacks.append(callback)

    def on_peer_removed(self, callback: PeerCallback) -> None:
        self._removed_callbacks.append(callback)

    def on_error(self, callback: ErrorCallback) -> None:
        self._error_callbacks.append(callback)

    def remove_listeners(self) -> None:
        self._added_callbacks.clear()
        self._removed_callbacks.clear()
        self._error_callbacks.clear()

    # ── Notification helpers for implementations ───────────────────

    def _peer_added(self, peer: PeerAddress) -> None:
        self._dispatch(self._added_callbacks, peer)

    def _peer_removed(self, peer: PeerAddress) -> None:
        self._dispatch(self._removed_callbacks, peer)

    def _error(self, exc: BaseException) -> None:
        self._dispatch(self._error_callbacks, exc)

    @staticmethod
    def _dispatch(callbacks: list[Callable[[Any], None]], arg: Any) -> None:
        for cb in list(callbacks):
            try:
                cb(arg)
            except Exception:
                logger.exception("Error in discovery table callback")


def coerce_peer(value: Any) -> PeerAddress:
    """Accept a :class:`PeerAddress` or a peer-info mapping from a table.

    Mappings may use either ``host``/``udp_port``/``tcp_port`` or the
    devp2p-style ``address``/``udpPort``/``tcpPort`` keys.
    """
    if isinstance(value, PeerAddress):
        return value
    if isinstance(value, dict):
        host = value.get("host") or value.get("address")
        udp_port = value.get("udp_port", value.get("udpPort"))
        tcp_port = value.get("tcp_port", value.get("tcpPort")) or 0
        node_id = value.get("node_id") or value.get("id")
        if host and udp_port is not None:
            return PeerAddress(
                host=str(host),
                udp_port=int(udp_port),
                tcp_port=int(tcp_port),
                node_id=node_id if isinstance(node_id, str) else None,
            )
    raise TypeError(f"Unsupported peer record: {value!r}")


# ------------------------------------------------------------------ #
# Adapter
# ------------------------------------------------------------------ #

TableFactory = Callable[[DiscoveryConfig], DiscoveryTable]


class DiscoveryTransport:
    """Queue-based adapter around a :class:`DiscoveryTable`.

    Args:
        config:        Run configuration (timeouts and table selection).
        table_factory: Builds the table; defaults to the table registry
                       lookup of ``config.table``.
    """

    def __init__(
        self,
        config: DiscoveryConfig,
        table_factory: TableFactory | None = None,
    ) -> None:
        self._config = config
        self._table_factory = table_factory
        self._table: DiscoveryTable | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._loop_thread: int | None = None
        self._closed = False
        self.events: asyncio.Queue[DiscoveryEvent] = asyncio.Queue()

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    async def open(self) -> None:
        """Create and start the table, then subscribe to its notifications.

        Raises:
            TransportStartupError: on any failure.
        """
        if self._table is not None:
            return
        self._loop = asyncio.get_running_loop()
        self._loop_thread = threading.get_ident()
        table: DiscoveryTable | None = None
        try:
            factory = self._table_factory
            if factory is None:
                from scout.discovery.tables import create_table

                table = create_table(self._config.table, self._config)
            else:
                table = factory(self._config)
            await table.start()
        except asyncio.CancelledError:
            if table is not None:
                await self._discard(table)
            raise
        except Exception as exc:
            if table is not None:
                await self._discard(table)
            raise TransportStartupError(
                f"Could not open discovery table on {self._config.bind_address}:"
                f"{self._config.udp_port}: {exc}"
            ) from exc

        table.on_peer_added(self._on_added)
        table.on_peer_removed(self._on_removed)
        table.on_error(self._on_error)
        self._table = table
        logger.info(
            "Discovery table %s listening on %s (udp %d, tcp %d)",
            type(table).__name__,
            self._config.bind_address,
            self._config.udp_port,
            self._config.tcp_port,
        )

    async def close(self) -> None:
        """Unsubscribe and close the table. Idempotent."""
        if self._closed:
            return
        self._closed = True
        table, self._table = self._table, None
        if table is None:
            return
        table.remove_listeners()
        try:
            await table.close()
        except Exception:
            logger.exception("Error closing discovery table")
        logger.info("Discovery table closed")

    @property
    def closed(self) -> bool:
        return self._closed

    # ------------------------------------------------------------------ #
    # Operations
    # ------------------------------------------------------------------ #

    async def bootstrap(self, peer: PeerAddress) -> None:
        """Contact *peer* through the table.

        Raises:
            BootstrapError: the table raised, timed out, or is not open.
        """
        table = self._require_table(BootstrapError)
        timeout = self._config.bootstrap_timeout
        try:
            await asyncio.wait_for(table.bootstrap(peer), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise BootstrapError(f"Bootstrap with {peer.identity} timed out after {timeout}s") from exc
        except Exception as exc:
            raise BootstrapError(f"Bootstrap with {peer.identity} failed: {exc}") from exc

    async def refresh(self) -> None:
        """Run one table maintenance pass.

        Raises:
            RefreshError: the table raised, timed out, or is not open.
        """
        table = self._require_table(RefreshError)
        timeout = self._config.refresh_timeout
        try:
            await asyncio.wait_for(table.refresh(), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise RefreshError(f"Refresh timed out after {timeout}s") from exc
        except Exception as exc:
            raise RefreshError(f"Refresh failed: {exc}") from exc

    # ------------------------------------------------------------------ #
    # Internal
    # ------------------------------------------------------------------ #

    @staticmethod
    async def _discard(table: DiscoveryTable) -> None:
        """Close a table whose start failed or was cancelled."""
        try:
            await table.close()
        except Exception:
            logger.exception("Error closing discovery table after failed start")

    def _require_table(self, error: type[Exception]) -> DiscoveryTable:
        if self._table is None or self._closed:
            raise error("Discovery table is not open")
        return self._table

    def _on_added(self, peer: Any) -> None:
        try:
            self._publish(PeerAdded(coerce_peer(peer)))
        except (TypeError, ValueError) as exc:
            self._publish(TransportError(exc))

    def _on_removed(self, peer: Any) -> None:
        try:
            self._publish(PeerRemoved(coerce_peer(peer)))
        except (TypeError, ValueError) as exc:
            self._publish(TransportError(exc))

    def _on_error(self, exc: BaseException) -> None:
        self._publish(TransportError(exc))

    def _publish(self, event: DiscoveryEvent) -> None:
        if self._closed:
            return
        if self._loop is not None and threading.get_ident() != self._loop_thread:
            self._loop.call_soon_threadsafe(self.events.put_nowait, event)
        else:
            self.events.put_nowait(event)
