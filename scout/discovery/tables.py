"""Discovery table factory.

Usage::

    from scout.discovery.tables import create_table, register_table

    register_table("discv4", make_discv4_table)
    table = create_table("discv4", config)
    table = create_table("mypkg.discovery:make_table", config)
"""

from __future__ import annotations

import importlib
import logging
from typing import TYPE_CHECKING, Callable

if TYPE_CHECKING:
    from scout.config import DiscoveryConfig
    from scout.discovery.transport import DiscoveryTable

logger = logging.getLogger(__name__)

_TABLES: dict[str, Callable[[DiscoveryConfig], DiscoveryTable]] = {}


def register_table(name: str, factory: Callable[[DiscoveryConfig], DiscoveryTable]) -> None:
    """Register (or replace) a table factory under *name*."""
    _TABLES[_normalise(name)] = factory
    logger.debug("Discovery table registered: %s", name)


def unregister_table(name: str) -> None:
    _TABLES.pop(_normalise(name), None)


def available_tables() -> list[str]:
    return sorted(_TABLES)


def create_table(name: str | None, config: DiscoveryConfig) -> DiscoveryTable:
    """Build the table selected by *name*.

    *name* is a registered table name or an import path of the form
    ``"package.module:factory"``. The factory is called with *config*.
    """
    if not name:
        raise ValueError(
            "No discovery table configured. Set 'table' in the config, "
            "SCOUT_TABLE, or pass --table."
        )

    if ":" in name:
        factory = _import_factory(name)
    else:
        factory = _TABLES.get(_normalise(name))
        if factory is None:
            raise ValueError(
                f"Unknown discovery table '{name}'. "
                f"Choose from: {available_tables()} or use 'module:factory'"
            )

    from scout.discovery.transport import DiscoveryTable

    table = factory(config)
    if not isinstance(table, DiscoveryTable):
        raise TypeError(
            f"Table factory {name!r} returned {type(table).__name__}, expected DiscoveryTable"
        )
    return table


def _import_factory(path: str) -> Callable[[DiscoveryConfig], DiscoveryTable]:
    module_name, _, attr = path.partition(":")
    if not module_name or not attr:
        raise ValueError(f"Invalid table import path: {path!r}")
    module = importlib.import_module(module_name)
    try:
        factory = getattr(module, attr)
    except AttributeError as exc:
        raise ValueError(f"{module_name} has no attribute {attr!r}") from exc
    if not callable(factory):
        raise ValueError(f"Table factory {path!r} is not callable")
    return factory


def _normalise(name: str) -> str:
    return name.lower().replace("-", "_")
