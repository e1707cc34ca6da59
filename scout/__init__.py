"""Scout — iterative peer discovery for devp2p-style networks.

Bootstraps a node-discovery table from a handful of seed nodes, keeps
refreshing it, re-bootstraps from every peer it learns about, and records
what it found.

Quickstart::

    from scout.config import DiscoveryConfig
    from scout.discovery import run_discovery

    config = DiscoveryConfig.load("scout.json")
    result = await run_discovery(config)
    print(result.state, len(result.peers))
"""

__version__ = "0.1.0"
