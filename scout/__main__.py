"""Scout entry point.

Usage::

    python -m scout run [--config PATH] [--table NAME] [--seed REF ...] [--debug]
    python -m scout peers [--output-dir PATH]
    python -m scout geo [--summary PATH] [--delay SECONDS] [--write]
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from pathlib import Path
from typing import Any

from scout.config import DiscoveryConfig, default_output_dir

logger = logging.getLogger("scout")


# ------------------------------------------------------------------ #
# run
# ------------------------------------------------------------------ #

def _load_config(args: argparse.Namespace) -> DiscoveryConfig:
    config = DiscoveryConfig.load(args.config) if args.config else DiscoveryConfig()
    config = DiscoveryConfig.from_env(config)

    overrides: dict[str, Any] = {}
    if args.seed:
        overrides["seeds"] = tuple(args.seed)
    for name in ("table", "output_dir", "refresh_interval", "max_rounds",
                 "min_rounds", "max_nodes", "timeout"):
        value = getattr(args, name)
        if value is not None:
            overrides[name] = value
    return config.replace(**overrides) if overrides else config


async def _run(config: DiscoveryConfig) -> int:
    from scout.discovery import (
        RecorderError,
        TransportStartupError,
        build_orchestrator,
    )

    orchestrator = build_orchestrator(config)
    loop = asyncio.get_running_loop()

    def _shutdown(sig: int) -> None:
        logger.info("Received signal %d — stopping discovery", sig)
        orchestrator.stop("interrupted")

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _shutdown, sig)

    try:
        result = await orchestrator.run()
    except TransportStartupError as exc:
        logger.error("Failed to start discovery: %s", exc)
        return 2
    except RecorderError as exc:
        logger.error("Could not write discovery artifacts: %s", exc)
        return 2
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)

    print("\nDiscovery Results:")
    print(f"State: {result.state.value} ({result.reason})")
    print(f"Rounds completed: {result.rounds_completed}")
    print(f"Total peers discovered: {len(result.peers)}")
    print("\nPeer Details:")
    for i, peer in enumerate(result.peers, 1):
        print(f"{i}. {peer.host}:{peer.udp_port} (TCP: {peer.tcp_port})")
    print(f"\nSummary: {result.summary_path}")
    return 0 if result.complete else 1


def cmd_run(args: argparse.Namespace) -> int:
    try:
        config = _load_config(args)
    except (ValueError, TypeError, json.JSONDecodeError) as exc:
        logger.error("Invalid configuration: %s", exc)
        return 2
    return asyncio.run(_run(config))


# ------------------------------------------------------------------ #
# peers
# ------------------------------------------------------------------ #

def cmd_peers(args: argparse.Namespace) -> int:
    from scout.discovery import read_log_peers, read_summary

    output_dir = Path(args.output_dir)
    peers = read_log_peers(output_dir / "peers.ndjson")
    summary = read_summary(output_dir / "summary.json")

    if summary is None:
        print("No summary found — run incomplete or still in progress.")
    else:
        status = "complete" if summary.get("complete") else "stopped"
        print(f"Last run: {status} ({summary.get('reason')}), "
              f"{summary.get('rounds_completed')} round(s)")
    print(f"Peers in log: {len(peers)}")
    for i, peer in enumerate(peers, 1):
        print(f"{i}. {peer.host}:{peer.udp_port} (TCP: {peer.tcp_port})")
    return 0


# ------------------------------------------------------------------ #
# geo
# ------------------------------------------------------------------ #

async def _geolocate(hosts: list[str], delay: float) -> dict:
    from scout.geo import IPGeoLookup

    async with IPGeoLookup() as geo:
        return await geo.lookup_many(hosts, delay=delay)


def cmd_geo(args: argparse.Namespace) -> int:
    from scout.discovery import read_summary
    from scout.discovery.resolver import is_ip_literal

    summary_path = Path(args.summary) if args.summary else Path(default_output_dir()) / "summary.json"
    summary = read_summary(summary_path)
    if summary is None:
        logger.error("No summary at %s — run discovery first", summary_path)
        return 2

    hosts = [p["host"] for p in summary.get("peers", []) if is_ip_literal(p["host"])]
    hosts = list(dict.fromkeys(hosts))
    results = asyncio.run(_geolocate(hosts, args.delay))

    print("IP Address\t\tCountry\t\tCity\t\tISP\t\tAS")
    print("-" * 80)
    for ip in hosts:
        info = results.get(ip)
        if info is None:
            print(f"{ip}\tError looking up IP")
        else:
            print(f"{ip}\t{info.country}\t{info.city}\t{info.isp}\t{info.asn}")

    if args.write:
        out = summary_path.with_name("geo.json")
        with open(out, "w") as f:
            json.dump(
                {ip: (info.to_dict() if info else None) for ip, info in results.items()},
                f,
                indent=2,
            )
        print(f"\nWrote {out}")
    return 0


# ------------------------------------------------------------------ #
# Parser
# ------------------------------------------------------------------ #

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="scout",
        description="Iterative peer discovery from a set of seed nodes",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run a discovery session")
    run.add_argument("--config", "-c", metavar="PATH", default=None,
                     help="Path to a JSON config file")
    run.add_argument("--seed", action="append", metavar="REF",
                     help="Seed node (enode://... or udp://host:port); repeatable, replaces config seeds")
    run.add_argument("--table", default=None,
                     help="Discovery table: registered name or 'package.module:factory'")
    run.add_argument("--output-dir", dest="output_dir", metavar="PATH", default=None,
                     help="Artifact directory (default: ./data or SCOUT_DATA_DIR)")
    run.add_argument("--refresh-interval", dest="refresh_interval", type=float, default=None,
                     metavar="SECONDS")
    run.add_argument("--max-rounds", dest="max_rounds", type=int, default=None)
    run.add_argument("--min-rounds", dest="min_rounds", type=int, default=None)
    run.add_argument("--max-nodes", dest="max_nodes", type=int, default=None,
                     help="Stop after this many peers (0 = unlimited)")
    run.add_argument("--timeout", type=float, default=None, metavar="SECONDS",
                     help="Wall-clock limit for the whole run")
    run.set_defaults(func=cmd_run)

    peers = sub.add_parser("peers", help="List peers recorded so far")
    peers.add_argument("--output-dir", dest="output_dir", metavar="PATH",
                       default=default_output_dir())
    peers.set_defaults(func=cmd_peers)

    geo = sub.add_parser("geo", help="Geolocate the peers of a finished run")
    geo.add_argument("--summary", metavar="PATH", default=None,
                     help="Summary file (default: <data dir>/summary.json)")
    geo.add_argument("--delay", type=float, default=1.0, metavar="SECONDS",
                     help="Pause between lookups (API rate limit)")
    geo.add_argument("--write", action="store_true", help="Write geo.json next to the summary")
    geo.set_defaults(func=cmd_geo)

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    level = logging.DEBUG if args.debug else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    try:
        return args.func(args)
    except KeyboardInterrupt:
        print("\n\nDiscovery cancelled.")
        return 1


if __name__ == "__main__":
    sys.exit(main())
