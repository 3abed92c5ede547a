#!/usr/bin/env python3
"""
Main entry point for running the balancer against a described cluster.

Usage:
    # One dry-run pass over a cluster description
    python -m tabletbalancer.main --cluster cluster.yaml --once --dry-run

    # Periodic balancing with a custom configuration
    python -m tabletbalancer.main --cluster cluster.yaml --config balancer.yaml
"""

import argparse
import asyncio
import json
import signal

import yaml

from tabletbalancer.balancer import (
    BalancerOptions,
    CatalogDispatcher,
    ClusterBalancer,
    RecordingDispatcher,
)
from tabletbalancer.cluster import Catalog, CatalogClusterState, Locality, ServerRegistry
from tabletbalancer.utils.config import Config
from tabletbalancer.utils.logging import configure_logging, get_logger

logger = get_logger(__name__)


def parse_args(argv=None):
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description='Tablet balancer - converges replica placement of a storage cluster'
    )

    parser.add_argument(
        '--cluster',
        type=str,
        required=True,
        help='YAML file describing servers, tables and tablets'
    )

    parser.add_argument(
        '--config',
        type=str,
        default=None,
        help='YAML configuration file (default: config/default.yaml)'
    )

    parser.add_argument(
        '--once',
        action='store_true',
        help='Run a single balancing pass and exit'
    )

    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Record actions without touching the catalog'
    )

    parser.add_argument(
        '--log-level',
        type=str,
        default=None,
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        help='Logging level (overrides configuration)'
    )

    return parser.parse_args(argv)


async def load_cluster(path: str, heartbeat_timeout_ms: int):
    """
    Load a cluster description.

    Args:
        path: YAML file with "servers" plus catalog keys
        heartbeat_timeout_ms: Registry heartbeat timeout

    Returns:
        (catalog, registry)
    """
    with open(path, "r") as f:
        data = yaml.safe_load(f) or {}

    registry = ServerRegistry(heartbeat_timeout_ms=heartbeat_timeout_ms)
    for server in data.get("servers", []):
        server_id = str(server["server_id"])
        await registry.register_server(
            server_id,
            locality=Locality.parse(server.get("locality", "")),
            host=server.get("host", "localhost"),
            port=server.get("port", 9100),
        )
        if server.get("live", True):
            await registry.update_heartbeat(server_id)
        else:
            await registry.deregister_server(server_id)

    return Catalog.from_dict(data), registry


async def run(args, config: Config) -> int:
    options = BalancerOptions.from_config(config)

    catalog, registry = await load_cluster(
        args.cluster,
        config.get("registry.heartbeat_timeout_ms", 30000),
    )
    provider = CatalogClusterState(catalog, registry)
    dispatcher = RecordingDispatcher() if args.dry_run else CatalogDispatcher(catalog)
    balancer = ClusterBalancer(provider, dispatcher, options)

    if args.once:
        summary = await balancer.run_once()
        print(json.dumps(summary.to_dict(), indent=2))
        return 0

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    await balancer.start()
    await stop_event.wait()
    await balancer.stop()

    print(json.dumps(balancer.monitor.get_summary(), indent=2))
    return 0


def main(argv=None) -> int:
    """Main entry point."""
    args = parse_args(argv)
    config = Config(args.config)

    configure_logging(
        log_level=args.log_level or config.get("logging.level", "INFO"),
        log_format=config.get("logging.format", "json"),
        log_output=config.get("logging.output", "stdout"),
    )

    return asyncio.run(run(args, config))


if __name__ == "__main__":
    raise SystemExit(main())
