"""vipguard command line.

  vipguard run --id lb1 [--config config/cluster.yaml]
  vipguard status [--url http://127.0.0.1:8765 | --state-file /run/vipguard.state]
  vipguard check-config [--config config/cluster.yaml]
"""

from __future__ import annotations

import argparse
import asyncio
import json
import signal
import sys
from typing import List, Optional

import requests

from vipguard.api.state_file import read_state_file
from vipguard.cluster.node import Node
from vipguard.config.cluster import load_cluster_config
from vipguard.config.settings import settings
from vipguard.utils.errors import ConfigurationError
from vipguard.utils.logging_config import setup_logging


def _secret() -> Optional[str]:
    return settings.AUTH_SECRET.get_secret_value() if settings.AUTH_SECRET else None


async def _run_node(node: Node) -> None:
    loop = asyncio.get_running_loop()
    stop_requested = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_requested.set)
        except (NotImplementedError, RuntimeError):
            # Windows: fall back to KeyboardInterrupt
            pass
    await node.start()
    try:
        await stop_requested.wait()
    finally:
        await node.stop()


def cmd_run(args: argparse.Namespace) -> int:
    try:
        log = setup_logging(node_id=args.id, component="main")
    except ConfigurationError as e:
        print(f"configuration error: {e}", file=sys.stderr)
        return 2
    try:
        node_config = load_cluster_config(args.config).node_config(args.id, auth_secret=_secret())
    except ConfigurationError as e:
        log.error("configuration_error", error=str(e))
        print(f"configuration error: {e}", file=sys.stderr)
        return 2

    status_port = None
    if settings.STATUS_ENABLED:
        status_port = node_config.status_port or settings.STATUS_PORT
    node = Node(
        node_config,
        state_file=args.state_file or settings.STATE_FILE,
        status_host=settings.STATUS_HOST,
        status_port=status_port,
        metrics_interval=settings.METRICS_INTERVAL,
    )
    try:
        asyncio.run(_run_node(node))
    except KeyboardInterrupt:
        log.info("interrupted")
    return 0


def cmd_status(args: argparse.Namespace) -> int:
    if args.state_file:
        try:
            values = read_state_file(args.state_file)
        except OSError as e:
            print(f"cannot read state file: {e}", file=sys.stderr)
            return 1
        for key, value in values.items():
            print(f"{key}={value}")
        return 0

    url = args.url or f"http://{settings.STATUS_HOST}:{settings.STATUS_PORT}"
    try:
        resp = requests.get(f"{url.rstrip('/')}/status", timeout=args.timeout)
        resp.raise_for_status()
    except requests.RequestException as e:
        print(f"status request failed: {e}", file=sys.stderr)
        return 1
    data = resp.json()
    if args.json:
        print(json.dumps(data, indent=2))
        return 0
    print(f"{data['node_id']}: {data['state']} (priority {data['effective_priority']}, base {data['base_priority']})")
    print(f"  master: {data.get('master_id') or '-'}  floating address: {data['floating_address']}")
    health = data.get("health") or {}
    print(f"  health: {'ok' if health.get('ok') else 'FAILING'} {health.get('detail', '')}")
    if data.get("alarm"):
        print(f"  ALARM: {data['alarm']}")
    for peer in data.get("peers", []):
        alive = "alive" if peer["alive"] else "down"
        print(f"  peer {peer['peer_id']}: {peer.get('state') or '?'} priority={peer.get('priority')} {alive}")
    return 0


def cmd_check_config(args: argparse.Namespace) -> int:
    try:
        cluster = load_cluster_config(args.config)
        for node_id in cluster.node_ids():
            cfg = cluster.node_config(node_id, auth_secret=_secret())
            print(f"{cfg.node_id}: priority={cfg.base_priority} listen={cfg.listen_address} peers={len(cfg.peers)}")
    except ConfigurationError as e:
        print(f"configuration error: {e}", file=sys.stderr)
        return 2
    print(f"{args.config}: OK ({len(cluster.nodes)} nodes)")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="vipguard", description="Floating address failover coordinator")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run one node of the cluster")
    run.add_argument("--id", required=True, help="Node id to run (must exist in the cluster config)")
    run.add_argument("--config", default=settings.CONFIG_PATH, help="Path to cluster config YAML")
    run.add_argument("--state-file", default=None, help="Write KEY=VALUE state here on every transition")
    run.set_defaults(func=cmd_run)

    status = sub.add_parser("status", help="Show a node's election state")
    status.add_argument("--url", default=None, help="Status API base URL")
    status.add_argument("--state-file", default=None, help="Read a state file instead of the API")
    status.add_argument("--timeout", type=float, default=3.0)
    status.add_argument("--json", action="store_true", help="Print the raw JSON response")
    status.set_defaults(func=cmd_status)

    check = sub.add_parser("check-config", help="Validate the cluster config for every node")
    check.add_argument("--config", default=settings.CONFIG_PATH, help="Path to cluster config YAML")
    check.set_defaults(func=cmd_check_config)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
