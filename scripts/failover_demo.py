#!/usr/bin/env python3
"""Failover demonstration on loopback.

Starts every node of the cluster config in-process with a shared dry-run
address capability, waits for a MASTER, stops it, verifies the survivor takes
over the floating address, then restarts the old MASTER and watches it
preempt back.
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from typing import List, Optional

# Ensure src/ is on sys.path
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from vipguard.cluster.node import Node  # noqa: E402
from vipguard.config.cluster import load_cluster_config  # noqa: E402
from vipguard.notify.capability import DryRunAddressCapability  # noqa: E402
from vipguard.utils.logging_config import setup_logging  # noqa: E402


def build_nodes(config_path: str, capability: DryRunAddressCapability) -> List[Node]:
    cluster = load_cluster_config(config_path)
    return [
        Node(cluster.node_config(node_id), capability=capability, status_port=0, metrics_interval=3600)
        for node_id in cluster.node_ids()
    ]


async def wait_for_master(nodes: List[Node], timeout: float = 15.0) -> Optional[Node]:
    deadline = asyncio.get_running_loop().time() + timeout
    while asyncio.get_running_loop().time() < deadline:
        masters = [n for n in nodes if n.engine.state.value == "MASTER" and not n.engine.stopped]
        if len(masters) == 1:
            return masters[0]
        await asyncio.sleep(0.1)
    return None


def show(nodes: List[Node], capability: DryRunAddressCapability, address: str) -> None:
    for node in nodes:
        snap = node.snapshot()
        print(f"  {snap['node_id']}: {snap['state']:<6} priority={snap['effective_priority']}")
    print(f"  floating address {address} -> {capability.owners.get(address, '-')}")


async def main_async(config_path: str) -> int:
    capability = DryRunAddressCapability()
    nodes = build_nodes(config_path, capability)
    address = nodes[0].config.floating_address

    print("Starting nodes...")
    for node in nodes:
        await node.start()

    master = await wait_for_master(nodes)
    if master is None:
        print("No MASTER elected")
        return 1
    await asyncio.sleep(0.5)
    show(nodes, capability, address)

    print(f"\nStopping {master.node_id}...")
    await master.stop()
    survivors = [n for n in nodes if n is not master]
    new_master = await wait_for_master(survivors)
    if new_master is None:
        print("Failover did not happen")
        return 1
    await asyncio.sleep(0.5)
    show(survivors, capability, address)

    print(f"\nRestarting {master.node_id}...")
    restarted = Node(master.config, capability=capability, status_port=0, metrics_interval=3600)
    survivors.append(restarted)
    await restarted.start()
    await asyncio.sleep(master.config.master_down_interval + 1)
    show(survivors, capability, address)

    for node in survivors:
        await node.stop()
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="vipguard failover demo")
    parser.add_argument("--config", default=str(ROOT / "config" / "cluster.yaml"))
    args = parser.parse_args()
    setup_logging("WARNING")
    sys.exit(asyncio.run(main_async(args.config)))


if __name__ == "__main__":
    main()
