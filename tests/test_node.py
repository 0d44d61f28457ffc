"""Node integration tests.

Real nodes (election loop, probe, notifier) over an in-memory datagram
network, with short intervals so scenarios finish in well under a second.
"""

import asyncio
import socket
import sys
from collections import Counter
from pathlib import Path

# Ensure src is importable
ROOT = Path(__file__).parent.parent
SRC = ROOT / "src"
sys.path.insert(0, str(SRC))

import pytest
from structlog.testing import capture_logs

from vipguard.api.state_file import read_state, read_state_file  # noqa: E402
from vipguard.cluster.advert import AdvertCodec, Advertisement  # noqa: E402
from vipguard.cluster.election import ElectionState  # noqa: E402
from vipguard.cluster.node import Node  # noqa: E402
from vipguard.config.cluster import NodeConfig, NotifyConfig, PeerConfig  # noqa: E402
from vipguard.health.probe import CallableCheck  # noqa: E402
from vipguard.notify.capability import DryRunAddressCapability  # noqa: E402
from vipguard.utils.errors import AuthenticationError  # noqa: E402

ADDRESS = "203.0.113.10"
ADVERT = 0.05
MASTER_DOWN = 0.2


class FakeNetwork:
    """Datagram medium shared by FakeTransports; `down` nodes neither send nor receive."""

    def __init__(self, secret="s3cret"):
        self.codec = AdvertCodec(secret)
        self.transports = {}
        self.down = set()

    def transport(self, node_id, peers):
        t = FakeTransport(self, node_id, peers)
        self.transports[node_id] = t
        return t

    def deliver(self, dst, data: bytes):
        t = self.transports.get(dst)
        if t is None or not t.running or dst in self.down:
            return
        asyncio.get_running_loop().call_soon(t.receive, data)


class FakeTransport:
    def __init__(self, network, node_id, peers):
        self.network = network
        self.node_id = node_id
        self.peers = list(peers)
        self.on_advert = None
        self.counters = Counter()
        self.running = False

    async def start(self):
        self.running = True

    async def stop(self):
        self.running = False

    def send(self, advert):
        if not self.running or self.node_id in self.network.down:
            return 0
        data = self.network.codec.encode(advert)
        for peer in self.peers:
            self.network.deliver(peer, data)
        self.counters["adverts_sent"] += 1
        return len(self.peers)

    def receive(self, data):
        try:
            advert = self.network.codec.decode(data)
        except AuthenticationError:
            self.counters["auth_failures"] += 1
            return
        self.counters["adverts_received"] += 1
        if self.on_advert is not None:
            self.on_advert(advert)


class Health:
    def __init__(self):
        self.ok = True

    def __call__(self):
        return self.ok, "ok" if self.ok else "backend down"


def node_config(node_id, priority, peers, /, **overrides):
    fields = dict(
        node_id=node_id,
        base_priority=priority,
        advert_interval=ADVERT,
        master_down_interval=MASTER_DOWN,
        auth_secret="s3cret",
        peers=[PeerConfig(id=p, address="127.0.0.1:5405") for p in peers],
        floating_address=ADDRESS,
        listen_address="127.0.0.1:5405",
        health_check_interval=ADVERT,
        health_penalty_weight=50,
        notify=NotifyConfig(base_delay_ms=1, max_delay_ms=1, shutdown_grace=0.5),
    )
    fields.update(overrides)
    return NodeConfig(**fields)


def build_cluster(priorities, network=None, capability=None, **kwargs):
    network = network or FakeNetwork()
    capability = capability or DryRunAddressCapability()
    ids = list(priorities)
    nodes, health = {}, {}
    for nid, prio in priorities.items():
        peers = [p for p in ids if p != nid]
        health[nid] = Health()
        nodes[nid] = Node(
            node_config(nid, prio, peers),
            check=CallableCheck(health[nid]),
            capability=capability,
            transport=network.transport(nid, peers),
            metrics_interval=3600,
            **kwargs,
        )
    return nodes, health, network, capability


async def wait_until(predicate, timeout=3.0):
    loop = asyncio.get_running_loop()
    start = loop.time()
    while not predicate():
        if loop.time() - start > timeout:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)
    return loop.time() - start


def state(node):
    return node.engine.state


async def start_all(nodes):
    for node in nodes.values():
        await node.start()


async def stop_all(nodes):
    for node in nodes.values():
        await node.stop()


@pytest.mark.asyncio
async def test_higher_priority_node_becomes_sole_master():
    nodes, _, _, cap = build_cluster({"lb1": 101, "lb2": 100})
    await start_all(nodes)
    try:
        await wait_until(lambda: state(nodes["lb1"]) == ElectionState.MASTER)
        await asyncio.sleep(MASTER_DOWN * 3)

        assert state(nodes["lb1"]) == ElectionState.MASTER
        assert state(nodes["lb2"]) == ElectionState.BACKUP
        lb2_events = [e for e in nodes["lb2"].events.recent if e["event"] == "transition"]
        assert all(e["to"] != "MASTER" for e in lb2_events)

        await nodes["lb1"].notifier.drain()
        assert cap.owners[ADDRESS] == "lb1"
        assert cap.count("associate", "lb1", ADDRESS) == 1
    finally:
        await stop_all(nodes)


@pytest.mark.asyncio
async def test_backup_takes_over_when_master_goes_silent():
    nodes, _, network, cap = build_cluster({"lb1": 101, "lb2": 100})
    await start_all(nodes)
    try:
        await wait_until(lambda: state(nodes["lb1"]) == ElectionState.MASTER)
        await asyncio.sleep(MASTER_DOWN)

        network.down.add("lb1")
        elapsed = await wait_until(lambda: state(nodes["lb2"]) == ElectionState.MASTER)
        # Scheduling slack on top of master_down + one advert interval
        assert elapsed <= MASTER_DOWN + ADVERT + 0.2

        await nodes["lb2"].notifier.drain()
        assert cap.owners[ADDRESS] == "lb2"
    finally:
        await stop_all(nodes)


@pytest.mark.asyncio
async def test_unhealthy_master_hands_over_and_takes_back():
    nodes, health, _, cap = build_cluster({"lb1": 101, "lb2": 100})
    await start_all(nodes)
    try:
        await wait_until(lambda: state(nodes["lb1"]) == ElectionState.MASTER)

        health["lb1"].ok = False
        elapsed = await wait_until(lambda: state(nodes["lb2"]) == ElectionState.MASTER)
        # One health-check interval plus one advert round trip, with scheduling slack
        assert elapsed <= ADVERT + 0.1
        await wait_until(lambda: state(nodes["lb1"]) == ElectionState.BACKUP)
        assert nodes["lb1"].engine.effective_priority == 51
        assert nodes["lb1"].snapshot()["health"]["ok"] is False

        await nodes["lb2"].notifier.drain()
        assert cap.owners[ADDRESS] == "lb2"
        assert cap.count("associate", "lb2", ADDRESS) == 1

        health["lb1"].ok = True
        await wait_until(lambda: state(nodes["lb1"]) == ElectionState.MASTER)
        await wait_until(lambda: state(nodes["lb2"]) == ElectionState.BACKUP)
        await nodes["lb1"].notifier.drain()
        assert cap.owners[ADDRESS] == "lb1"
    finally:
        await stop_all(nodes)


@pytest.mark.asyncio
async def test_manual_override_demotes_master():
    nodes, _, _, _ = build_cluster({"lb1": 101, "lb2": 100})
    await start_all(nodes)
    try:
        await wait_until(lambda: state(nodes["lb1"]) == ElectionState.MASTER)

        nodes["lb1"].set_override(-20)
        await wait_until(lambda: state(nodes["lb2"]) == ElectionState.MASTER)
        await wait_until(lambda: state(nodes["lb1"]) == ElectionState.BACKUP)
        assert nodes["lb1"].snapshot()["adjustments"] == {"override": -20}

        nodes["lb1"].clear_override()
        await wait_until(lambda: state(nodes["lb1"]) == ElectionState.MASTER)
        assert nodes["lb1"].snapshot()["adjustments"] == {}
    finally:
        await stop_all(nodes)


@pytest.mark.asyncio
async def test_equal_priority_tie_break():
    nodes, _, _, _ = build_cluster({"lb2": 100, "lb1": 100})
    await start_all(nodes)
    try:
        await wait_until(lambda: state(nodes["lb1"]) == ElectionState.MASTER)
        await asyncio.sleep(MASTER_DOWN * 2)
        assert state(nodes["lb2"]) == ElectionState.BACKUP
    finally:
        await stop_all(nodes)


@pytest.mark.asyncio
async def test_forged_adverts_do_not_move_the_address():
    nodes, _, network, cap = build_cluster({"lb1": 101, "lb2": 100})
    await start_all(nodes)
    try:
        await wait_until(lambda: state(nodes["lb1"]) == ElectionState.MASTER)
        transitions_before = nodes["lb1"].engine.counters["transitions"]

        forged = AdvertCodec("stolen-guess").encode(Advertisement("lb2", "MASTER", 255, 2**40))
        for _ in range(5):
            network.deliver("lb1", forged)
        await asyncio.sleep(MASTER_DOWN)

        assert network.transports["lb1"].counters["auth_failures"] == 5
        assert state(nodes["lb1"]) == ElectionState.MASTER
        assert nodes["lb1"].engine.counters["transitions"] == transitions_before
        await nodes["lb1"].notifier.drain()
        assert cap.owners[ADDRESS] == "lb1"
    finally:
        await stop_all(nodes)


@pytest.mark.asyncio
async def test_forged_udp_advert_is_logged_and_ignored(unused_udp_port_factory):
    ports = {"lb1": unused_udp_port_factory(), "lb2": unused_udp_port_factory()}
    cap = DryRunAddressCapability()
    with capture_logs() as logs:
        nodes = {}
        for nid, prio in (("lb1", 101), ("lb2", 100)):
            other = "lb2" if nid == "lb1" else "lb1"
            nodes[nid] = Node(
                node_config(
                    nid,
                    prio,
                    [],
                    listen_address=f"127.0.0.1:{ports[nid]}",
                    peers=[PeerConfig(id=other, address=f"127.0.0.1:{ports[other]}")],
                ),
                check=CallableCheck(Health()),
                capability=cap,
                metrics_interval=3600,
            )
        await start_all(nodes)
        try:
            await wait_until(lambda: state(nodes["lb1"]) == ElectionState.MASTER)
            await wait_until(lambda: state(nodes["lb2"]) == ElectionState.BACKUP)

            forged = AdvertCodec("stolen-guess").encode(Advertisement("lb2", "MASTER", 255, 2**40))
            sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
            try:
                sock.sendto(forged, ("127.0.0.1", ports["lb1"]))
            finally:
                sock.close()
            await wait_until(lambda: nodes["lb1"].transport.counters["auth_failures"] == 1)
            await asyncio.sleep(MASTER_DOWN)

            assert state(nodes["lb1"]) == ElectionState.MASTER
            await nodes["lb1"].notifier.drain()
            assert cap.owners[ADDRESS] == "lb1"
            assert cap.count("associate", "lb2", ADDRESS) == 0
        finally:
            await stop_all(nodes)

    rejected = [e for e in logs if e["event"] == "advert_rejected"]
    assert len(rejected) == 1
    assert rejected[0]["error_type"] == "AuthenticationError"
    assert rejected[0]["node_id"] == "lb1"
    assert rejected[0]["log_level"] == "warning"


@pytest.mark.asyncio
async def test_named_adjustment_moves_mastership():
    nodes, _, _, cap = build_cluster({"lb1": 101, "lb2": 100})
    await start_all(nodes)
    try:
        await wait_until(lambda: state(nodes["lb1"]) == ElectionState.MASTER)

        nodes["lb2"].adjust_priority("maintenance-window", 5)
        await wait_until(lambda: state(nodes["lb2"]) == ElectionState.MASTER)
        await wait_until(lambda: state(nodes["lb1"]) == ElectionState.BACKUP)
        assert nodes["lb2"].engine.effective_priority == 105
        assert nodes["lb2"].snapshot()["adjustments"] == {"maintenance-window": 5}
        await nodes["lb2"].notifier.drain()
        assert cap.owners[ADDRESS] == "lb2"

        nodes["lb2"].adjust_priority("maintenance-window", None)
        await wait_until(lambda: state(nodes["lb1"]) == ElectionState.MASTER)
        assert nodes["lb2"].engine.effective_priority == 100
        assert nodes["lb2"].snapshot()["adjustments"] == {}
    finally:
        await stop_all(nodes)


@pytest.mark.asyncio
async def test_state_file_and_snapshot(tmp_path):
    path = tmp_path / "run" / "vipguard.state"
    nodes, _, _, _ = build_cluster({"lb1": 101, "lb2": 100})
    nodes["lb1"].state_file = str(path)
    await start_all(nodes)
    try:
        await wait_until(lambda: state(nodes["lb1"]) == ElectionState.MASTER)
        assert read_state(str(path)) == "MASTER"
        values = read_state_file(str(path))
        assert values["NODE_ID"] == "lb1"
        assert values["PRIORITY"] == "101"

        snap = nodes["lb1"].snapshot()
        assert snap["state"] == "MASTER"
        assert snap["effective_priority"] == 101
        assert snap["master_id"] == "lb1"
        assert snap["last_transition_time"] is not None
        assert [p["peer_id"] for p in snap["peers"]] == ["lb2"]
    finally:
        await stop_all(nodes)


@pytest.mark.asyncio
async def test_unhealthy_at_boot_never_wins():
    nodes, health, _, _ = build_cluster({"lb1": 101, "lb2": 100})
    health["lb1"].ok = False
    await start_all(nodes)
    try:
        await wait_until(lambda: state(nodes["lb2"]) == ElectionState.MASTER)
        await asyncio.sleep(MASTER_DOWN)
        assert state(nodes["lb1"]) == ElectionState.BACKUP
        assert not [
            e for e in nodes["lb1"].events.recent if e["event"] == "transition" and e["to"] == "MASTER"
        ]
    finally:
        await stop_all(nodes)


@pytest.mark.asyncio
async def test_stop_is_cooperative_and_idempotent():
    nodes, _, network, _ = build_cluster({"lb1": 101, "lb2": 100})
    await start_all(nodes)
    await wait_until(lambda: state(nodes["lb1"]) == ElectionState.MASTER)

    await nodes["lb1"].stop()
    await nodes["lb1"].stop()
    assert nodes["lb1"].engine.stopped
    assert network.transports["lb1"].running is False

    # The survivor notices the silence like any other failure
    await wait_until(lambda: state(nodes["lb2"]) == ElectionState.MASTER)
    await nodes["lb2"].stop()


@pytest.mark.asyncio
async def test_run_returns_after_stop():
    nodes, _, _, _ = build_cluster({"lb1": 101})
    node = nodes["lb1"]
    runner = asyncio.create_task(node.run())
    await wait_until(lambda: state(node) == ElectionState.MASTER)
    await node.stop()
    await asyncio.wait_for(runner, timeout=1.0)
