"""UDP transport tests on loopback."""

import asyncio
import socket
import sys
from pathlib import Path

# Ensure src is importable
ROOT = Path(__file__).parent.parent
SRC = ROOT / "src"
sys.path.insert(0, str(SRC))

import pytest

from vipguard.cluster.advert import AdvertCodec, Advertisement  # noqa: E402
from vipguard.cluster.transport import PeerTransport  # noqa: E402
from vipguard.config.cluster import PeerConfig  # noqa: E402


async def wait_for(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            return False
        await asyncio.sleep(0.01)
    return True


def make_pair(p1, p2, secret_a="s3cret", secret_b="s3cret"):
    received = {"lb1": [], "lb2": []}
    a = PeerTransport(
        "lb1",
        f"127.0.0.1:{p1}",
        [PeerConfig(id="lb2", address=f"127.0.0.1:{p2}")],
        AdvertCodec(secret_a),
        on_advert=received["lb1"].append,
    )
    b = PeerTransport(
        "lb2",
        f"127.0.0.1:{p2}",
        [PeerConfig(id="lb1", address=f"127.0.0.1:{p1}")],
        AdvertCodec(secret_b),
        on_advert=received["lb2"].append,
    )
    return a, b, received


@pytest.mark.asyncio
async def test_advert_delivered_between_peers(unused_udp_port_factory):
    a, b, received = make_pair(unused_udp_port_factory(), unused_udp_port_factory())
    await a.start()
    await b.start()
    try:
        assert a.send(Advertisement("lb1", "MASTER", 101, 7)) == 1
        assert await wait_for(lambda: received["lb2"])

        advert = received["lb2"][0]
        assert (advert.sender_id, advert.state, advert.priority, advert.sequence) == ("lb1", "MASTER", 101, 7)
        assert a.counters["adverts_sent"] == 1
        assert b.counters["adverts_received"] == 1
    finally:
        await a.stop()
        await b.stop()


@pytest.mark.asyncio
async def test_wrong_secret_is_rejected_and_counted(unused_udp_port_factory):
    a, b, received = make_pair(unused_udp_port_factory(), unused_udp_port_factory(), secret_a="intruder")
    await a.start()
    await b.start()
    try:
        a.send(Advertisement("lb1", "MASTER", 255, 1))
        assert await wait_for(lambda: b.counters["auth_failures"] == 1)
        assert received["lb2"] == []
    finally:
        await a.stop()
        await b.stop()


@pytest.mark.asyncio
async def test_garbage_datagram_is_rejected(unused_udp_port_factory):
    port = unused_udp_port_factory()
    received = []
    t = PeerTransport("lb1", f"127.0.0.1:{port}", [], AdvertCodec("s3cret"), on_advert=received.append)
    await t.start()
    try:
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        sock.sendto(b"\x00\x01garbage", ("127.0.0.1", port))
        sock.close()
        assert await wait_for(lambda: t.counters["auth_failures"] == 1)
        assert received == []
    finally:
        await t.stop()


@pytest.mark.asyncio
async def test_send_to_silent_peer_does_not_raise(unused_udp_port_factory):
    a, _, _ = make_pair(unused_udp_port_factory(), unused_udp_port_factory())
    await a.start()
    try:
        for seq in range(3):
            a.send(Advertisement("lb1", "BACKUP", 100, seq))
        await asyncio.sleep(0.05)
        assert a.counters["adverts_sent"] == 3
    finally:
        await a.stop()


@pytest.mark.asyncio
async def test_send_after_stop_is_noop(unused_udp_port_factory):
    a, _, _ = make_pair(unused_udp_port_factory(), unused_udp_port_factory())
    await a.start()
    assert a.local_address[1] > 0
    await a.stop()
    assert a.send(Advertisement("lb1", "MASTER", 101, 1)) == 0
    assert a.local_address is None
