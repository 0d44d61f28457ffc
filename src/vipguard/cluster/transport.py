"""Datagram transport for advertisements between peers.

Unicast UDP to a static peer list. Inbound datagrams are authenticated with
the shared-secret codec before anything else sees them; rejected datagrams
are logged and counted, never raised. Send errors are logged and dropped,
the next scheduled advertisement is the retry.
"""

from __future__ import annotations

import asyncio
import socket
from collections import Counter
from typing import Callable, Dict, Iterable, Optional, Tuple

from vipguard.cluster.advert import AdvertCodec, Advertisement
from vipguard.config.cluster import PeerConfig, parse_address
from vipguard.utils.errors import AuthenticationError, TransientNetworkError
from vipguard.utils.logging_config import get_logger


class _AdvertProtocol(asyncio.DatagramProtocol):
    def __init__(self, owner: "PeerTransport"):
        self.owner = owner

    def datagram_received(self, data: bytes, addr: Tuple[str, int]) -> None:
        self.owner._on_datagram(data, addr)

    def error_received(self, exc: Exception) -> None:
        # ICMP port unreachable etc. surfaces here on some platforms
        self.owner.counters["send_failures"] += 1
        self.owner._log.debug("datagram_error", error=str(exc))


class PeerTransport:
    """UDP endpoint for one node."""

    def __init__(
        self,
        node_id: str,
        listen_address: str,
        peers: Iterable[PeerConfig],
        codec: AdvertCodec,
        on_advert: Optional[Callable[[Advertisement], None]] = None,
    ):
        self.node_id = node_id
        self.listen_host, self.listen_port = parse_address(listen_address)
        self.peers = list(peers)
        self.codec = codec
        self.on_advert = on_advert
        self.counters: Counter = Counter()
        self._resolved: Dict[str, Tuple[str, int]] = {}
        self._transport: Optional[asyncio.DatagramTransport] = None
        self._log = get_logger(__name__, node_id=node_id, component="transport")

    @property
    def local_address(self) -> Optional[Tuple[str, int]]:
        if self._transport is None:
            return None
        return self._transport.get_extra_info("sockname")[:2]

    async def start(self) -> None:
        loop = asyncio.get_running_loop()
        self._transport, _ = await loop.create_datagram_endpoint(
            lambda: _AdvertProtocol(self),
            local_addr=(self.listen_host, self.listen_port),
            family=socket.AF_INET6 if ":" in self.listen_host else socket.AF_INET,
        )
        for peer in self.peers:
            self._resolved[peer.id] = await self._resolve(peer)
        self._log.info("transport_started", listen=f"{self.listen_host}:{self.listen_port}", peers=len(self.peers))

    async def _resolve(self, peer: PeerConfig) -> Tuple[str, int]:
        loop = asyncio.get_running_loop()
        try:
            infos = await loop.getaddrinfo(peer.host, peer.port, type=socket.SOCK_DGRAM)
        except socket.gaierror as e:
            self._log.warning("peer_resolve_failed", peer=peer.id, address=peer.address, error=str(e))
            return peer.host, peer.port
        return infos[0][4][:2]

    def send(self, advert: Advertisement) -> int:
        """Send one advertisement to every peer; returns successful sends."""
        if self._transport is None or self._transport.is_closing():
            return 0
        data = self.codec.encode(advert)
        sent = 0
        for peer in self.peers:
            addr = self._resolved.get(peer.id, (peer.host, peer.port))
            try:
                self._transport.sendto(data, addr)
            except OSError as e:
                err = TransientNetworkError(peer.id, peer.address, str(e))
                self.counters["send_failures"] += 1
                self._log.debug("advert_send_failed", peer=peer.id, error_type=type(err).__name__, error=str(err))
                continue
            sent += 1
        self.counters["adverts_sent"] += 1
        return sent

    def _on_datagram(self, data: bytes, addr: Tuple[str, int]) -> None:
        try:
            advert = self.codec.decode(data)
        except AuthenticationError as e:
            self.counters["auth_failures"] += 1
            self._log.warning(
                "advert_rejected",
                error_type="AuthenticationError",
                reason=e.reason,
                sender=e.sender_id,
                source=f"{addr[0]}:{addr[1]}",
            )
            return
        self.counters["adverts_received"] += 1
        if self.on_advert is not None:
            self.on_advert(advert)

    async def stop(self) -> None:
        if self._transport is not None:
            self._transport.close()
            self._transport = None
            self._log.info("transport_stopped")
