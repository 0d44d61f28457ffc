"""Peer liveness tracking.

Keeps the last advertisement seen from every peer and marks peers as
alive/dead based on the master-down interval. Dead peers are kept for
diagnostics; nothing is ever evicted from the table.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional


@dataclass
class PeerRecord:
    peer_id: str
    configured: bool = False
    priority: Optional[int] = None
    state: Optional[str] = None
    sequence: int = -1
    last_seen: Optional[float] = None
    alive: bool = False

    def as_dict(self, now: float) -> dict:
        return {
            "peer_id": self.peer_id,
            "configured": self.configured,
            "priority": self.priority,
            "state": self.state,
            "sequence": self.sequence,
            "alive": self.alive,
            "seconds_since_seen": None if self.last_seen is None else round(now - self.last_seen, 3),
        }


class PeerTable:
    def __init__(
        self,
        peers: Iterable[str],
        down_interval: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.down_interval = down_interval
        self._clock = clock
        self._records: Dict[str, PeerRecord] = {p: PeerRecord(peer_id=p, configured=True) for p in peers}

    def get(self, peer_id: str) -> Optional[PeerRecord]:
        return self._records.get(peer_id)

    def records(self) -> List[PeerRecord]:
        return list(self._records.values())

    def is_fresh(self, peer_id: str, sequence: int) -> bool:
        """True if `sequence` is newer than anything accepted from the peer."""
        rec = self._records.get(peer_id)
        return rec is None or sequence > rec.sequence

    def observe(self, peer_id: str, priority: int, state: str, sequence: int) -> PeerRecord:
        """Record an accepted advertisement, creating the record on first contact."""
        rec = self._records.get(peer_id)
        if rec is None:
            rec = PeerRecord(peer_id=peer_id)
            self._records[peer_id] = rec
        rec.priority = priority
        rec.state = state
        rec.sequence = sequence
        rec.last_seen = self._clock()
        rec.alive = True
        return rec

    def expire(self, now: Optional[float] = None) -> List[str]:
        """Mark silent peers dead; return the ids that died on this call."""
        now = now if now is not None else self._clock()
        died = []
        for rec in self._records.values():
            if rec.alive and rec.last_seen is not None and now - rec.last_seen >= self.down_interval:
                rec.alive = False
                died.append(rec.peer_id)
        return died

    def alive_peers(self) -> List[PeerRecord]:
        return [r for r in self._records.values() if r.alive]

    def all_configured_alive(self) -> bool:
        return all(r.alive for r in self._records.values() if r.configured)

    def next_expiry(self) -> Optional[float]:
        """Monotonic time at which the next alive peer goes stale."""
        times = [r.last_seen + self.down_interval for r in self._records.values() if r.alive and r.last_seen is not None]
        return min(times) if times else None
