"""Priority-based MASTER/BACKUP election.

Implements the advertisement protocol and the per-node state machine
(INIT -> BACKUP <-> MASTER, any -> FAULT). The engine is a plain object with
no I/O: the owning Node feeds it accepted advertisements, priority changes
and timer ticks from a single loop, and sends whatever `next_advertisement()`
returns.

Ordering between nodes is total: higher priority wins, equal priorities are
broken by the lexicographically lower node id.
"""

from __future__ import annotations

import time
from collections import Counter
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional

from vipguard.cluster.advert import Advertisement
from vipguard.cluster.peers import PeerRecord, PeerTable
from vipguard.utils.logging_config import get_logger


class ElectionState(Enum):
    """Election states."""
    INIT = "INIT"
    BACKUP = "BACKUP"
    MASTER = "MASTER"
    FAULT = "FAULT"


@dataclass(frozen=True)
class Transition:
    node_id: str
    from_state: ElectionState
    to_state: ElectionState
    timestamp: float
    reason: str


def rank(priority: int, node_id: str) -> tuple:
    """Sort key: smaller sorts first and wins."""
    return (-priority, node_id)


def outranks(priority: int, node_id: str, other_priority: int, other_id: str) -> bool:
    return rank(priority, node_id) < rank(other_priority, other_id)


class ElectionEngine:
    """Election state machine for one node."""

    def __init__(
        self,
        node_id: str,
        priority: int,
        *,
        advert_interval: float = 1.0,
        master_down_interval: float = 3.0,
        peers: Iterable[str] = (),
        min_priority: int = 0,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
        sequence_start: Optional[int] = None,
    ):
        self.node_id = node_id
        self.effective_priority = priority
        self.advert_interval = advert_interval
        self.master_down_interval = master_down_interval
        self.min_priority = min_priority
        self._clock = clock
        self._wall_clock = wall_clock
        self.peers = PeerTable(peers, master_down_interval, clock)

        self.state: ElectionState = ElectionState.INIT
        self.last_transition_time: Optional[float] = None
        self.master_id: Optional[str] = None

        # Seeded from wall time so a restarted node is not taken for a replay
        self._sequence: int = sequence_start if sequence_start is not None else int(wall_clock() * 1000)
        self._master_down_deadline: Optional[float] = None
        self._listeners: List[Callable[[Transition], None]] = []
        self._stopped = False
        self.counters: Counter = Counter()
        self._log = get_logger(__name__, node_id=node_id, component="election")

    # -------- lifecycle --------
    def add_listener(self, cb: Callable[[Transition], None]) -> None:
        self._listeners.append(cb)

    def start(self) -> None:
        """INIT -> BACKUP, arm the master-down timer."""
        if self.state != ElectionState.INIT or self._stopped:
            return
        self._transition(ElectionState.BACKUP, "startup")
        self._arm_master_down()
        self._evaluate()

    def stop(self) -> None:
        """Resign: no further advertisements or transitions."""
        self._stopped = True
        self._master_down_deadline = None
        self._log.info("election_stopped", state=self.state.value)

    @property
    def stopped(self) -> bool:
        return self._stopped

    # -------- inputs --------
    def set_priority(self, priority: int) -> bool:
        """Update the advertised priority; returns True if it changed."""
        if priority == self.effective_priority:
            return False
        old = self.effective_priority
        self.effective_priority = priority
        self._log.info("priority_changed", old=old, new=priority, state=self.state.value)
        self._evaluate()
        return True

    def handle_advertisement(self, advert: Advertisement) -> bool:
        """Process an authenticated advertisement; returns False if discarded."""
        if self._stopped or advert.sender_id == self.node_id:
            self.counters["adverts_ignored"] += 1
            return False
        if not self.peers.is_fresh(advert.sender_id, advert.sequence):
            self.counters["adverts_stale"] += 1
            self._log.debug("advert_stale", sender=advert.sender_id, sequence=advert.sequence)
            return False

        rec = self.peers.observe(advert.sender_id, advert.priority, advert.state, advert.sequence)
        self.counters["adverts_accepted"] += 1
        if self.state in (ElectionState.INIT, ElectionState.FAULT):
            return True

        if advert.state == ElectionState.MASTER.value and self._peer_outranks(rec):
            if self.state == ElectionState.MASTER:
                self._transition(ElectionState.BACKUP, f"preempted_by:{rec.peer_id}")
            self.master_id = rec.peer_id
            self._arm_master_down()
        elif advert.state == ElectionState.MASTER.value and self.master_id is None:
            self.master_id = rec.peer_id

        self._evaluate()
        return True

    def tick(self) -> None:
        """Advance timers: expire silent peers, fire the master-down timer."""
        if self._stopped:
            return
        now = self._clock()
        for peer_id in self.peers.expire(now):
            self._log.warning("peer_down", peer=peer_id)
            if peer_id == self.master_id:
                self.master_id = None

        if (
            self.state == ElectionState.BACKUP
            and self._master_down_deadline is not None
            and now >= self._master_down_deadline
        ):
            stronger = [r.peer_id for r in self.peers.alive_peers() if self._peer_outranks(r)]
            if stronger:
                self._log.info("master_down_timer_deferred", stronger=stronger)
                self._arm_master_down()
            else:
                self._transition(ElectionState.MASTER, "master_down_timer_expired")
                return
        self._evaluate()

    # -------- outputs --------
    def next_advertisement(self) -> Optional[Advertisement]:
        """Next advertisement to send, or None when silent (INIT/FAULT/stopped)."""
        if self._stopped or self.state not in (ElectionState.MASTER, ElectionState.BACKUP):
            return None
        self._sequence += 1
        return Advertisement(
            sender_id=self.node_id,
            state=self.state.value,
            priority=self.effective_priority,
            sequence=self._sequence,
        )

    def next_deadline(self) -> Optional[float]:
        """Earliest monotonic time at which tick() has work to do."""
        if self._stopped:
            return None
        candidates = [self.peers.next_expiry()]
        if self.state == ElectionState.BACKUP:
            candidates.append(self._master_down_deadline)
        candidates = [c for c in candidates if c is not None]
        return min(candidates) if candidates else None

    def get_state_info(self) -> Dict[str, Any]:
        now = self._clock()
        return {
            "node_id": self.node_id,
            "state": self.state.value,
            "effective_priority": self.effective_priority,
            "last_transition_time": self.last_transition_time,
            "master_id": self.node_id if self.state == ElectionState.MASTER else self.master_id,
            "sequence": self._sequence,
            "stopped": self._stopped,
            "master_down_in": (
                round(self._master_down_deadline - now, 3)
                if self.state == ElectionState.BACKUP and self._master_down_deadline is not None
                else None
            ),
            "peers": [r.as_dict(now) for r in self.peers.records()],
        }

    # -------- internals --------
    def _peer_outranks(self, rec: PeerRecord) -> bool:
        if rec.priority is None:
            return False
        return outranks(rec.priority, rec.peer_id, self.effective_priority, self.node_id)

    def _arm_master_down(self) -> None:
        self._master_down_deadline = self._clock() + self.master_down_interval

    def _evaluate(self) -> None:
        """Apply the priority-driven rules after any input."""
        if self._stopped or self.state == ElectionState.INIT:
            return

        if self.effective_priority <= self.min_priority:
            if self.state != ElectionState.FAULT:
                self._transition(ElectionState.FAULT, "priority_at_or_below_minimum")
            return

        if self.state == ElectionState.FAULT:
            self._transition(ElectionState.BACKUP, "priority_recovered")
            self._arm_master_down()

        if self.state == ElectionState.BACKUP and self.peers.all_configured_alive():
            if not any(self._peer_outranks(r) for r in self.peers.alive_peers()):
                self._transition(ElectionState.MASTER, "highest_priority")

    def _transition(self, new_state: ElectionState, reason: str) -> None:
        old_state = self.state
        if new_state == old_state:
            return
        self.state = new_state
        self.last_transition_time = self._wall_clock()
        self.counters["transitions"] += 1
        if new_state == ElectionState.MASTER:
            self.master_id = self.node_id
            self._master_down_deadline = None
        elif old_state == ElectionState.MASTER:
            self.master_id = None
        self._log.info(
            "transition",
            from_state=old_state.value,
            to_state=new_state.value,
            priority=self.effective_priority,
            reason=reason,
        )
        event = Transition(self.node_id, old_state, new_state, self.last_transition_time, reason)
        for cb in list(self._listeners):
            try:
                cb(event)
            except Exception:
                self._log.exception("transition_listener_failed", to_state=new_state.value)
