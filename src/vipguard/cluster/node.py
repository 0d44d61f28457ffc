"""Node process entry and orchestration.

Responsibilities:
- Own the election engine, priority calculator, health probe, transport
  and transition notifier for one node
- Serialize every state change through a single election loop
- Export runtime state (snapshot, state file, HTTP status endpoint)

Event sources (UDP listener, advertisement ticker, health probe, override
requests) only enqueue events; the election loop applies them one at a time
in arrival order and also wakes up at the engine's next timer deadline.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from collections import Counter
from typing import Any, Iterable, List, Optional, Tuple

from vipguard.api.state_file import write_state_file
from vipguard.cluster.advert import AdvertCodec, Advertisement
from vipguard.cluster.election import ElectionEngine, ElectionState, Transition
from vipguard.cluster.transport import PeerTransport
from vipguard.config.cluster import NodeConfig
from vipguard.health.priority import OVERRIDE, PriorityCalculator
from vipguard.health.probe import CommandCheck, HealthProbe, HealthResult, TcpCheck, always_healthy
from vipguard.notify.capability import AddressCapability, CommandAddressCapability, DryRunAddressCapability
from vipguard.notify.events import EventBus, health_event, transition_event
from vipguard.notify.notifier import Hook, TransitionNotifier
from vipguard.notify.retries import RetryPolicy
from vipguard.utils.logging_config import get_logger

_STOP = "stop"


def build_check(config: NodeConfig):
    if config.health_check_command:
        return CommandCheck(config.health_check_command)
    if config.health_check_tcp_port:
        return TcpCheck("127.0.0.1", config.health_check_tcp_port)
    return always_healthy


def build_capability(config: NodeConfig) -> AddressCapability:
    if config.notify.associate_command:
        return CommandAddressCapability(
            config.notify.associate_command,
            config.notify.disassociate_command,
            timeout=config.notify.command_timeout,
        )
    return DryRunAddressCapability()


class Node:
    def __init__(
        self,
        config: NodeConfig,
        *,
        check=None,
        capability: Optional[AddressCapability] = None,
        transport=None,
        hooks: Iterable[Hook] = (),
        state_file: Optional[str] = None,
        status_host: Optional[str] = None,
        status_port: Optional[int] = None,
        metrics_interval: float = 30.0,
    ):
        self.config = config
        self.node_id = config.node_id
        self._log = get_logger("vipguard.node", node_id=self.node_id, component="node")
        self._events: asyncio.Queue[Tuple[str, Any]] = asyncio.Queue()
        self._metrics: Counter = Counter()

        self.priority = PriorityCalculator(config.base_priority, config.health_penalty_weight)
        self.engine = ElectionEngine(
            self.node_id,
            self.priority.value,
            advert_interval=config.advert_interval,
            master_down_interval=config.master_down_interval,
            peers=[p.id for p in config.peers],
            min_priority=config.min_priority,
        )
        self.engine.add_listener(self._on_transition)

        self.probe = HealthProbe(
            check or build_check(config),
            interval=config.health_check_interval,
            timeout=config.effective_health_timeout,
            fall=config.health_fall,
            rise=config.health_rise,
            on_result=lambda r: self._events.put_nowait(("health", r)),
        )

        self.capability = capability or build_capability(config)
        self.notifier = TransitionNotifier(
            self.node_id,
            config.floating_address,
            self.capability,
            policy=RetryPolicy(
                max_attempts=config.notify.max_attempts,
                base_delay_ms=config.notify.base_delay_ms,
                max_delay_ms=max(config.notify.max_delay_ms, config.notify.base_delay_ms),
                backoff_multiplier=config.notify.backoff_multiplier,
            ),
            release_on_demote=config.notify.release_on_demote,
            hooks=hooks,
            notify_command=config.notify.notify_command,
            command_timeout=config.notify.command_timeout,
        )

        codec = AdvertCodec(config.auth_secret.get_secret_value())
        self.transport = transport or PeerTransport(self.node_id, config.listen_address, config.peers, codec)
        self.transport.on_advert = lambda adv: self._events.put_nowait(("advert", adv))

        self.events = EventBus()
        self.events.subscribe(self._log_event)
        self.state_file = state_file
        self.status_host = status_host
        self.status_port = status_port if status_port is not None else config.status_port
        self.metrics_interval = metrics_interval

        self._tasks: List[asyncio.Task] = []
        self._loop_task: Optional[asyncio.Task] = None
        self._status_server = None
        self._advertise_now = False
        self._published_health: Optional[bool] = None
        self._started = False
        self._stopped = asyncio.Event()

    # -------- lifecycle --------
    async def start(self) -> None:
        """Start node services: probe, transport, election loop, status export."""
        if self._started:
            return
        self._started = True
        self.notifier.start()

        # First verdict before taking part, so an unhealthy node never wins at boot
        initial = await self.probe.evaluate()
        self._apply_health(initial)

        await self.transport.start()
        self.engine.start()
        self._write_state()

        self._loop_task = asyncio.create_task(self._election_loop(), name=f"election-{self.node_id}")
        self._tasks = [
            asyncio.create_task(self._advert_ticker(), name=f"adverts-{self.node_id}"),
            asyncio.create_task(self._probe_loop(), name=f"probe-{self.node_id}"),
            asyncio.create_task(self._metrics_loop(), name=f"metrics-{self.node_id}"),
        ]
        if self.status_port:
            await self._start_status_server()

        self._log.info(
            "node_started",
            listen=self.config.listen_address,
            peers=[p.id for p in self.config.peers],
            state=self.engine.state.value,
            priority=self.engine.effective_priority,
            floating_address=self.config.floating_address,
        )

    async def run(self) -> None:
        """Start and block until stop() completes."""
        await self.start()
        await self._stopped.wait()

    async def stop(self) -> None:
        """Cooperative shutdown: resign, close transport, drain notifier."""
        if not self._started or self._stopped.is_set():
            return
        await self._stop_status_server()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

        if self._loop_task is not None:
            self._events.put_nowait((_STOP, None))
            await self._loop_task
            self._loop_task = None

        await self.transport.stop()
        await self.notifier.close(grace=self.config.notify.shutdown_grace)
        self._write_state()
        self._log.info("node_stopped", state=self.engine.state.value)
        self._stopped.set()

    # -------- operator inputs --------
    def set_override(self, delta: int) -> None:
        """Manual override: a forced priority adjustment, applied on the loop."""
        self._events.put_nowait(("adjust", (OVERRIDE, int(delta))))

    def clear_override(self) -> None:
        self._events.put_nowait(("adjust", (OVERRIDE, None)))

    def adjust_priority(self, name: str, delta: Optional[int]) -> None:
        """Set (or clear with None) a named external weight adjustment."""
        self._events.put_nowait(("adjust", (name, delta)))

    # -------- election loop --------
    async def _election_loop(self) -> None:
        while True:
            timeout = None
            deadline = self.engine.next_deadline()
            if deadline is not None:
                timeout = max(0.0, deadline - time.monotonic())
            try:
                kind, payload = await asyncio.wait_for(self._events.get(), timeout=timeout)
            except asyncio.TimeoutError:
                kind, payload = "timer", None
            if kind == _STOP:
                self.engine.stop()
                return
            try:
                self._dispatch(kind, payload)
            except Exception:
                self._log.exception("election_event_failed", kind=kind)
            if self._advertise_now:
                self._advertise_now = False
                self._send_advert()

    def _dispatch(self, kind: str, payload: Any) -> None:
        if kind == "timer":
            self.engine.tick()
        elif kind == "advert":
            self._metrics["adverts_received"] += 1
            self.engine.handle_advertisement(payload)
        elif kind == "advert_tick":
            self.engine.tick()
            self._send_advert()
        elif kind == "health":
            self._apply_health(payload)
        elif kind == "adjust":
            name, delta = payload
            if delta is None:
                changed = self.priority.clear_adjustment(name)
            else:
                changed = self.priority.set_adjustment(name, delta)
            self._log.info("priority_adjustment", name=name, delta=delta, effective=self.priority.value)
            if changed:
                self.engine.set_priority(self.priority.value)
                self._advertise_now = True
        else:
            self._log.warning("unknown_event", kind=kind)

    def _apply_health(self, result: HealthResult) -> None:
        if result.ok != self._published_health:
            self._published_health = result.ok
            self.events.publish(health_event(self.node_id, result))
        if self.priority.update_health(result.ok):
            self.engine.set_priority(self.priority.value)
            self._advertise_now = True

    def _log_event(self, event: dict) -> None:
        fields = {k: v for k, v in event.items() if k not in ("event", "node_id")}
        self._log.info("observability_event", kind=event["event"], **fields)

    def _send_advert(self) -> None:
        advert: Optional[Advertisement] = self.engine.next_advertisement()
        if advert is None:
            return
        self.transport.send(advert)
        self._metrics["adverts_sent"] += 1

    def _on_transition(self, transition: Transition) -> None:
        self._metrics["transitions"] += 1
        self.notifier.notify(transition)
        self.events.publish(transition_event(transition))
        self._write_state()
        if transition.to_state in (ElectionState.MASTER, ElectionState.BACKUP):
            self._advertise_now = True

    # -------- producers --------
    async def _advert_ticker(self) -> None:
        interval = self.config.advert_interval
        self._events.put_nowait(("advert_tick", None))
        while True:
            await asyncio.sleep(interval)
            self._events.put_nowait(("advert_tick", None))

    async def _probe_loop(self) -> None:
        await asyncio.sleep(self.probe.interval)
        await self.probe.run()

    async def _metrics_loop(self) -> None:
        """Periodically emit metrics."""
        while True:
            await asyncio.sleep(self.metrics_interval)
            self._log.info(
                "metrics",
                metrics=dict(self._metrics),
                election=dict(self.engine.counters),
                transport=dict(getattr(self.transport, "counters", {})),
                notifier=dict(self.notifier.counters),
                state=self.engine.state.value,
                priority=self.engine.effective_priority,
            )

    # -------- state export --------
    def snapshot(self) -> dict:
        info = self.engine.get_state_info()
        health = self.probe.latest
        return {
            "node_id": self.node_id,
            "state": info["state"],
            "effective_priority": info["effective_priority"],
            "last_transition_time": info["last_transition_time"],
            "base_priority": self.priority.base_priority,
            "adjustments": self.priority.adjustments,
            "master_id": info["master_id"],
            "floating_address": self.config.floating_address,
            "health": {"ok": health.ok, "detail": health.detail, "timestamp": health.timestamp},
            "alarm": self.notifier.alarm,
            "peers": info["peers"],
        }

    def _write_state(self) -> None:
        if not self.state_file:
            return
        try:
            write_state_file(self.state_file, self.snapshot())
        except OSError as e:
            self._log.warning("state_file_write_failed", path=self.state_file, error=str(e))

    async def _start_status_server(self) -> None:
        import uvicorn

        from vipguard.api.status_api import create_status_app

        class _EmbeddedServer(uvicorn.Server):
            # Signals belong to the node process, not to the embedded server
            def install_signal_handlers(self) -> None:
                pass

            @contextlib.contextmanager
            def capture_signals(self):
                yield

        config = uvicorn.Config(
            create_status_app(self),
            host=self.status_host or "127.0.0.1",
            port=self.status_port,
            log_level="warning",
            lifespan="off",
        )
        self._status_server = _EmbeddedServer(config)
        self._tasks.append(asyncio.create_task(self._status_server.serve(), name=f"status-{self.node_id}"))
        self._log.info("status_api_started", host=config.host, port=config.port)

    async def _stop_status_server(self) -> None:
        if self._status_server is not None:
            self._status_server.should_exit = True
            self._status_server = None
