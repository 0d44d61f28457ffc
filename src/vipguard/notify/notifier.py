"""Transition side effects: floating address reassignment and operator hooks.

`notify()` is called synchronously from the election loop and only enqueues
work. Address actions run on one worker task in transition order, each with
bounded exponential-backoff retries; hooks run as independent tasks. Nothing
here can change election state: an associate that keeps failing raises an
alarm but the node stays MASTER.
"""

from __future__ import annotations

import asyncio
import inspect
import os
import shlex
from collections import Counter
from typing import Any, Callable, Iterable, List, Optional, Tuple

from vipguard.cluster.election import ElectionState, Transition
from vipguard.notify.capability import AddressCapability
from vipguard.notify.retries import RetryAbandoned, RetryPolicy, retry_with_policy
from vipguard.utils.errors import ExternalCapabilityError
from vipguard.utils.logging_config import get_logger


Hook = Callable[[Transition], Any]


class TransitionNotifier:
    def __init__(
        self,
        node_id: str,
        floating_address: str,
        capability: AddressCapability,
        *,
        policy: Optional[RetryPolicy] = None,
        release_on_demote: bool = False,
        hooks: Iterable[Hook] = (),
        notify_command: Optional[str] = None,
        command_timeout: float = 30.0,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ):
        self.node_id = node_id
        self.floating_address = floating_address
        self.capability = capability
        self.policy = policy or RetryPolicy()
        self.release_on_demote = release_on_demote
        self.hooks: List[Hook] = list(hooks)
        self.notify_command = notify_command
        self.command_timeout = command_timeout
        self._sleep = sleep

        self.alarm: Optional[dict] = None
        self.counters: Counter = Counter()
        self._generation = 0
        self._queue: asyncio.Queue[Tuple[int, Transition]] = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None
        self._hook_tasks: set[asyncio.Task] = set()
        self._log = get_logger(__name__, node_id=node_id, component="notifier")

    def start(self) -> None:
        if self._worker is None:
            self._worker = asyncio.create_task(self._worker_loop(), name=f"notifier-{self.node_id}")

    def notify(self, transition: Transition) -> None:
        """Queue side effects for a confirmed transition. Never blocks."""
        self._generation += 1
        self._queue.put_nowait((self._generation, transition))
        for hook in self.hooks:
            self._spawn_hook(self._run_hook(hook, transition))
        if self.notify_command:
            self._spawn_hook(self._run_notify_command(transition))

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def status(self) -> dict:
        return {
            "alarm": self.alarm,
            "pending_actions": self.pending,
            "counters": dict(self.counters),
        }

    async def drain(self) -> None:
        """Wait until all queued address actions and hooks have finished."""
        await self._queue.join()
        if self._hook_tasks:
            await asyncio.gather(*list(self._hook_tasks), return_exceptions=True)

    async def close(self, grace: float = 5.0) -> None:
        """Let in-flight work finish for up to `grace` seconds, then cancel."""
        try:
            await asyncio.wait_for(self.drain(), timeout=grace)
        except asyncio.TimeoutError:
            self._log.warning("notifier_work_abandoned", pending=self.pending, grace=grace)
        tasks = [t for t in [self._worker, *self._hook_tasks] if t is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._worker = None

    # -------- address actions --------
    async def _worker_loop(self) -> None:
        while True:
            generation, transition = await self._queue.get()
            try:
                await self._apply(generation, transition)
            except Exception:
                self._log.exception("notifier_action_failed", to_state=transition.to_state.value)
            finally:
                self._queue.task_done()

    async def _apply(self, generation: int, transition: Transition) -> None:
        entering = transition.to_state == ElectionState.MASTER
        leaving = transition.from_state == ElectionState.MASTER
        if not (entering or (leaving and self.release_on_demote)):
            return
        if generation != self._generation:
            self.counters["superseded"] += 1
            self._log.info("address_action_superseded", to_state=transition.to_state.value)
            return
        if entering:
            await self._associate(generation)
        else:
            await self._disassociate(generation)

    async def _associate(self, generation: int) -> None:
        address = self.floating_address
        try:
            await retry_with_policy(
                "associate",
                lambda: self.capability.associate(self.node_id, address),
                self.policy,
                should_continue=lambda: generation == self._generation,
                sleep=self._sleep,
            )
        except RetryAbandoned:
            self.counters["superseded"] += 1
            self._log.info("associate_superseded", address=address)
        except ExternalCapabilityError as e:
            self._raise_alarm("associate", str(e))
        except Exception as e:
            self._log.exception("associate_unexpected_error", address=address)
            self._raise_alarm("associate", f"{type(e).__name__}: {e}")
        else:
            self.counters["associate_ok"] += 1
            if self.alarm is not None:
                self._log.info("alarm_cleared", previous=self.alarm)
            self.alarm = None
            self._log.info("associated", address=address)

    async def _disassociate(self, generation: int) -> None:
        address = self.floating_address
        try:
            await retry_with_policy(
                "disassociate",
                lambda: self.capability.disassociate(address),
                self.policy,
                should_continue=lambda: generation == self._generation,
                sleep=self._sleep,
            )
        except RetryAbandoned:
            self.counters["superseded"] += 1
        except Exception as e:
            # Best effort: the next MASTER's associate supersedes ownership
            self.counters["disassociate_failed"] += 1
            self._log.warning("disassociate_failed", address=address, error=str(e))
        else:
            self.counters["disassociate_ok"] += 1
            self._log.info("disassociated", address=address)

    def _raise_alarm(self, op: str, error: str) -> None:
        self.counters[f"{op}_failed"] += 1
        self.alarm = {
            "op": op,
            "address": self.floating_address,
            "error": error,
            "attempts": self.policy.max_attempts,
        }
        self._log.error(f"{op}_failed", alarm=True, **self.alarm)

    # -------- hooks --------
    def _spawn_hook(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._hook_tasks.add(task)
        task.add_done_callback(self._hook_tasks.discard)

    async def _run_hook(self, hook: Hook, transition: Transition) -> None:
        try:
            result = hook(transition)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            self.counters["hook_failed"] += 1
            self._log.warning("hook_failed", hook=getattr(hook, "__name__", repr(hook)), error=str(e))

    async def _run_notify_command(self, transition: Transition) -> None:
        """keepalived-style notify script: `<command> FROM TO TIMESTAMP`."""
        args = shlex.split(self.notify_command) + [
            transition.from_state.value,
            transition.to_state.value,
            f"{transition.timestamp:.3f}",
        ]
        env = dict(
            os.environ,
            VIPGUARD_NODE_ID=self.node_id,
            VIPGUARD_FROM=transition.from_state.value,
            VIPGUARD_TO=transition.to_state.value,
            VIPGUARD_TIMESTAMP=f"{transition.timestamp:.3f}",
            VIPGUARD_ADDRESS=self.floating_address,
        )
        proc = None
        try:
            proc = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
                env=env,
            )
            rc = await asyncio.wait_for(proc.wait(), timeout=self.command_timeout)
        except asyncio.TimeoutError:
            if proc is not None and proc.returncode is None:
                proc.kill()
            self.counters["hook_failed"] += 1
            self._log.warning("notify_command_timeout", command=self.notify_command)
            return
        except OSError as e:
            self.counters["hook_failed"] += 1
            self._log.warning("notify_command_failed", command=self.notify_command, error=str(e))
            return
        if rc != 0:
            self.counters["hook_failed"] += 1
            self._log.warning("notify_command_failed", command=self.notify_command, returncode=rc)
