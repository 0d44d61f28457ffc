"""Observability events produced for status pages and metrics pipelines."""

from __future__ import annotations

import asyncio
import inspect
from collections import deque
from typing import Any, Callable, Deque, Dict, List

import structlog

from vipguard.cluster.election import Transition
from vipguard.health.probe import HealthResult

logger = structlog.get_logger(__name__)

Event = Dict[str, Any]


def transition_event(t: Transition) -> Event:
    return {
        "event": "transition",
        "node_id": t.node_id,
        "from": t.from_state.value,
        "to": t.to_state.value,
        "timestamp": t.timestamp,
    }


def health_event(node_id: str, result: HealthResult) -> Event:
    return {
        "event": "health",
        "node_id": node_id,
        "ok": result.ok,
        "detail": result.detail,
        "timestamp": result.timestamp,
    }


class EventBus:
    """Fan-out of events to subscribers; keeps a short history.

    Subscribers may be plain functions or coroutine functions. A failing
    subscriber is logged and skipped.
    """

    def __init__(self, history: int = 100):
        self._subscribers: List[Callable[[Event], Any]] = []
        self.recent: Deque[Event] = deque(maxlen=history)
        self._tasks: set[asyncio.Task] = set()

    def subscribe(self, cb: Callable[[Event], Any]) -> None:
        self._subscribers.append(cb)

    def unsubscribe(self, cb: Callable[[Event], Any]) -> None:
        if cb in self._subscribers:
            self._subscribers.remove(cb)

    def publish(self, event: Event) -> None:
        self.recent.append(event)
        for cb in list(self._subscribers):
            try:
                result = cb(event)
                if inspect.isawaitable(result):
                    task = asyncio.ensure_future(result)
                    self._tasks.add(task)
                    task.add_done_callback(self._finish)
            except Exception:
                logger.exception("event_subscriber_failed", event_type=event.get("event"))

    def _finish(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("event_subscriber_failed", error=str(task.exception()))
