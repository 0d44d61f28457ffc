"""Local health probing.

A HealthProbe runs one pluggable check on a fixed schedule and publishes a
HealthResult after each run. Checks are async callables returning
``(ok, detail)``; a check that raises or overruns its timeout counts as
failed. The probe never touches election state itself: results go to the
``on_result`` callback, which the node turns into an event on its loop.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Tuple

import structlog

from vipguard.utils.errors import HealthCheckTimeout

logger = structlog.get_logger(__name__)

CheckFn = Callable[[], Awaitable[Tuple[bool, str]]]


@dataclass(frozen=True)
class HealthResult:
    ok: bool
    detail: str
    timestamp: float = field(default_factory=time.time)


class CommandCheck:
    """Runs a shell command; exit status 0 is healthy."""

    def __init__(self, command: str):
        self.command = command

    async def __call__(self) -> Tuple[bool, str]:
        proc = await asyncio.create_subprocess_shell(
            self.command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        try:
            out, _ = await proc.communicate()
        except asyncio.CancelledError:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            raise
        text = out.decode("utf-8", errors="replace").strip().splitlines()
        tail = f": {text[-1][:200]}" if text else ""
        return proc.returncode == 0, f"exit={proc.returncode}{tail}"

    def __repr__(self) -> str:
        return f"CommandCheck({self.command!r})"


class TcpCheck:
    """Healthy if a TCP connection to host:port can be opened."""

    def __init__(self, host: str, port: int):
        self.host = host
        self.port = port

    async def __call__(self) -> Tuple[bool, str]:
        try:
            _, writer = await asyncio.open_connection(self.host, self.port)
        except OSError as e:
            return False, f"connect {self.host}:{self.port} failed: {e}"
        writer.close()
        with contextlib.suppress(OSError):
            await writer.wait_closed()
        return True, f"connect {self.host}:{self.port} ok"

    def __repr__(self) -> str:
        return f"TcpCheck({self.host}:{self.port})"


class CallableCheck:
    """Wraps a sync or async function returning bool or (bool, detail)."""

    def __init__(self, fn: Callable[[], Any]):
        self.fn = fn

    async def __call__(self) -> Tuple[bool, str]:
        result = self.fn()
        if inspect.isawaitable(result):
            result = await result
        if isinstance(result, tuple):
            ok, detail = result
            return bool(ok), str(detail)
        return bool(result), "ok" if result else "check returned false"


async def always_healthy() -> Tuple[bool, str]:
    return True, "no health check configured"


class HealthProbe:
    """Fixed-rate runner for a single health check.

    `fall` consecutive failures flip the published result to unhealthy and
    `rise` consecutive successes flip it back.
    """

    def __init__(
        self,
        check: CheckFn,
        *,
        interval: float = 3.0,
        timeout: Optional[float] = None,
        fall: int = 1,
        rise: int = 1,
        on_result: Optional[Callable[[HealthResult], None]] = None,
    ):
        if interval <= 0:
            raise ValueError("interval must be > 0")
        self.check = check
        self.interval = interval
        self.timeout = min(timeout or interval, interval)
        self.fall = max(1, fall)
        self.rise = max(1, rise)
        self.on_result = on_result
        self.latest = HealthResult(ok=True, detail="not yet evaluated")
        self._fail_streak = 0
        self._ok_streak = 0

    async def _run_check(self) -> Tuple[bool, str]:
        try:
            return await asyncio.wait_for(self.check(), timeout=self.timeout)
        except asyncio.TimeoutError:
            err = HealthCheckTimeout(self.timeout)
            logger.warning("health_check_timeout", check=repr(self.check), timeout=self.timeout)
            return False, str(err)
        except Exception as e:
            logger.warning("health_check_error", check=repr(self.check), error=str(e))
            return False, f"{type(e).__name__}: {e}"

    async def evaluate(self) -> HealthResult:
        """Run the check once and return the published (debounced) result."""
        raw_ok, detail = await self._run_check()
        if raw_ok:
            self._ok_streak += 1
            self._fail_streak = 0
        else:
            self._fail_streak += 1
            self._ok_streak = 0

        ok = self.latest.ok
        if ok and self._fail_streak >= self.fall:
            ok = False
        elif not ok and self._ok_streak >= self.rise:
            ok = True

        if ok != self.latest.ok:
            logger.info("health_changed", ok=ok, detail=detail)
        self.latest = HealthResult(ok=ok, detail=detail)
        return self.latest

    async def run(self) -> None:
        """Evaluate forever on a fixed schedule, publishing each result."""
        loop = asyncio.get_running_loop()
        next_at = loop.time()
        while True:
            next_at += self.interval
            result = await self.evaluate()
            if self.on_result:
                try:
                    self.on_result(result)
                except Exception:
                    logger.exception("health_result_callback_failed")
            delay = next_at - loop.time()
            if delay < 0:
                # Overran a whole cycle; realign instead of bursting
                next_at = loop.time()
                delay = 0
            await asyncio.sleep(delay)
