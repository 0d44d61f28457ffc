"""Retry with exponential backoff for address reassignment calls.

Usage:
    policy = RetryPolicy(max_attempts=5, base_delay_ms=500)
    await retry_with_policy("associate", lambda: cap.associate(node, addr), policy)
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, TypeVar

import structlog

from vipguard.utils.errors import ExternalCapabilityError

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class RetryAbandoned(Exception):
    """A retry sequence was stopped because its work became obsolete."""


@dataclass(frozen=True)
class RetryPolicy:
    """Configuration for retry behavior.

    Attributes:
        max_attempts: Maximum number of attempts (1 = no retries)
        base_delay_ms: Delay before the first retry in milliseconds
        max_delay_ms: Cap on any single delay in milliseconds
        backoff_multiplier: Growth factor between consecutive delays
    """

    max_attempts: int = 5
    base_delay_ms: int = 500
    max_delay_ms: int = 8000
    backoff_multiplier: float = 2.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay_ms < 0:
            raise ValueError("base_delay_ms must be >= 0")
        if self.max_delay_ms < self.base_delay_ms:
            raise ValueError("max_delay_ms must be >= base_delay_ms")
        if self.backoff_multiplier < 1.0:
            raise ValueError("backoff_multiplier must be >= 1.0")

    def compute_delay_ms(self, attempt: int) -> int:
        """Delay after the given 0-indexed attempt, capped at max_delay_ms."""
        delay = self.base_delay_ms * (self.backoff_multiplier**attempt)
        return min(int(delay), self.max_delay_ms)


@dataclass
class RetryStats:
    attempts: int = 0
    total_delay_ms: int = 0
    errors: List[str] = field(default_factory=list)


async def retry_with_policy(
    op: str,
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    should_continue: Optional[Callable[[], bool]] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    stats: Optional[RetryStats] = None,
) -> T:
    """Run `fn` until it succeeds or the policy is exhausted.

    Only ExternalCapabilityError is retried; anything else propagates at once.
    `should_continue` is checked before every retry; returning False raises
    RetryAbandoned. The last error is re-raised after the final attempt.
    """
    stats = stats if stats is not None else RetryStats()
    for attempt in range(policy.max_attempts):
        stats.attempts = attempt + 1
        try:
            return await fn()
        except ExternalCapabilityError as e:
            stats.errors.append(str(e))
            if attempt + 1 >= policy.max_attempts:
                raise
            delay_ms = policy.compute_delay_ms(attempt)
            logger.warning(
                "retry_scheduled",
                op=op,
                attempt=attempt + 1,
                max_attempts=policy.max_attempts,
                delay_ms=delay_ms,
                error=str(e),
            )
            stats.total_delay_ms += delay_ms
            await sleep(delay_ms / 1000.0)
            if should_continue is not None and not should_continue():
                raise RetryAbandoned(op) from e
    raise AssertionError("unreachable")
