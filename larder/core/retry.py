"""
Bounded retry policy with an injectable sleeper.

Fixed delay schedule (no adaptive backoff). The sleeper is a coroutine
function so tests can swap asyncio.sleep for a recorder and never wait on
real timers.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Iterator, Sequence

from larder.core.config import settings

Sleeper = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    """Explicit retry schedule: one delay per attempt, attempts = len(delays)."""
    delays: Sequence[float] = (2.0, 4.0, 6.0)
    sleep: Sleeper = field(default=asyncio.sleep, compare=False, repr=False)

    @property
    def max_attempts(self) -> int:
        return len(self.delays)

    def schedule(self) -> Iterator[tuple[int, float]]:
        """Yield (attempt_number, delay) pairs, attempts numbered from 1."""
        for idx, delay in enumerate(self.delays, start=1):
            yield idx, delay

    async def wait(self, delay: float) -> None:
        await self.sleep(delay)

    def delay_for(self, attempt: int) -> float:
        """Delay before the given attempt (from 1); the last delay repeats."""
        return self.delays[min(attempt, self.max_attempts) - 1]


def roster_retry_policy(sleep: Sleeper = asyncio.sleep) -> RetryPolicy:
    """Replication-lag retry used by the roster loader (2s, 4s, 6s by default)."""
    return RetryPolicy(delays=tuple(settings.roster_retry_delays), sleep=sleep)


def realtime_reconnect_policy(sleep: Sleeper = asyncio.sleep) -> RetryPolicy:
    """Realtime reconnect schedule; the feed keeps reusing the last delay."""
    return RetryPolicy(delays=tuple(settings.realtime_reconnect_delays), sleep=sleep)

