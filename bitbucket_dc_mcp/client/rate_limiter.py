"""Token bucket throttling outbound Bitbucket requests."""

from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable

import structlog

log = structlog.get_logger()

MIN_WAIT = 0.01


class TokenBucket:
    """Holds up to `capacity` tokens, refilled at `refill_rate` tokens per second.

    `acquire()` takes one token, sleeping until one is available. Waiters are
    served one at a time, in arrival order.
    """

    def __init__(
        self,
        capacity: float,
        refill_rate: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        if refill_rate <= 0:
            raise ValueError("refill_rate must be positive")

        self._capacity = float(capacity)
        self._refill_rate = float(refill_rate)
        self._clock = clock
        self._sleep = sleep
        self._tokens = self._capacity
        self._last_refill = clock()
        self._lock = asyncio.Lock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = now - self._last_refill
        self._tokens = min(self._capacity, self._tokens + elapsed * self._refill_rate)
        self._last_refill = now

    async def acquire(self) -> None:
        async with self._lock:
            self._refill()
            while self._tokens < 1:
                wait = max((1 - self._tokens) / self._refill_rate, MIN_WAIT)
                log.debug("rate_limiter.waiting", wait_seconds=round(wait, 3))
                await self._sleep(wait)
                self._refill()
            self._tokens -= 1

    @property
    def available_tokens(self) -> int:
        return int(self._tokens)
