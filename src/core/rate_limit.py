import asyncio
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from typing import TypeVar

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from core.errors import UpstreamUnavailable

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TokenBucket:
    """
    Token bucket throttle for outbound calls.

    Holds up to ``capacity`` tokens and refills ``capacity / per_seconds``
    tokens per second in fractional steps every ``tick_seconds``. Callers
    that find the bucket empty wait in FIFO order. A wait longer than
    ``max_wait_seconds`` raises UpstreamUnavailable.

    The refill task is the only writer besides acquire(), and both run on
    the event loop, so the counters need no extra locking.
    """

    def __init__(
        self,
        capacity: int,
        per_seconds: float = 1.0,
        tick_seconds: float = 0.1,
        max_wait_seconds: float | None = None,
    ):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self.tokens = float(capacity)
        self.tick_seconds = tick_seconds
        self.refill_per_tick = capacity / per_seconds * tick_seconds
        self.max_wait_seconds = max_wait_seconds
        self._waiters: deque[asyncio.Future] = deque()
        self._refill_task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._refill_task is not None and not self._refill_task.done()

    @property
    def pending(self) -> int:
        return len(self._waiters)

    def start(self) -> None:
        if self.running:
            return
        self._refill_task = asyncio.get_running_loop().create_task(self._refill_loop())
        logger.info(
            f"Rate limiter started: capacity={self.capacity}, "
            f"refill={self.refill_per_tick} tokens every {self.tick_seconds}s"
        )

    async def stop(self) -> None:
        if self._refill_task is not None:
            self._refill_task.cancel()
            try:
                await self._refill_task
            except asyncio.CancelledError:
                pass
            self._refill_task = None

        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_exception(UpstreamUnavailable("rate limiter", "Rate limiter stopped"))
        logger.info("Rate limiter stopped")

    async def _refill_loop(self) -> None:
        while True:
            await asyncio.sleep(self.tick_seconds)
            self.tick()

    def tick(self) -> None:
        """Add one tick's worth of tokens and wake as many waiters as they cover."""
        self.tokens = min(float(self.capacity), self.tokens + self.refill_per_tick)
        self._release_waiters()

    def _release_waiters(self) -> None:
        while self._waiters and self.tokens >= 1:
            waiter = self._waiters.popleft()
            if waiter.done():
                continue
            self.tokens -= 1
            waiter.set_result(None)

    def _discard(self, waiter: asyncio.Future) -> None:
        try:
            self._waiters.remove(waiter)
        except ValueError:
            pass
        # Granted just before the caller gave up: hand the token back.
        if waiter.done() and not waiter.cancelled() and waiter.exception() is None:
            self.tokens = min(float(self.capacity), self.tokens + 1)
            self._release_waiters()

    async def acquire(self) -> None:
        if not self._waiters and self.tokens >= 1:
            self.tokens -= 1
            return

        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            if self.max_wait_seconds is None:
                await waiter
            else:
                await asyncio.wait_for(waiter, self.max_wait_seconds)
        except asyncio.TimeoutError:
            self._discard(waiter)
            logger.warning(f"Rate limiter wait exceeded {self.max_wait_seconds}s")
            raise UpstreamUnavailable(
                "rate limiter",
                f"Timed out after {self.max_wait_seconds}s waiting for an outbound call slot",
            )
        except asyncio.CancelledError:
            self._discard(waiter)
            raise


class RetryPolicy:
    """
    Bounded retry with exponential backoff: after failed attempt n the
    caller waits 2**n seconds. Only UpstreamUnavailable is retried; the last
    error is re-raised once ``attempts`` are used up.
    """

    def __init__(
        self,
        attempts: int = 3,
        max_backoff_seconds: float = 60,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.attempts = attempts
        self.max_backoff_seconds = max_backoff_seconds
        self._sleep = sleep

    async def call(self, operation: Callable[[], Awaitable[T]]) -> T:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.attempts),
            wait=wait_exponential(multiplier=2, max=self.max_backoff_seconds),
            retry=retry_if_exception_type(UpstreamUnavailable),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            sleep=self._sleep,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                result = await operation()
        return result


class ThrottledExecutor:
    """Takes one token from the limiter, then runs the operation under the retry policy."""

    def __init__(self, retry_policy: RetryPolicy, limiter: TokenBucket | None = None):
        self.retry_policy = retry_policy
        self.limiter = limiter

    async def run(self, operation: Callable[[], Awaitable[T]]) -> T:
        if self.limiter is not None:
            await self.limiter.acquire()
        return await self.retry_policy.call(operation)
