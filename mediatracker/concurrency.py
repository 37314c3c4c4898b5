"""Concurrency primitives shared by the provider clients."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from contextlib import suppress
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

import httpx

from .config import Settings
from .errors import ProviderError, QuotaExceededError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class FairSemaphore:
    """Counting semaphore that wakes waiters strictly in arrival order.

    A released slot is handed directly to the oldest waiter, so a caller that
    arrives while others are queued can never overtake them.
    """

    def __init__(self, limit: int):
        if limit < 1:
            raise ValueError("Semaphore limit must be at least 1")
        self._limit = limit
        self._holders = 0
        self._waiters: deque[asyncio.Future[None]] = deque()

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def holders(self) -> int:
        return self._holders

    @property
    def waiting(self) -> int:
        return sum(1 for waiter in self._waiters if not waiter.done())

    async def acquire(self) -> None:
        if self._holders < self._limit and not self._waiters:
            self._holders += 1
            return

        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # The slot was handed over before the cancellation landed.
                self.release()
            else:
                with suppress(ValueError):
                    self._waiters.remove(waiter)
            raise

    def release(self) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                return
        if self._holders <= 0:
            raise RuntimeError("FairSemaphore released more times than acquired")
        self._holders -= 1

    async def __aenter__(self) -> "FairSemaphore":
        await self.acquire()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.release()


def is_retryable(exc: BaseException) -> bool:
    """Return whether ``exc`` is a rate-limit, server or transient failure."""

    if isinstance(exc, QuotaExceededError):
        return True
    if isinstance(exc, ProviderError):
        return exc.status_code is not None and exc.status_code >= 500
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return status == 429 or status >= 500
    if isinstance(exc, (httpx.TransportError, asyncio.TimeoutError)):
        return True
    return False


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff policy for outbound calls."""

    attempts: int = 3
    base_delay: float = 1.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(attempts=settings.retry_attempts, base_delay=settings.retry_base_delay)

    def delay_for(self, attempt: int) -> float:
        return self.base_delay * (2 ** (attempt - 1))

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        description: str = "request",
    ) -> T:
        """Await ``operation`` until it succeeds or a non-retryable error occurs."""

        attempt = 1
        while True:
            try:
                return await operation()
            except Exception as exc:
                if attempt >= self.attempts or not is_retryable(exc):
                    raise
                delay = self.delay_for(attempt)
                logger.warning(
                    "%s failed (%s); retrying in %.1fs (attempt %s/%s)",
                    description,
                    exc,
                    delay,
                    attempt,
                    self.attempts,
                )
                await asyncio.sleep(delay)
                attempt += 1


async def with_timeout(
    awaitable: Awaitable[T], seconds: float, default: T, *, description: str = "task"
) -> T:
    """Await ``awaitable`` for at most ``seconds``; return ``default`` on timeout."""

    try:
        return await asyncio.wait_for(awaitable, timeout=seconds)
    except asyncio.TimeoutError:
        logger.warning("%s timed out after %.1fs", description, seconds)
        return default


class QuotaNotifier:
    """Forwards quota errors to the user-visible layer at most once per window."""

    def __init__(
        self,
        window: float = 60.0,
        callback: Callable[[str, str], None] | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._window = window
        self._callback = callback
        self._clock = clock
        self._last_notice: float | None = None
        self.notices = 0
        self.suppressed = 0

    def notify(self, provider: str, message: str) -> bool:
        """Record a quota error; return ``True`` if it was surfaced."""

        now = self._clock()
        if self._last_notice is not None and now - self._last_notice < self._window:
            self.suppressed += 1
            logger.debug("Suppressed repeated quota notice for %s", provider)
            return False

        self._last_notice = now
        self.notices += 1
        logger.warning("Quota exceeded for %s: %s", provider, message)
        if self._callback is not None:
            try:
                self._callback(provider, message)
            except Exception:
                logger.exception("Quota notice callback failed")
        return True
