"""Token-bucket rate limiter for outbound API calls.

Requests are queued and drained one at a time by a single task per limiter.
The bucket holds ``max(max_burst, 2 * rate)`` tokens and refills continuously
from elapsed clock time. A call that fails with a rate-limit signal is put
back at the front of the queue after a cooldown instead of failing its caller.
"""
from __future__ import annotations

import asyncio
import logging
import re
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

import aiohttp

from ..errors import ConfigError, RateLimitError

logger = logging.getLogger(__name__)

T = TypeVar("T")

_RATE_LIMIT_PATTERN = re.compile(r"rate[ -]?limit|too many requests|\b429\b")


def is_rate_limit_error(error: BaseException) -> bool:
    """Return True for an explicit 429 / "rate limit" signal."""
    if isinstance(error, RateLimitError):
        return True
    if isinstance(error, aiohttp.ClientResponseError) and error.status == 429:
        return True
    return _RATE_LIMIT_PATTERN.search(str(error).lower()) is not None


@dataclass
class _QueuedRequest:
    fn: Callable[[], Awaitable[Any]]
    future: asyncio.Future
    added_at: float


class RateLimiter:
    """Serialize calls through a token bucket."""

    def __init__(
        self,
        name: str,
        max_requests_per_second: float,
        max_burst: float | None = None,
        rate_limit_cooldown: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if max_requests_per_second <= 0:
            raise ConfigError(f"RateLimiter {name}: rate must be positive")
        self.name = name
        self._rate = float(max_requests_per_second)
        self._max_tokens = max(float(max_burst or 0), 2 * self._rate)
        self._tokens = self._max_tokens
        self._cooldown = rate_limit_cooldown
        self._clock = clock
        self._sleep = sleep
        self._last_refill = clock()
        self._queue: deque[_QueuedRequest] = deque()
        self._drain_task: asyncio.Task | None = None

    @property
    def capacity(self) -> float:
        return self._max_tokens

    @property
    def queue_length(self) -> int:
        return len(self._queue)

    def available_tokens(self) -> int:
        self._refill()
        return int(self._tokens)

    async def execute(self, fn: Callable[[], Awaitable[T]]) -> T:
        """Queue ``fn`` and wait for its result."""
        loop = asyncio.get_running_loop()
        request = _QueuedRequest(fn=fn, future=loop.create_future(), added_at=self._clock())
        self._queue.append(request)
        if self._drain_task is None or self._drain_task.done():
            self._drain_task = asyncio.create_task(self._process_queue())
        return await request.future

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._last_refill)
        self._tokens = min(self._max_tokens, self._tokens + elapsed * self._rate)
        self._last_refill = now

    async def _process_queue(self) -> None:
        while self._queue:
            self._refill()
            if self._tokens < 1:
                await self._sleep((1 - self._tokens) / self._rate)
                self._refill()

            request = self._queue.popleft()
            if request.future.done():
                # Caller went away (cancelled); don't spend a token on it.
                continue

            self._tokens -= 1
            waited = self._clock() - request.added_at
            if waited > 0.1:
                logger.debug(
                    "[RateLimit:%s] Request waited %.0fms in queue", self.name, waited * 1000
                )

            try:
                result = await request.fn()
            except Exception as e:
                if is_rate_limit_error(e):
                    logger.warning(
                        "[RateLimit:%s] Rate limit hit, backing off %.1fs",
                        self.name,
                        self._cooldown,
                    )
                    self._tokens = 0
                    await self._sleep(self._cooldown)
                    self._last_refill = self._clock()
                    self._queue.appendleft(request)
                    continue
                if not request.future.done():
                    request.future.set_exception(e)
            else:
                if not request.future.done():
                    request.future.set_result(result)


async def rate_limited_get(
    limiter: RateLimiter,
    session: aiohttp.ClientSession,
    url: str,
    **kwargs: Any,
) -> Any:
    """GET ``url`` through ``limiter`` and return the decoded JSON body.

    A 429 response is raised as ``RateLimitError`` inside the limiter, so the
    request is transparently re-queued.
    """

    async def _request() -> Any:
        async with session.get(url, **kwargs) as response:
            if response.status == 429:
                raise RateLimitError(f"Rate limit exceeded (429) for {url}")
            response.raise_for_status()
            return await response.json()

    return await limiter.execute(_request)
