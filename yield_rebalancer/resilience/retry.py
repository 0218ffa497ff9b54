"""Retry with exponential backoff, jitter, and error classification."""
from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, TypeVar

import aiohttp

from ..errors import (
    ConfigError,
    ExecutionError,
    RateLimitError,
    RetryExhaustedError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

JITTER_FRACTION = 0.25

_NON_RETRYABLE_PATTERNS = (
    "invalid",
    "unauthorized",
    "401",
    "forbidden",
    "403",
    "not found",
    "404",
    "bad request",
    "400",
    "insufficient",
    "rejected",
)

_RETRYABLE_PATTERNS = (
    "timeout",
    "connection",
    "network",
    "econnrefused",
    "econnreset",
    "socket",
    "temporary",
    "unavailable",
    "service",
    "502",
    "503",
    "504",
    "rate limit",
    "429",
)


def is_retryable_error(error: BaseException, attempt: int = 0) -> bool:
    """Default classifier: transient network / 5xx / 429 errors are retried.

    Validation, auth and insufficient-funds shaped errors are not. Unknown
    errors are retried.
    """
    if isinstance(error, (ConfigError, ExecutionError)):
        return False
    if isinstance(
        error, (RateLimitError, asyncio.TimeoutError, aiohttp.ClientConnectionError)
    ):
        return True

    message = str(error).lower()
    if any(p in message for p in _NON_RETRYABLE_PATTERNS):
        return False
    if any(p in message for p in _RETRYABLE_PATTERNS):
        return True
    return True


def is_trade_retryable_error(error: BaseException, attempt: int = 0) -> bool:
    """Trade classifier: a balance shortfall is never retried."""
    message = str(error).lower()
    if "insufficient" in message or "balance" in message:
        return False
    return is_retryable_error(error, attempt)


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff settings. Delays are in seconds."""

    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    backoff_multiplier: float = 2.0
    jitter: bool = True
    should_retry: Callable[[BaseException, int], bool] | None = None

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ConfigError("max_retries must be >= 0")
        if self.initial_delay < 0 or self.max_delay < 0:
            raise ConfigError("retry delays must be >= 0")
        if self.backoff_multiplier < 1:
            raise ConfigError("backoff_multiplier must be >= 1")


DEFAULT_RETRY_POLICY = RetryPolicy()

NETWORK_RETRY_POLICY = RetryPolicy(
    max_retries=5,
    initial_delay=1.0,
    max_delay=30.0,
    should_retry=is_retryable_error,
)

TRADE_RETRY_POLICY = RetryPolicy(
    max_retries=3,
    initial_delay=0.5,
    max_delay=10.0,
    should_retry=is_trade_retryable_error,
)

SESSION_RETRY_POLICY = RetryPolicy(
    max_retries=5,
    initial_delay=2.0,
    max_delay=60.0,
    should_retry=is_retryable_error,
)


def compute_delay(
    policy: RetryPolicy, attempt: int, rand: Callable[[], float] = random.random
) -> float:
    """Delay before retry number ``attempt + 1`` (``attempt`` is zero-based)."""
    delay = min(policy.max_delay, policy.initial_delay * policy.backoff_multiplier**attempt)
    if policy.jitter:
        delay += rand() * delay * JITTER_FRACTION
    return delay


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy = DEFAULT_RETRY_POLICY,
    *,
    on_retry: Callable[[BaseException, int, float], None] | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    clock: Callable[[], float] = time.monotonic,
    rand: Callable[[], float] = random.random,
) -> T:
    """Await ``fn()`` and retry failures according to ``policy``.

    An error refused by ``policy.should_retry`` is re-raised unchanged. Running
    out of attempts raises ``RetryExhaustedError``.
    """
    start = clock()
    attempt = 0

    while True:
        try:
            return await fn()
        except Exception as e:
            if policy.should_retry is not None and not policy.should_retry(e, attempt):
                raise

            if attempt >= policy.max_retries:
                elapsed = clock() - start
                raise RetryExhaustedError(
                    f"Operation failed after {attempt + 1} attempts "
                    f"({elapsed:.2f}s): {e}",
                    attempts=attempt + 1,
                    elapsed=elapsed,
                    last_error=e,
                ) from e

            delay = compute_delay(policy, attempt, rand)
            logger.debug("Attempt %d failed (%s); retrying in %.2fs", attempt + 1, e, delay)
            if on_retry is not None:
                on_retry(e, attempt + 1, delay)
            await sleep(delay)
            attempt += 1


@dataclass(frozen=True)
class RetryOutcome(Generic[T]):
    success: bool
    attempts: int
    elapsed: float
    result: T | None = None
    error: BaseException | None = None


async def with_retry_result(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy = DEFAULT_RETRY_POLICY,
    **kwargs: Any,
) -> RetryOutcome[T]:
    """Like ``with_retry`` but report the outcome instead of raising."""
    clock: Callable[[], float] = kwargs.get("clock", time.monotonic)
    user_on_retry = kwargs.pop("on_retry", None)
    start = clock()
    retries = 0

    def _on_retry(error: BaseException, attempt: int, delay: float) -> None:
        nonlocal retries
        retries = attempt
        if user_on_retry is not None:
            user_on_retry(error, attempt, delay)

    try:
        result = await with_retry(fn, policy, on_retry=_on_retry, **kwargs)
    except RetryExhaustedError as e:
        return RetryOutcome(
            success=False, attempts=e.attempts, elapsed=clock() - start, error=e
        )
    except Exception as e:
        return RetryOutcome(
            success=False, attempts=retries + 1, elapsed=clock() - start, error=e
        )
    return RetryOutcome(
        success=True, attempts=retries + 1, elapsed=clock() - start, result=result
    )
