"""Unit tests for retry policies, backoff and error classification."""
from __future__ import annotations

import asyncio

import aiohttp
import pytest

from yield_rebalancer.errors import (
    ConfigError,
    ExecutionError,
    RateLimitError,
    RetryExhaustedError,
)
from yield_rebalancer.resilience.retry import (
    NETWORK_RETRY_POLICY,
    TRADE_RETRY_POLICY,
    RetryPolicy,
    compute_delay,
    is_retryable_error,
    is_trade_retryable_error,
    with_retry,
    with_retry_result,
)


class Recorder:
    """Fake sleep that records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def failing(errors: list[BaseException], result: str = "ok"):
    """Async callable raising each of ``errors`` in turn, then returning ``result``."""
    calls = {"count": 0}

    async def fn() -> str:
        calls["count"] += 1
        if errors:
            raise errors.pop(0)
        return result

    fn.calls = calls
    return fn


FIXED = RetryPolicy(max_retries=3, initial_delay=1.0, max_delay=30.0, jitter=False)


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


class TestIsRetryableError:
    @pytest.mark.parametrize(
        "error",
        [
            RateLimitError("slow down"),
            asyncio.TimeoutError(),
            aiohttp.ClientConnectionError("reset"),
            RuntimeError("Connection reset by peer"),
            RuntimeError("503 Service Unavailable"),
            RuntimeError("something odd happened"),
        ],
    )
    def test_retryable(self, error: BaseException) -> None:
        assert is_retryable_error(error)

    @pytest.mark.parametrize(
        "error",
        [
            ConfigError("bad config"),
            ExecutionError("leg failed"),
            RuntimeError("Invalid signature"),
            RuntimeError("401 Unauthorized"),
            RuntimeError("pool not found"),
            RuntimeError("transaction rejected"),
        ],
    )
    def test_not_retryable(self, error: BaseException) -> None:
        assert not is_retryable_error(error)


class TestIsTradeRetryableError:
    @pytest.mark.parametrize("message", ["Insufficient funds", "balance too low"])
    def test_balance_errors_never_retried(self, message: str) -> None:
        assert not is_trade_retryable_error(RuntimeError(message))

    def test_falls_back_to_default(self) -> None:
        assert is_trade_retryable_error(RuntimeError("network timeout"))
        assert not is_trade_retryable_error(RuntimeError("403 forbidden"))


# ---------------------------------------------------------------------------
# Policy and delays
# ---------------------------------------------------------------------------


class TestRetryPolicy:
    def test_presets(self) -> None:
        assert NETWORK_RETRY_POLICY.max_retries == 5
        assert TRADE_RETRY_POLICY.initial_delay == 0.5
        assert TRADE_RETRY_POLICY.should_retry is is_trade_retryable_error

    @pytest.mark.parametrize(
        "kwargs",
        [{"max_retries": -1}, {"initial_delay": -1.0}, {"backoff_multiplier": 0.5}],
    )
    def test_invalid_values(self, kwargs: dict) -> None:
        with pytest.raises(ConfigError):
            RetryPolicy(**kwargs)


class TestComputeDelay:
    def test_exponential_growth(self) -> None:
        assert [compute_delay(FIXED, n) for n in range(4)] == [1.0, 2.0, 4.0, 8.0]

    def test_capped_at_max_delay(self) -> None:
        assert compute_delay(FIXED, 10) == 30.0

    def test_jitter_adds_up_to_a_quarter(self) -> None:
        policy = RetryPolicy(initial_delay=2.0, jitter=True)
        assert compute_delay(policy, 0, rand=lambda: 0.0) == 2.0
        assert compute_delay(policy, 0, rand=lambda: 1.0) == 2.5


# ---------------------------------------------------------------------------
# with_retry
# ---------------------------------------------------------------------------


class TestWithRetry:
    @pytest.mark.asyncio
    async def test_success_without_retry(self) -> None:
        sleep = Recorder()
        fn = failing([])
        assert await with_retry(fn, FIXED, sleep=sleep) == "ok"
        assert fn.calls["count"] == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_recovers_after_transient_failures(self) -> None:
        sleep = Recorder()
        fn = failing([RuntimeError("timeout"), RuntimeError("timeout")])

        assert await with_retry(fn, FIXED, sleep=sleep) == "ok"
        assert fn.calls["count"] == 3
        assert sleep.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_exhaustion(self) -> None:
        policy = RetryPolicy(max_retries=2, initial_delay=0.0, jitter=False)
        last = RuntimeError("still down")
        fn = failing([RuntimeError("down"), RuntimeError("down"), last])

        with pytest.raises(RetryExhaustedError) as exc_info:
            await with_retry(fn, policy, sleep=Recorder())

        assert exc_info.value.attempts == 3
        assert exc_info.value.last_error is last
        assert exc_info.value.__cause__ is last
        assert "3 attempts" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_refused_error_is_raised_unchanged(self) -> None:
        sleep = Recorder()
        fn = failing([RuntimeError("invalid amount")])

        with pytest.raises(RuntimeError, match="invalid amount"):
            await with_retry(fn, NETWORK_RETRY_POLICY, sleep=sleep)

        assert fn.calls["count"] == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_zero_retries_exhausts_immediately(self) -> None:
        fn = failing([RuntimeError("timeout")])
        with pytest.raises(RetryExhaustedError) as exc_info:
            await with_retry(fn, RetryPolicy(max_retries=0), sleep=Recorder())
        assert exc_info.value.attempts == 1

    @pytest.mark.asyncio
    async def test_on_retry_callback(self) -> None:
        seen: list[tuple[str, int, float]] = []
        fn = failing([RuntimeError("timeout")])

        await with_retry(
            fn,
            FIXED,
            sleep=Recorder(),
            on_retry=lambda error, attempt, delay: seen.append((str(error), attempt, delay)),
        )

        assert seen == [("timeout", 1, 1.0)]


class TestWithRetryResult:
    @pytest.mark.asyncio
    async def test_success_reports_attempts(self) -> None:
        fn = failing([RuntimeError("timeout")], result="done")
        outcome = await with_retry_result(fn, FIXED, sleep=Recorder())

        assert outcome.success
        assert outcome.result == "done"
        assert outcome.attempts == 2
        assert outcome.error is None

    @pytest.mark.asyncio
    async def test_exhaustion_is_reported(self) -> None:
        policy = RetryPolicy(max_retries=1, initial_delay=0.0, jitter=False)
        fn = failing([RuntimeError("x"), RuntimeError("y")])
        outcome = await with_retry_result(fn, policy, sleep=Recorder())

        assert not outcome.success
        assert outcome.attempts == 2
        assert isinstance(outcome.error, RetryExhaustedError)

    @pytest.mark.asyncio
    async def test_refused_error_is_reported(self) -> None:
        fn = failing([ConfigError("nope")])
        outcome = await with_retry_result(fn, NETWORK_RETRY_POLICY, sleep=Recorder())

        assert not outcome.success
        assert outcome.attempts == 1
        assert isinstance(outcome.error, ConfigError)
