"""Rate limiting and retry primitives shared by every external call."""
from .rate_limiter import RateLimiter, is_rate_limit_error, rate_limited_get
from .retry import (
    DEFAULT_RETRY_POLICY,
    NETWORK_RETRY_POLICY,
    SESSION_RETRY_POLICY,
    TRADE_RETRY_POLICY,
    RetryOutcome,
    RetryPolicy,
    compute_delay,
    is_retryable_error,
    is_trade_retryable_error,
    with_retry,
    with_retry_result,
)

__all__ = [
    "DEFAULT_RETRY_POLICY",
    "NETWORK_RETRY_POLICY",
    "SESSION_RETRY_POLICY",
    "TRADE_RETRY_POLICY",
    "RateLimiter",
    "RetryOutcome",
    "RetryPolicy",
    "compute_delay",
    "is_rate_limit_error",
    "is_retryable_error",
    "is_trade_retryable_error",
    "rate_limited_get",
    "with_retry",
    "with_retry_result",
]
