"""Exception hierarchy for the rebalancing agent."""
from __future__ import annotations


class RebalancerError(Exception):
    """Base class for all agent errors."""


class ConfigError(RebalancerError, ValueError):
    """Invalid configuration value. Raised at construction time."""


class ExecutionError(RebalancerError, RuntimeError):
    """A single opportunity could not be executed."""


class InsufficientBalanceError(ExecutionError):
    """Spendable settlement balance is exhausted."""


class NoRouteError(ExecutionError):
    """No bridge route (or token mapping) exists for the requested move."""


class MissingReceiptError(ExecutionError):
    """A settlement call returned without a receipt identifier."""


class SettlementNotConnectedError(ExecutionError):
    """The settlement network client is absent or disconnected."""


class RateLimitError(RebalancerError, RuntimeError):
    """An upstream service signalled rate limiting (HTTP 429)."""


class RetryExhaustedError(RebalancerError, RuntimeError):
    """All retry attempts failed."""

    def __init__(
        self,
        message: str,
        attempts: int,
        elapsed: float,
        last_error: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.attempts = attempts
        self.elapsed = elapsed
        self.last_error = last_error


class AgentStateError(RebalancerError, RuntimeError):
    """Lifecycle operation not allowed in the current agent state."""
