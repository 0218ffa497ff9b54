"""Data models. Value records are frozen; TradeExecution mutates while in flight."""
from __future__ import annotations

import math
import re
import time
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Mapping

# Cash sitting in the settlement network is "idle": it earns nothing and is
# excluded from chain / protocol exposure accounting.
SETTLEMENT_PROTOCOL = "settlement-network"
SETTLEMENT_POOL = "state-channel"

_ADDRESS_RE = re.compile(r"0x[a-fA-F0-9]{40}")


def new_id() -> str:
    return uuid.uuid4().hex


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class ActionType(str, Enum):
    DEPOSIT = "deposit"
    REBALANCE = "rebalance"
    BRIDGE = "bridge"
    WITHDRAW = "withdraw"


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    EXECUTING = "executing"
    CONFIRMING = "confirming"
    COMPLETED = "completed"
    FAILED = "failed"


class AgentState(str, Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    ANALYZING = "analyzing"
    EXECUTING = "executing"
    PAUSED = "paused"
    ERROR = "error"
    STOPPED = "stopped"


class NotificationLevel(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _LEVEL_ORDER.index(self)


_LEVEL_ORDER = list(NotificationLevel)


class AgentEventType(str, Enum):
    STARTED = "started"
    STOPPED = "stopped"
    SCAN_COMPLETED = "scan_completed"
    OPPORTUNITY_FOUND = "opportunity_found"
    EXECUTION_STARTED = "execution_started"
    EXECUTION_COMPLETED = "execution_completed"
    ERROR = "error"
    PAUSED = "paused"
    RESUMED = "resumed"


# ---------------------------------------------------------------------------
# Portfolio
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Position:
    """An open allocation in one pool."""

    id: str
    chain_id: int
    chain_name: str
    protocol: str
    pool: str
    symbol: str
    balance: float
    entry_apy: float = 0.0
    current_apy: float = 0.0
    entry_timestamp: float = 0.0
    last_updated: float = 0.0
    unrealized_pnl: float = 0.0

    def __post_init__(self) -> None:
        if self.balance < 0:
            raise ValueError(f"Position {self.id} balance cannot be negative")

    @property
    def is_idle(self) -> bool:
        return self.protocol == SETTLEMENT_PROTOCOL or self.pool == SETTLEMENT_POOL


@dataclass(frozen=True)
class Portfolio:
    """Derived, read-only view over the current positions."""

    positions: tuple[Position, ...] = ()
    total_value: float = 0.0
    total_pnl: float = 0.0
    chain_exposure: Mapping[int, float] = field(default_factory=dict)
    protocol_exposure: Mapping[str, float] = field(default_factory=dict)
    last_updated: float = 0.0

    @classmethod
    def from_positions(
        cls, positions: tuple[Position, ...] | list[Position], now: float | None = None
    ) -> Portfolio:
        positions = tuple(positions)
        total_value = sum(p.balance for p in positions)
        total_pnl = sum(p.unrealized_pnl for p in positions)

        chain_exposure: dict[int, float] = {}
        protocol_exposure: dict[str, float] = {}
        if total_value > 0:
            for p in positions:
                if p.is_idle:
                    continue
                pct = p.balance / total_value
                chain_exposure[p.chain_id] = chain_exposure.get(p.chain_id, 0.0) + pct
                key = p.protocol.lower()
                protocol_exposure[key] = protocol_exposure.get(key, 0.0) + pct

        return cls(
            positions=positions,
            total_value=total_value,
            total_pnl=total_pnl,
            chain_exposure=chain_exposure,
            protocol_exposure=protocol_exposure,
            last_updated=time.time() if now is None else now,
        )

    @property
    def idle_balance(self) -> float:
        return sum(p.balance for p in self.positions if p.is_idle)

    @property
    def best_apy(self) -> float:
        if not self.positions:
            return 0.0
        return max(p.current_apy for p in self.positions)


@dataclass(frozen=True)
class TradeRecord:
    id: str
    timestamp: float
    action: ActionType
    amount: float
    cost: float = 0.0
    pnl: float = 0.0
    from_chain: int | None = None
    to_chain: int | None = None
    from_protocol: str | None = None
    to_protocol: str | None = None


@dataclass(frozen=True)
class PortfolioSnapshot:
    timestamp: float
    total_value: float
    total_pnl: float
    position_count: int
    top_position: Position | None = None


@dataclass(frozen=True)
class PnLSummary:
    total_pnl: float
    realized_pnl: float
    unrealized_pnl: float
    trading_costs: float


# ---------------------------------------------------------------------------
# Yield data (external, untrusted)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class YieldOpportunity:
    """A candidate pool as reported by a yield data provider."""

    pool: str
    protocol: str
    chain: str
    chain_id: int
    symbol: str
    tvl_usd: float
    apy: float
    apy_base: float = 0.0
    apy_reward: float = 0.0
    risk_score: float | None = None
    pool_address: str | None = None

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> YieldOpportunity:
        """Build from a provider payload (camelCase or snake_case keys)."""

        def _get(*keys: str, default: Any = None) -> Any:
            for key in keys:
                if raw.get(key) is not None:
                    return raw[key]
            return default

        risk = _get("riskScore", "risk_score")
        return cls(
            pool=str(_get("pool", default="")),
            protocol=str(_get("protocol", "project", default="")),
            chain=str(_get("chain", default="")),
            chain_id=int(_get("chainId", "chain_id", default=0)),
            symbol=str(_get("symbol", default="")),
            tvl_usd=float(_get("tvlUsd", "tvl_usd", default=0.0)),
            apy=float(_get("apy", default=0.0)),
            apy_base=float(_get("apyBase", "apy_base", default=0.0)),
            apy_reward=float(_get("apyReward", "apy_reward", default=0.0)),
            risk_score=float(risk) if risk is not None else None,
            pool_address=_get("poolAddress", "pool_address"),
        )

    @property
    def is_sane(self) -> bool:
        """Reject NaN / infinite / negative numbers before any filtering."""
        if not (math.isfinite(self.apy) and math.isfinite(self.tvl_usd)):
            return False
        if self.apy < 0 or self.tvl_usd < 0:
            return False
        if self.risk_score is not None and not math.isfinite(self.risk_score):
            return False
        return bool(self.protocol)


@dataclass(frozen=True)
class YieldScanResult:
    pools: tuple[YieldOpportunity, ...] = ()
    stats: Mapping[str, Any] = field(default_factory=dict)

    @property
    def pool_count(self) -> int:
        return int(self.stats.get("total_pools", len(self.pools)))


# ---------------------------------------------------------------------------
# Decisions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TargetPool:
    """Destination descriptor carried by an opportunity."""

    chain_id: int
    chain_name: str
    protocol: str
    pool: str
    symbol: str
    apy: float
    tvl: float
    risk_score: float
    pool_address: str | None = None

    @property
    def deposit_address(self) -> str | None:
        """Pool contract address, or one embedded in the pool id."""
        if self.pool_address:
            return self.pool_address
        match = _ADDRESS_RE.search(self.pool or "")
        return match.group(0) if match else None


@dataclass(frozen=True)
class RebalanceOpportunity:
    id: str
    from_position: Position | None
    to_pool: TargetPool
    amount: float
    apy_gain: float
    estimated_cost: float
    net_benefit: float
    annualized_benefit: float
    action: ActionType
    reason: str
    priority: int

    def with_amount(self, amount: float) -> RebalanceOpportunity:
        """Copy clamped to a smaller amount (budgeting never grows a leg)."""
        return replace(self, amount=amount)


MAX_PLAN_OPPORTUNITIES = 3


@dataclass(frozen=True)
class RebalancePlan:
    id: str
    timestamp: float
    opportunities: tuple[RebalanceOpportunity, ...]
    total_net_benefit: float
    estimated_execution_time: float
    risk_profile: str
    approved: bool = False

    def __post_init__(self) -> None:
        if len(self.opportunities) > MAX_PLAN_OPPORTUNITIES:
            raise ValueError(
                f"A plan holds at most {MAX_PLAN_OPPORTUNITIES} opportunities, "
                f"got {len(self.opportunities)}"
            )


@dataclass(frozen=True)
class Decision:
    should_act: bool
    reason: str
    plan: RebalancePlan | None = None
    next_check_time: float = 0.0


@dataclass(frozen=True)
class QuickScanResult:
    has_high_priority: bool
    best_new_apy: float
    reason: str


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BridgeQuote:
    """Quote from a bridge aggregator. Amounts are in token minimum units."""

    to_amount: int
    to_amount_min: int
    bridge_name: str
    estimated_gas: float = 0.0
    estimated_time: float = 60.0


@dataclass(frozen=True)
class DepositReceipt:
    tx_hash: str
    adapter_name: str


@dataclass
class TradeExecution:
    id: str
    opportunity_id: str
    action: ActionType
    from_chain: int
    to_chain: int
    amount: float
    start_time: float
    status: ExecutionStatus = ExecutionStatus.PENDING
    receipts: list[str] = field(default_factory=list)
    bridge_receipt: str | None = None
    end_time: float | None = None
    actual_cost: float = 0.0
    actual_received: float | None = None
    slippage: float | None = None
    error: str | None = None

    def fail(self, message: str, now: float) -> TradeExecution:
        self.status = ExecutionStatus.FAILED
        self.error = message
        self.end_time = now
        return self


@dataclass(frozen=True)
class ExecutionResult:
    success: bool
    executions: tuple[TradeExecution, ...] = ()
    total_cost: float = 0.0
    total_received: float = 0.0
    errors: tuple[str, ...] = ()

    @property
    def completed_count(self) -> int:
        return sum(1 for e in self.executions if e.status is ExecutionStatus.COMPLETED)


# ---------------------------------------------------------------------------
# Agent observability
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AgentEvent:
    type: AgentEventType
    timestamp: float
    data: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class AgentAction:
    id: str
    timestamp: float
    kind: str
    description: str
    duration: float
    result: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class AgentStatus:
    state: AgentState
    start_time: float
    last_scan_time: float
    last_action_time: float
    scan_count: int
    action_count: int
    total_pnl: float
    consecutive_errors: int
    portfolio: Portfolio | None
    next_scheduled_action: str
    uptime: float
