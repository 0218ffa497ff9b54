"""Decision engine: turns portfolio state plus yield data into a rebalance plan.

The engine is a plain object with no I/O. It filters untrusted pool data
through the active risk profile, generates three kinds of opportunities
(idle deployment, same-chain rebalance, cross-chain bridge), scores and ranks
them, applies the rebalance cooldown and returns a capped ``RebalancePlan``.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Mapping

from ..config import (
    BRIDGE_FEE_PERCENT,
    BRIDGE_GAS_ESTIMATES_USD,
    DEFAULT_BRIDGE_GAS_USD,
    AgentConfig,
    RiskProfileConfig,
    chain_name,
    get_protocol_tier,
    get_risk_profile,
    is_protocol_allowed,
    merge_config,
)
from ..models import (
    ActionType,
    Decision,
    Portfolio,
    Position,
    QuickScanResult,
    RebalanceOpportunity,
    RebalancePlan,
    TargetPool,
    YieldOpportunity,
    new_id,
)

logger = logging.getLogger(__name__)

MAX_SIMULTANEOUS_REBALANCES = 3
HIGH_PRIORITY_THRESHOLD = 80
QUICK_SCAN_HIGH_PRIORITY_GAIN = 20.0
COST_AMORTIZATION_DAYS = 30
SAME_CHAIN_TRANSFER_COST_USD = 0.5
BRIDGE_EXECUTION_SECONDS = 15 * 60
SAME_CHAIN_EXECUTION_SECONDS = 30


def compute_allowed_amount(
    desired: float,
    max_single_trade: float,
    total_value: float,
    current_chain_exposure: float,
    current_protocol_exposure: float,
    max_chain_exposure: float,
    max_protocol_exposure: float,
) -> float:
    """Largest amount that respects the trade cap and both exposure headrooms."""
    if desired <= 0 or total_value <= 0:
        return 0.0
    chain_headroom = max(0.0, max_chain_exposure - current_chain_exposure) * total_value
    protocol_headroom = max(0.0, max_protocol_exposure - current_protocol_exposure) * total_value
    return max(0.0, min(desired, max_single_trade, chain_headroom, protocol_headroom))


def estimate_bridge_cost(amount: float, from_chain: int, to_chain: int) -> float:
    """Flat percentage fee plus per-chain gas on both sides, in USD."""
    fee = amount * (BRIDGE_FEE_PERCENT / 100)
    from_gas = BRIDGE_GAS_ESTIMATES_USD.get(from_chain, DEFAULT_BRIDGE_GAS_USD)
    to_gas = BRIDGE_GAS_ESTIMATES_USD.get(to_chain, DEFAULT_BRIDGE_GAS_USD)
    return fee + from_gas + to_gas


def calculate_risk_score(pool: YieldOpportunity) -> float:
    """Heuristic 1-10 risk score (higher is riskier) for unscored pools."""
    score = 5

    if pool.tvl_usd > 100_000_000:
        score -= 2
    elif pool.tvl_usd > 10_000_000:
        score -= 1
    elif pool.tvl_usd < 1_000_000:
        score += 2

    if pool.apy > 100:
        score += 3
    elif pool.apy > 50:
        score += 1
    elif pool.apy < 10:
        score -= 1

    # tier 1 = -1, tier 2 = 0, tier 3 = +1, unknown = +2
    score += get_protocol_tier(pool.protocol) - 2

    return float(max(1, min(10, score)))


def calculate_priority(apy_gain: float, estimated_cost: float, action: ActionType, protocol: str) -> int:
    priority = 50

    if apy_gain > 20:
        priority += 20
    elif apy_gain > 10:
        priority += 10

    if estimated_cost < 1:
        priority += 15
    elif estimated_cost < 5:
        priority += 5

    if action is ActionType.REBALANCE:
        priority += 10

    tier = get_protocol_tier(protocol)
    if tier == 1:
        priority += 15
    elif tier == 2:
        priority += 5

    return max(0, min(100, priority))


@dataclass(frozen=True)
class _FilterStage:
    name: str
    accepts: Callable[[YieldOpportunity], bool]
    empty_reason: str


def _filter_stages(profile: RiskProfileConfig) -> tuple[_FilterStage, ...]:
    return (
        _FilterStage(
            "sanity",
            lambda p: p.is_sane,
            "No pools passed data sanity checks",
        ),
        _FilterStage(
            "tvl",
            lambda p: p.tvl_usd >= profile.min_tvl,
            f"No pools with TVL >= ${profile.min_tvl:,.0f}",
        ),
        _FilterStage(
            "apy",
            lambda p: profile.min_apy <= p.apy <= profile.max_apy,
            f"No pools with APY between {profile.min_apy}% and {profile.max_apy}%",
        ),
        _FilterStage(
            "risk",
            lambda p: p.risk_score is None or p.risk_score <= profile.max_risk_score,
            f"No pools with risk score <= {profile.max_risk_score}",
        ),
        _FilterStage(
            "protocol",
            lambda p: is_protocol_allowed(p.protocol, profile),
            f"No pools from protocols allowed by the '{profile.name}' profile",
        ),
    )


def filter_pools(
    pools: Iterable[YieldOpportunity], profile: RiskProfileConfig
) -> tuple[list[YieldOpportunity], str | None]:
    """Apply the risk profile in stages.

    Returns the eligible pools and, when the result is empty, the reason
    naming the stage that emptied it.
    """
    remaining = list(pools)
    if not remaining:
        return [], "No pools available from yield data"

    for stage in _filter_stages(profile):
        remaining = [p for p in remaining if stage.accepts(p)]
        if not remaining:
            logger.debug("Filter stage '%s' removed every pool", stage.name)
            return [], stage.empty_reason
    return remaining, None


class DecisionEngine:
    """Decide whether and how to rebalance a portfolio."""

    def __init__(self, config: AgentConfig, clock: Callable[[], float] = time.time) -> None:
        self._config = config
        self._clock = clock
        self._last_rebalance_time: float | None = None
        self._last_analysis_time: float | None = None

    @property
    def config(self) -> AgentConfig:
        return self._config

    @property
    def last_rebalance_time(self) -> float | None:
        return self._last_rebalance_time

    @property
    def last_analysis_time(self) -> float | None:
        return self._last_analysis_time

    def update_config(self, overrides: Mapping[str, Any]) -> AgentConfig:
        self._config = merge_config(self._config, overrides)
        return self._config

    def mark_rebalance_executed(self) -> None:
        """Start the cooldown window."""
        self._last_rebalance_time = self._clock()

    # ------------------------------------------------------------------
    # Analysis
    # ------------------------------------------------------------------

    def _resolve_profile(self, risk_profile: str | RiskProfileConfig | None) -> RiskProfileConfig:
        if risk_profile is None:
            return get_risk_profile(self._config.risk_profile)
        if isinstance(risk_profile, RiskProfileConfig):
            return risk_profile
        return get_risk_profile(risk_profile)

    def analyze(
        self,
        portfolio: Portfolio,
        pools: Iterable[YieldOpportunity],
        risk_profile: str | RiskProfileConfig | None = None,
        idle_balance_override: float | None = None,
    ) -> Decision:
        now = self._clock()
        timing = self._config.timing
        thresholds = self._config.thresholds
        profile = self._resolve_profile(risk_profile)
        next_scan = now + timing.yield_scan_interval_seconds

        eligible, reason = filter_pools(pools, profile)
        if not eligible:
            return Decision(should_act=False, reason=reason or "No eligible pools", next_check_time=next_scan)

        opportunities = self._find_opportunities(portfolio, eligible, idle_balance_override)
        if not opportunities:
            return Decision(
                should_act=False,
                reason=(
                    "No opportunities exceed min_apy_differential "
                    f"({thresholds.min_apy_differential}%)"
                ),
                next_check_time=next_scan,
            )

        ranked = sorted(opportunities, key=lambda o: (-o.priority, -o.net_benefit))
        profitable = [o for o in ranked if o.net_benefit >= thresholds.min_net_benefit]
        if not profitable:
            return Decision(
                should_act=False,
                reason=(
                    f"No profitable opportunities found (best net: "
                    f"${ranked[0].net_benefit:.4f}/day, min_net_benefit: "
                    f"${thresholds.min_net_benefit}/day)"
                ),
                next_check_time=next_scan,
            )

        if self._last_rebalance_time is not None:
            since_last = now - self._last_rebalance_time
            if since_last < timing.full_analysis_interval_seconds:
                profitable = [o for o in profitable if o.priority >= HIGH_PRIORITY_THRESHOLD]
                if not profitable:
                    remaining = timing.full_analysis_interval_seconds - since_last
                    return Decision(
                        should_act=False,
                        reason=(
                            "Recently rebalanced. Next analysis in "
                            f"{round(remaining / 60)} minutes"
                        ),
                        next_check_time=self._last_rebalance_time
                        + timing.full_analysis_interval_seconds,
                    )
                logger.info("High-priority opportunity detected, bypassing cooldown")

        plan = self._create_plan(profitable, profile, now)
        self._last_analysis_time = now

        return Decision(
            should_act=True,
            plan=plan,
            reason=f"Found {len(plan.opportunities)} profitable rebalancing opportunities",
            next_check_time=now + timing.full_analysis_interval_seconds,
        )

    def _find_opportunities(
        self,
        portfolio: Portfolio,
        pools: list[YieldOpportunity],
        idle_balance_override: float | None,
    ) -> list[RebalanceOpportunity]:
        thresholds = self._config.thresholds
        total_value = portfolio.total_value
        max_single_trade = (
            total_value * self._config.safety.max_single_trade_percent / 100
            if total_value > 0
            else 0.0
        )
        chain_exposure = portfolio.chain_exposure
        protocol_exposure = portfolio.protocol_exposure

        def allowed(desired: float, pool: YieldOpportunity) -> float:
            return compute_allowed_amount(
                desired=desired,
                max_single_trade=max_single_trade,
                total_value=total_value,
                current_chain_exposure=chain_exposure.get(pool.chain_id, 0.0),
                current_protocol_exposure=protocol_exposure.get(pool.protocol.lower(), 0.0),
                max_chain_exposure=thresholds.max_chain_exposure,
                max_protocol_exposure=thresholds.max_protocol_exposure,
            )

        # Stable sort: equal APYs keep their input order, so the first-seen
        # pool wins ties.
        ranked = sorted(pools, key=lambda p: p.apy, reverse=True)
        best_overall = ranked[0]
        best_by_chain: dict[int, YieldOpportunity] = {}
        for pool in ranked:
            best_by_chain.setdefault(pool.chain_id, pool)

        opportunities: list[RebalanceOpportunity] = []

        idle_balance = (
            portfolio.idle_balance if idle_balance_override is None else idle_balance_override
        )
        if idle_balance > 0:
            target = self._pick_deposit_pool(ranked, portfolio)
            if target is not None:
                amount = allowed(idle_balance, target)
                if amount > 0:
                    opportunities.append(
                        self._create_opportunity(None, target, ActionType.DEPOSIT, target.apy, 0.0, amount)
                    )

        same_chain_cost = (
            0.0 if self._config.execution.prefer_settlement_network else SAME_CHAIN_TRANSFER_COST_USD
        )

        for position in portfolio.positions:
            if position.is_idle:
                continue

            best_here = best_by_chain.get(position.chain_id)
            if best_here is not None and best_here.apy > position.current_apy:
                apy_gain = best_here.apy - position.current_apy
                if apy_gain >= thresholds.min_apy_differential:
                    amount = min(position.balance, max_single_trade)
                    if best_here.protocol.lower() != position.protocol.lower():
                        headroom = max(
                            0.0,
                            thresholds.max_protocol_exposure
                            - protocol_exposure.get(best_here.protocol.lower(), 0.0),
                        ) * total_value
                        amount = min(amount, headroom)
                    if amount > 0:
                        opportunities.append(
                            self._create_opportunity(
                                position, best_here, ActionType.REBALANCE, apy_gain, same_chain_cost, amount
                            )
                        )

            if best_overall.chain_id != position.chain_id:
                apy_gain = best_overall.apy - position.current_apy
                if apy_gain >= thresholds.min_apy_differential * 2:
                    amount = allowed(position.balance, best_overall)
                    if amount > 0:
                        cost = estimate_bridge_cost(amount, position.chain_id, best_overall.chain_id)
                        opportunities.append(
                            self._create_opportunity(
                                position, best_overall, ActionType.BRIDGE, apy_gain, cost, amount
                            )
                        )

        return opportunities

    def _pick_deposit_pool(
        self, ranked: list[YieldOpportunity], portfolio: Portfolio
    ) -> YieldOpportunity | None:
        """First pool in APY order with strictly positive chain and protocol headroom."""
        thresholds = self._config.thresholds
        total_value = portfolio.total_value
        for pool in ranked:
            chain_headroom = max(
                0.0, thresholds.max_chain_exposure - portfolio.chain_exposure.get(pool.chain_id, 0.0)
            ) * total_value
            protocol_headroom = max(
                0.0,
                thresholds.max_protocol_exposure
                - portfolio.protocol_exposure.get(pool.protocol.lower(), 0.0),
            ) * total_value
            if chain_headroom > 0 and protocol_headroom > 0:
                return pool
        return None

    def _create_opportunity(
        self,
        from_position: Position | None,
        pool: YieldOpportunity,
        action: ActionType,
        apy_gain: float,
        estimated_cost: float,
        amount: float,
    ) -> RebalanceOpportunity:
        daily_benefit = amount * apy_gain / 100 / 365
        net_benefit = daily_benefit - estimated_cost / COST_AMORTIZATION_DAYS

        target = TargetPool(
            chain_id=pool.chain_id,
            chain_name=chain_name(pool.chain_id),
            protocol=pool.protocol,
            pool=pool.pool,
            symbol=pool.symbol,
            apy=pool.apy,
            tvl=pool.tvl_usd,
            risk_score=pool.risk_score if pool.risk_score else calculate_risk_score(pool),
            pool_address=pool.pool_address,
        )

        return RebalanceOpportunity(
            id=new_id(),
            from_position=from_position,
            to_pool=target,
            amount=amount,
            apy_gain=apy_gain,
            estimated_cost=estimated_cost,
            net_benefit=net_benefit,
            annualized_benefit=net_benefit * 365,
            action=action,
            reason=self._describe(from_position, target, apy_gain, action),
            priority=calculate_priority(apy_gain, estimated_cost, action, pool.protocol),
        )

    @staticmethod
    def _describe(
        from_position: Position | None, target: TargetPool, apy_gain: float, action: ActionType
    ) -> str:
        if from_position is None or action is ActionType.DEPOSIT:
            return (
                f"Deploy idle funds to {target.protocol} ({target.chain_name}) "
                f"for ~{apy_gain:.1f}% APY"
            )
        if action is ActionType.BRIDGE:
            return (
                f"Bridge from {from_position.protocol} ({from_position.chain_name}) to "
                f"{target.protocol} ({target.chain_name}) for +{apy_gain:.1f}% APY"
            )
        return f"Rebalance from {from_position.protocol} to {target.protocol} for +{apy_gain:.1f}% APY"

    def _create_plan(
        self, opportunities: list[RebalanceOpportunity], profile: RiskProfileConfig, now: float
    ) -> RebalancePlan:
        selected = tuple(opportunities[:MAX_SIMULTANEOUS_REBALANCES])
        estimated_time = sum(
            BRIDGE_EXECUTION_SECONDS if o.action is ActionType.BRIDGE else SAME_CHAIN_EXECUTION_SECONDS
            for o in selected
        )
        return RebalancePlan(
            id=new_id(),
            timestamp=now,
            opportunities=selected,
            total_net_benefit=sum(o.net_benefit for o in selected),
            estimated_execution_time=float(estimated_time),
            risk_profile=profile.name,
        )

    # ------------------------------------------------------------------
    # Quick scan
    # ------------------------------------------------------------------

    def quick_scan(
        self, pools: Iterable[YieldOpportunity], current_best_apy: float
    ) -> QuickScanResult:
        """Cheap check for an APY jump worth a full analysis."""
        eligible, _ = filter_pools(pools, get_risk_profile(self._config.risk_profile))
        if not eligible:
            return QuickScanResult(has_high_priority=False, best_new_apy=0.0, reason="No eligible pools")

        best = max(eligible, key=lambda p: p.apy)
        apy_diff = best.apy - current_best_apy
        high = apy_diff >= QUICK_SCAN_HIGH_PRIORITY_GAIN
        if high:
            reason = f"Significant opportunity: {best.protocol} @ {best.apy:.1f}% APY (+{apy_diff:.1f}%)"
        else:
            reason = f"Best available: {best.apy:.1f}% APY"
        return QuickScanResult(has_high_priority=high, best_new_apy=best.apy, reason=reason)
