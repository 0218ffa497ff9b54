"""Trade executor: runs a rebalance plan against the live settlement balance.

Each opportunity is routed to one of three paths:

* ``bridge`` actions get a cross-chain quote from the bridge client. Success
  is recorded once the quote is accepted; settlement of the bridged funds is
  not awaited.
* other actions whose target exposes a deposit address go to the on-chain
  deposit adapter when it accepts the pool;
* everything else is a settlement-network transfer.

A failed leg is recorded and the loop moves on to the next one.
"""
from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping, TypeVar

from ..config import USDC_ADDRESSES, AgentConfig, merge_config
from ..errors import (
    ExecutionError,
    InsufficientBalanceError,
    MissingReceiptError,
    NoRouteError,
    SettlementNotConnectedError,
)
from ..interfaces import (
    BridgeClient,
    OnChainDepositAdapter,
    PortfolioStore,
    SettlementNetworkClient,
)
from ..models import (
    ActionType,
    ExecutionResult,
    ExecutionStatus,
    RebalanceOpportunity,
    RebalancePlan,
    TradeExecution,
    new_id,
)
from ..resilience import (
    NETWORK_RETRY_POLICY,
    SESSION_RETRY_POLICY,
    TRADE_RETRY_POLICY,
    RateLimiter,
    RetryPolicy,
    with_retry,
)
from ..units import SpendBudget, format_minor_units, from_minor_units, to_minor_units

logger = logging.getLogger(__name__)

T = TypeVar("T")

BRIDGE_TOKEN_DECIMALS = 6


@dataclass(frozen=True)
class ExecutionSimulation:
    estimated_cost: float
    estimated_received: float
    steps: tuple[str, ...]


class TradeExecutor:
    """Execute rebalance plans through settlement, deposit and bridge collaborators."""

    def __init__(
        self,
        config: AgentConfig,
        portfolio_store: PortfolioStore,
        settlement: SettlementNetworkClient | None = None,
        bridge: BridgeClient | None = None,
        deposit_adapter: OnChainDepositAdapter | None = None,
        rate_limiter: RateLimiter | None = None,
        network_retry: RetryPolicy = NETWORK_RETRY_POLICY,
        trade_retry: RetryPolicy = TRADE_RETRY_POLICY,
        session_retry: RetryPolicy = SESSION_RETRY_POLICY,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._config = config
        self._store = portfolio_store
        self._settlement = settlement
        self._bridge = bridge
        self._deposit_adapter = deposit_adapter
        self._rate_limiter = rate_limiter
        self._network_retry = network_retry
        self._trade_retry = trade_retry
        self._session_retry = session_retry
        self._clock = clock
        self._sleep = sleep
        self._connected = False
        self._history: list[TradeExecution] = []

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    @property
    def is_connected(self) -> bool:
        return self._connected

    def is_ready(self) -> bool:
        return self._connected or not self._config.execution.prefer_settlement_network

    async def connect(self) -> None:
        """Connect and authenticate the settlement client."""
        if self._settlement is None:
            logger.warning("No settlement client configured; settlement transfers disabled")
            return
        await with_retry(self._settlement.connect, self._session_retry, sleep=self._sleep)
        await with_retry(self._settlement.authenticate, self._session_retry, sleep=self._sleep)
        self._connected = True
        logger.info("Connected to settlement network")

    async def disconnect(self) -> None:
        if self._settlement is None or not self._connected:
            return
        try:
            await self._settlement.disconnect()
        except Exception as e:
            logger.error("Settlement disconnect failed: %s", e)
        finally:
            self._connected = False

    def update_config(self, overrides: Mapping[str, Any]) -> AgentConfig:
        self._config = merge_config(self._config, overrides)
        return self._config

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _call(self, fn: Callable[[], Awaitable[T]], policy: RetryPolicy) -> T:
        """Run ``fn`` through the rate limiter (if any) under ``policy``."""

        async def attempt() -> T:
            if self._rate_limiter is None:
                return await fn()
            return await self._rate_limiter.execute(fn)

        return await with_retry(attempt, policy, sleep=self._sleep)

    @property
    def _decimals(self) -> int:
        return self._config.execution.settlement_decimals

    @property
    def _asset(self) -> str:
        return self._config.execution.settlement_asset

    async def _read_budget(self) -> SpendBudget | None:
        if self._settlement is None or not self._connected:
            return None
        settlement = self._settlement
        available = await self._call(
            lambda: settlement.get_ledger_balance(self._asset), self._network_retry
        )
        buffer = to_minor_units(self._config.execution.safety_buffer, self._decimals)
        budget = SpendBudget.from_available(available, buffer, self._decimals)
        logger.info(
            "Settlement balance %s %s, spendable after buffer %s",
            format_minor_units(available, self._decimals),
            self._asset,
            format_minor_units(budget.remaining, self._decimals),
        )
        return budget

    def _new_execution(self, opportunity: RebalanceOpportunity) -> TradeExecution:
        source = opportunity.from_position
        return TradeExecution(
            id=new_id(),
            opportunity_id=opportunity.id,
            action=opportunity.action,
            from_chain=source.chain_id if source else 0,
            to_chain=opportunity.to_pool.chain_id,
            amount=opportunity.amount,
            start_time=self._clock(),
        )

    # ------------------------------------------------------------------
    # Plan execution
    # ------------------------------------------------------------------

    async def execute_plan(self, plan: RebalancePlan) -> ExecutionResult:
        """Execute every opportunity in plan order.

        The spendable ceiling is read once and carried through the loop as an
        immutable ``SpendBudget``; each non-bridge leg is clamped to it and the
        granted amount is charged before the leg is dispatched.
        """
        logger.info("Executing rebalance plan %s with %d opportunities", plan.id, len(plan.opportunities))

        budget = await self._read_budget()
        executions: list[TradeExecution] = []
        errors: list[str] = []
        total_cost = 0.0
        total_received = 0.0

        for index, opportunity in enumerate(plan.opportunities, 1):
            logger.info("Executing %d/%d: %s", index, len(plan.opportunities), opportunity.reason)
            leg = opportunity

            if budget is not None and opportunity.action is not ActionType.BRIDGE:
                desired = to_minor_units(opportunity.amount, self._decimals)
                granted, budget = budget.reserve(desired)
                if granted <= 0:
                    error = InsufficientBalanceError(
                        f"Insufficient balance remaining for {self._asset}"
                    )
                    execution = self._new_execution(opportunity).fail(str(error), self._clock())
                    executions.append(execution)
                    errors.append(str(error))
                    logger.warning("Skipped %s: %s", opportunity.id, error)
                    continue
                leg = opportunity.with_amount(from_minor_units(granted, self._decimals))

            execution = await self._execute_opportunity(leg)
            executions.append(execution)

            if execution.status is ExecutionStatus.COMPLETED:
                total_cost += execution.actual_cost
                received = execution.actual_received if execution.actual_received is not None else execution.amount
                total_received += received
                self._apply_to_portfolio(opportunity, execution, received)
                logger.info(
                    "Completed %s: cost $%.2f, received $%.2f", execution.id, execution.actual_cost, received
                )
            else:
                errors.append(execution.error or "Unknown error")
                logger.error("Failed %s: %s", execution.id, execution.error)

        self._history.extend(executions)
        result = ExecutionResult(
            success=not errors,
            executions=tuple(executions),
            total_cost=total_cost,
            total_received=total_received,
            errors=tuple(errors),
        )
        logger.info("Execution complete: %d/%d successful", result.completed_count, len(executions))
        return result

    def _apply_to_portfolio(
        self, opportunity: RebalanceOpportunity, execution: TradeExecution, received: float
    ) -> None:
        source = opportunity.from_position
        target = opportunity.to_pool
        self._store.record_trade(
            action=opportunity.action,
            amount=execution.amount,
            cost=execution.actual_cost,
            position_id=source.id if source else None,
            from_chain=source.chain_id if source else None,
            to_chain=target.chain_id,
            from_protocol=source.protocol if source else None,
            to_protocol=target.protocol,
        )
        self._store.add_position(
            chain_id=target.chain_id,
            protocol=target.protocol,
            pool=target.pool,
            symbol=target.symbol,
            balance=received,
            apy=target.apy,
        )

    async def _execute_opportunity(self, opportunity: RebalanceOpportunity) -> TradeExecution:
        execution = self._new_execution(opportunity)
        execution.status = ExecutionStatus.EXECUTING
        try:
            if opportunity.action is ActionType.BRIDGE:
                await self._execute_bridge(execution, opportunity)
            else:
                adapter = await self._deposit_adapter_for(opportunity)
                if adapter is not None:
                    await self._execute_deposit(execution, opportunity, adapter)
                else:
                    await self._execute_settlement_transfer(execution, opportunity)
        except Exception as e:
            execution.fail(str(e), self._clock())
        return execution

    # ------------------------------------------------------------------
    # Execution paths
    # ------------------------------------------------------------------

    async def _deposit_adapter_for(
        self, opportunity: RebalanceOpportunity
    ) -> OnChainDepositAdapter | None:
        """Adapter that accepts the target pool, or None to use the settlement path."""
        adapter = self._deposit_adapter
        if adapter is None or opportunity.to_pool.deposit_address is None:
            return None
        pool = dataclasses.replace(opportunity.to_pool, pool_address=opportunity.to_pool.deposit_address)
        if await self._call(lambda: adapter.is_depositable(pool), self._network_retry):
            return adapter
        return None

    async def _execute_deposit(
        self,
        execution: TradeExecution,
        opportunity: RebalanceOpportunity,
        adapter: OnChainDepositAdapter,
    ) -> None:
        pool = dataclasses.replace(opportunity.to_pool, pool_address=opportunity.to_pool.deposit_address)
        logger.info("On-chain deposit of $%.2f into %s", opportunity.amount, pool.deposit_address)

        receipt = await self._call(
            lambda: adapter.deposit(pool, pool.chain_id, opportunity.amount), self._trade_retry
        )
        if not receipt.tx_hash:
            raise MissingReceiptError(f"Deposit adapter {receipt.adapter_name} returned no tx hash")

        execution.receipts.append(receipt.tx_hash)
        execution.actual_cost = 0.0
        execution.actual_received = opportunity.amount
        execution.status = ExecutionStatus.COMPLETED
        execution.end_time = self._clock()
        logger.info("On-chain deposit via %s: %s", receipt.adapter_name, receipt.tx_hash)

    async def _execute_settlement_transfer(
        self, execution: TradeExecution, opportunity: RebalanceOpportunity
    ) -> None:
        settlement = self._settlement
        if settlement is None or not self._connected:
            raise SettlementNotConnectedError("Settlement network not connected")

        recipient = self._config.execution.trade_recipient
        if not recipient:
            raise ExecutionError("No trade_recipient configured for settlement transfers")

        units = to_minor_units(opportunity.amount, self._decimals)
        if units <= 0:
            raise ExecutionError("Transfer amount too small after rounding")

        receipt_id = await self._call(
            lambda: settlement.transfer(recipient, self._asset, units), self._trade_retry
        )
        if not receipt_id:
            raise MissingReceiptError("No receipt id returned from settlement network")

        executed = from_minor_units(units, self._decimals)
        execution.receipts.append(f"SN-{receipt_id}")
        execution.amount = executed
        execution.actual_cost = 0.0
        execution.actual_received = executed
        execution.status = ExecutionStatus.COMPLETED
        execution.end_time = self._clock()
        logger.info("Settlement transfer %s confirmed (%s %s)", receipt_id, format_minor_units(units, self._decimals), self._asset)

    async def _execute_bridge(
        self, execution: TradeExecution, opportunity: RebalanceOpportunity
    ) -> None:
        from_chain, to_chain = execution.from_chain, execution.to_chain
        from_token = USDC_ADDRESSES.get(from_chain)
        to_token = USDC_ADDRESSES.get(to_chain)
        if not from_token or not to_token:
            raise NoRouteError(f"Missing USDC mapping for bridge ({from_chain} -> {to_chain})")

        bridge = self._bridge
        if bridge is None:
            raise NoRouteError("No bridge client configured")

        user_address = self._settlement.get_address() if self._settlement is not None else None
        if not user_address:
            raise ExecutionError("Settlement address not available for bridge quote")

        amount_units = to_minor_units(opportunity.amount, BRIDGE_TOKEN_DECIMALS)
        logger.info("Requesting bridge quote %d -> %d for $%.2f", from_chain, to_chain, opportunity.amount)
        quote = await self._call(
            lambda: bridge.get_quote(from_chain, to_chain, from_token, to_token, amount_units, user_address),
            self._network_retry,
        )
        if quote is None:
            raise NoRouteError("No bridge route available")

        execution.status = ExecutionStatus.CONFIRMING
        execution_cfg = self._config.execution

        fee = max(0.0, quote.estimated_gas)
        if opportunity.amount > 0:
            fee_percent = fee / opportunity.amount * 100
            if fee_percent > execution_cfg.max_bridge_fee_percent:
                raise ExecutionError(
                    f"Bridge fee {fee_percent:.2f}% exceeds max_bridge_fee_percent "
                    f"({execution_cfg.max_bridge_fee_percent}%)"
                )

        slippage = 0.0
        if quote.to_amount > 0:
            slippage = (quote.to_amount - quote.to_amount_min) / quote.to_amount * 100
            if slippage > execution_cfg.max_slippage:
                raise ExecutionError(
                    f"Quoted slippage {slippage:.2f}% exceeds max_slippage ({execution_cfg.max_slippage}%)"
                )

        execution.actual_cost = fee
        execution.actual_received = from_minor_units(quote.to_amount, BRIDGE_TOKEN_DECIMALS)
        execution.slippage = slippage
        execution.bridge_receipt = f"BRIDGE-{new_id()[:8]}"
        execution.receipts.append(execution.bridge_receipt)
        execution.status = ExecutionStatus.COMPLETED
        execution.end_time = self._clock()
        logger.info(
            "Bridge initiated via %s, fee $%.2f (settlement not awaited, ~%d minutes)",
            quote.bridge_name,
            fee,
            round(quote.estimated_time / 60),
        )

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    async def get_settlement_balances(self) -> dict[str, float]:
        """Ledger balances by asset, in decimal units. Empty when disconnected."""
        settlement = self._settlement
        if settlement is None or not self._connected:
            return {}
        balances = await self._call(settlement.get_ledger_balances, self._network_retry)
        return {asset: from_minor_units(int(amount), self._decimals) for asset, amount in balances.items()}

    @property
    def history(self) -> tuple[TradeExecution, ...]:
        return tuple(self._history)

    def get_stats(self) -> dict[str, float]:
        completed = [e for e in self._history if e.status is ExecutionStatus.COMPLETED]
        failed = [e for e in self._history if e.status is ExecutionStatus.FAILED]
        return {
            "total_executions": len(self._history),
            "successful_executions": len(completed),
            "failed_executions": len(failed),
            "total_cost": sum(e.actual_cost for e in completed),
            "total_volume": sum(e.amount for e in completed),
        }

    def simulate_execution(self, plan: RebalancePlan) -> ExecutionSimulation:
        """Dry run: estimated cost, received amount and a step list."""
        steps: list[str] = []
        cost = 0.0
        received = 0.0
        for opp in plan.opportunities:
            if opp.action is ActionType.BRIDGE:
                source = opp.from_position.chain_name if opp.from_position else "settlement"
                steps.append(f"Bridge ${opp.amount:.2f} from {source} to {opp.to_pool.chain_name}")
                cost += opp.estimated_cost
            elif self._deposit_adapter is not None and opp.to_pool.deposit_address:
                steps.append(f"Deposit ${opp.amount:.2f} into {opp.to_pool.protocol} ({opp.to_pool.chain_name})")
            else:
                steps.append(f"Transfer ${opp.amount:.2f} via settlement network (zero fee)")
            received += opp.amount - opp.estimated_cost
        return ExecutionSimulation(estimated_cost=cost, estimated_received=received, steps=tuple(steps))
