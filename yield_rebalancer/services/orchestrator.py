"""Rebalancing agent: the state machine that owns the scan and analysis loops."""
from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from datetime import date, datetime, timezone
from typing import Any, Awaitable, Callable, Mapping

from ..config import AgentConfig, merge_config
from ..errors import AgentStateError
from ..interfaces import NotificationSink, PortfolioStore, YieldDataProvider
from ..models import (
    AgentAction,
    AgentEvent,
    AgentEventType,
    AgentState,
    AgentStatus,
    ExecutionResult,
    NotificationLevel,
    RebalanceOpportunity,
    YieldScanResult,
    new_id,
)
from ..resilience import NETWORK_RETRY_POLICY, RateLimiter, RetryPolicy, with_retry
from .decision_engine import DecisionEngine
from .portfolio import apy_key
from .trade_executor import TradeExecutor

logger = logging.getLogger(__name__)

MAX_SUBSCRIBERS = 64
MAX_ACTION_HISTORY = 500

# Consecutive failures are counted per cycle kind.
CYCLE_KINDS = ("scan", "analysis")

EventHandler = Callable[[AgentEvent], None]

# States a running cycle may not leave on its own.
_HELD_STATES = (AgentState.PAUSED, AgentState.STOPPED)


class RebalancingAgent:
    """Autonomous scan / analyze / execute loop.

    Two timer tasks drive the agent: a cheap yield scan and a full analysis.
    Each fires only while the agent is ``idle``. Cycles run inside
    ``asyncio.shield`` so ``stop()`` cancels the timers at once without
    aborting a plan that is already executing; anything that plan produces
    after the stop is logged and otherwise ignored.
    """

    def __init__(
        self,
        config: AgentConfig,
        yield_provider: YieldDataProvider,
        portfolio_store: PortfolioStore,
        decision_engine: DecisionEngine,
        trade_executor: TradeExecutor,
        notifier: NotificationSink | None = None,
        rate_limiter: RateLimiter | None = None,
        network_retry: RetryPolicy = NETWORK_RETRY_POLICY,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._config = config
        self._provider = yield_provider
        self._store = portfolio_store
        self._engine = decision_engine
        self._executor = trade_executor
        self._notifier = notifier
        self._rate_limiter = rate_limiter
        self._network_retry = network_retry
        self._clock = clock
        self._sleep = sleep

        self._state = AgentState.IDLE
        self._running = False
        self._start_time = 0.0
        self._last_scan_time = 0.0
        self._last_action_time = 0.0
        self._scan_count = 0
        self._action_count = 0
        self._consecutive_errors: dict[str, int] = {kind: 0 for kind in CYCLE_KINDS}
        self._total_pnl = 0.0

        self._handlers: list[EventHandler] = []
        self._actions: deque[AgentAction] = deque(maxlen=MAX_ACTION_HISTORY)
        self._timer_tasks: list[asyncio.Task] = []
        self._cycle_tasks: set[asyncio.Future] = set()
        self._analysis_lock = asyncio.Lock()

        self._loss_day: date | None = None
        self._loss_baseline = 0.0
        self._loss_costs = 0.0

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def state(self) -> AgentState:
        return self._state

    @property
    def config(self) -> AgentConfig:
        return self._config

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def action_history(self) -> tuple[AgentAction, ...]:
        return tuple(self._actions)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Connect, run an initial scan, then arm the scan and analysis timers."""
        if self._running or self._state not in (AgentState.IDLE, AgentState.STOPPED):
            raise AgentStateError(f"Cannot start agent in state: {self._state.value}")

        logger.info("Starting rebalancing agent (risk profile: %s)", self._config.risk_profile)
        self._state = AgentState.IDLE
        self._start_time = self._clock()
        self._reset_errors()

        try:
            await self._executor.connect()
            await self._run_scan()
        except Exception as e:
            self._state = AgentState.ERROR
            logger.error("Agent startup failed: %s", e)
            await self._notify(NotificationLevel.ERROR, "Agent Startup Failed", str(e))
            raise

        self._running = True
        self._enter(AgentState.IDLE)
        self._emit(AgentEventType.STARTED, risk_profile=self._config.risk_profile)
        await self._notify(
            NotificationLevel.SUCCESS,
            "Agent Started",
            "Autonomous yield rebalancing is now active",
            {"Risk Profile": self._config.risk_profile},
        )

        self._timer_tasks = [
            asyncio.create_task(
                self._timer_loop(
                    "scan", lambda: self._config.timing.yield_scan_interval_seconds, self._scan_cycle
                )
            ),
            asyncio.create_task(
                self._timer_loop(
                    "analysis",
                    lambda: self._config.timing.full_analysis_interval_seconds,
                    self._analysis_cycle,
                )
            ),
        ]
        logger.info(
            "Agent running: scan every %.0fs, full analysis every %.0fs",
            self._config.timing.yield_scan_interval_seconds,
            self._config.timing.full_analysis_interval_seconds,
        )

    async def stop(self, reason: str = "User requested") -> None:
        """Cancel both timers, disconnect and move to ``stopped``.

        A cycle already in flight is not aborted; its results are ignored.
        """
        logger.info("Stopping rebalancing agent: %s", reason)
        self._running = False
        self._state = AgentState.STOPPED

        timers, self._timer_tasks = self._timer_tasks, []
        for task in timers:
            task.cancel()
        if timers:
            await asyncio.gather(*timers, return_exceptions=True)

        await self._executor.disconnect()

        self._emit(AgentEventType.STOPPED, reason=reason)
        await self._notify(NotificationLevel.WARNING, "Agent Stopped", reason)

    async def pause(self, reason: str) -> None:
        if self._state is AgentState.STOPPED:
            raise AgentStateError("Cannot pause a stopped agent")
        if self._state is AgentState.PAUSED:
            return
        self._state = AgentState.PAUSED
        logger.warning("Agent paused: %s", reason)
        self._emit(AgentEventType.PAUSED, reason=reason)
        await self._notify(NotificationLevel.CRITICAL, "Agent Paused", reason)

    async def resume(self) -> None:
        if self._state is not AgentState.PAUSED:
            raise AgentStateError("Agent is not paused")
        self._state = AgentState.IDLE
        self._reset_errors()
        logger.info("Agent resumed")
        self._emit(AgentEventType.RESUMED)
        await self._notify(NotificationLevel.INFO, "Agent Resumed", "Automatic cycles re-enabled")

    async def run_once(self) -> list[AgentAction]:
        """Run one scan followed by one full analysis."""
        if self._state in _HELD_STATES:
            raise AgentStateError(f"Cannot run a cycle while {self._state.value}")

        actions: list[AgentAction] = []
        scan = await self._scan_cycle()
        if scan is None:
            return actions
        actions.append(scan)
        if self._state in _HELD_STATES:
            return actions
        analysis = await self._analysis_cycle()
        if analysis is not None:
            actions.append(analysis)
        return actions

    def update_config(self, overrides: Mapping[str, Any]) -> AgentConfig:
        """Merge ``overrides`` and push the result to the engine and executor."""
        self._config = merge_config(self._config, overrides)
        self._engine.update_config(overrides)
        self._executor.update_config(overrides)
        set_min_level = getattr(self._notifier, "set_min_level", None)
        if set_min_level is not None and "notifications" in overrides:
            set_min_level(self._config.notifications.min_level)
        return self._config

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def on_event(self, handler: EventHandler) -> Callable[[], None]:
        """Subscribe ``handler``; returns a callable that unsubscribes it."""
        if len(self._handlers) >= MAX_SUBSCRIBERS:
            raise ValueError(f"At most {MAX_SUBSCRIBERS} event subscribers are allowed")
        self._handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    def _emit(self, event_type: AgentEventType, **data: Any) -> None:
        event = AgentEvent(type=event_type, timestamp=self._clock(), data=data)
        for handler in list(self._handlers):
            try:
                handler(event)
            except Exception:
                logger.exception("Event handler failed for %s", event_type.value)

    async def _notify(
        self,
        level: NotificationLevel,
        title: str,
        message: str,
        data: Mapping[str, Any] | None = None,
    ) -> None:
        if self._notifier is None:
            return
        try:
            await self._notifier.notify(level, title, message, data)
        except Exception as e:
            logger.error("Notification '%s' failed: %s", title, e)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def status(self) -> AgentStatus:
        now = self._clock()
        return AgentStatus(
            state=self._state,
            start_time=self._start_time,
            last_scan_time=self._last_scan_time,
            last_action_time=self._last_action_time,
            scan_count=self._scan_count,
            action_count=self._action_count,
            total_pnl=self._total_pnl,
            consecutive_errors=max(self._consecutive_errors.values()),
            portfolio=self._store.get_current_portfolio(),
            next_scheduled_action=self._next_scheduled_action(now),
            uptime=now - self._start_time if self._start_time else 0.0,
        )

    def _next_scheduled_action(self, now: float) -> str:
        timing = self._config.timing
        next_scan = self._last_scan_time + timing.yield_scan_interval_seconds
        next_analysis = self._last_action_time + timing.full_analysis_interval_seconds
        if next_scan < next_analysis:
            return f"Quick scan in {max(0, round((next_scan - now) / 60))} minutes"
        return f"Full analysis in {max(0, round((next_analysis - now) / 60))} minutes"

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------

    async def _timer_loop(
        self,
        name: str,
        interval: Callable[[], float],
        cycle: Callable[[], Awaitable[Any]],
    ) -> None:
        while True:
            await self._sleep(interval())
            if self._state is not AgentState.IDLE:
                logger.debug("Skipping %s tick in state %s", name, self._state.value)
                continue
            task = asyncio.ensure_future(cycle())
            self._cycle_tasks.add(task)
            task.add_done_callback(self._cycle_tasks.discard)
            await asyncio.shield(task)

    async def _scan_cycle(self) -> AgentAction | None:
        try:
            action = await self._run_scan()
        except Exception as e:
            await self._handle_cycle_error(e, "scan")
            return None
        self._consecutive_errors["scan"] = 0
        return action

    async def _analysis_cycle(self) -> AgentAction | None:
        try:
            action = await self._run_analysis()
        except Exception as e:
            await self._handle_cycle_error(e, "analysis")
            return None
        if action is not None:
            self._consecutive_errors["analysis"] = 0
        return action

    # ------------------------------------------------------------------
    # Cycles
    # ------------------------------------------------------------------

    def _enter(self, state: AgentState) -> None:
        """Cycle-driven transition; never leaves ``paused`` or ``stopped``."""
        if self._state in _HELD_STATES:
            return
        self._state = state

    def _can_act(self) -> bool:
        return self._state not in _HELD_STATES

    def _record_action(
        self, kind: str, started: float, description: str, result: Mapping[str, Any]
    ) -> AgentAction:
        action = AgentAction(
            id=f"{kind}-{new_id()[:12]}",
            timestamp=started,
            kind=kind,
            description=description,
            duration=self._clock() - started,
            result=dict(result),
        )
        self._actions.append(action)
        return action

    async def _fetch_pools(self) -> YieldScanResult:
        async def attempt() -> YieldScanResult:
            if self._rate_limiter is None:
                return await self._provider.scan()
            return await self._rate_limiter.execute(self._provider.scan)

        return await with_retry(attempt, self._network_retry, sleep=self._sleep)

    async def _run_scan(self) -> AgentAction:
        started = self._clock()
        self._enter(AgentState.SCANNING)
        logger.info("Scanning yields")

        result = await self._fetch_pools()
        now = self._clock()
        self._last_scan_time = now
        self._scan_count += 1

        self._store.accrue_yield(now=now)
        self._store.update_apys({apy_key(p.chain_id, p.protocol, p.pool): p.apy for p in result.pools})
        self._emit(AgentEventType.SCAN_COMPLETED, pool_count=result.pool_count)

        portfolio = self._store.get_current_portfolio()
        current_best = portfolio.best_apy
        quick = self._engine.quick_scan(result.pools, current_best)
        self._enter(AgentState.IDLE)

        trigger = False
        if quick.has_high_priority:
            apy_diff = max(0.0, quick.best_new_apy - current_best)
            estimated_daily = portfolio.total_value * (apy_diff / 100) / 365
            min_net = self._config.thresholds.min_net_benefit
            if estimated_daily >= min_net:
                logger.info("High-priority opportunity detected (%s)", quick.reason)
                trigger = True
            else:
                logger.info(
                    "High APY signal not actionable: est $%.4f/day < min_net_benefit $%s/day",
                    estimated_daily,
                    min_net,
                )

        action = self._record_action(
            "scan",
            started,
            f"Scanned {result.pool_count} pools",
            {"pool_count": result.pool_count, "best_new_apy": quick.best_new_apy},
        )
        logger.info("Found %d pools in %.1fs", result.pool_count, action.duration)

        if trigger and self._can_act():
            await self._analysis_cycle()
        return action

    async def _run_analysis(self) -> AgentAction | None:
        if self._analysis_lock.locked():
            logger.info("Analysis already in progress; ignoring request")
            return None
        async with self._analysis_lock:
            return await self._analyze_and_execute()

    async def _analyze_and_execute(self) -> AgentAction:
        started = self._clock()
        self._enter(AgentState.ANALYZING)
        logger.info("Running full analysis")

        portfolio = self._store.get_current_portfolio()
        scan = await self._fetch_pools()
        decision = self._engine.analyze(portfolio, scan.pools)
        result: dict[str, Any] = {"should_act": decision.should_act, "reason": decision.reason}

        if decision.should_act and decision.plan is not None:
            plan = decision.plan
            logger.info("Rebalance plan %s: %d opportunities", plan.id, len(plan.opportunities))
            for opportunity in plan.opportunities:
                self._emit(AgentEventType.OPPORTUNITY_FOUND, opportunity=opportunity)
                await self._notify_opportunity(opportunity)

            if not self._can_act():
                logger.warning("Agent %s; discarding plan %s", self._state.value, plan.id)
                result["discarded"] = True
            else:
                self._enter(AgentState.EXECUTING)
                self._emit(AgentEventType.EXECUTION_STARTED, plan=plan)
                execution = await self._executor.execute_plan(plan)
                result["execution"] = execution

                if self._state is AgentState.STOPPED:
                    logger.warning(
                        "Plan %s finished after stop (%d/%d completed); result ignored",
                        plan.id,
                        execution.completed_count,
                        len(execution.executions),
                    )
                    return self._record_action("analyze", started, decision.reason, result)

                self._last_action_time = self._clock()
                self._action_count += 1
                self._engine.mark_rebalance_executed()
                self._total_pnl += execution.total_received - execution.total_cost

                self._emit(AgentEventType.EXECUTION_COMPLETED, result=execution)
                await self._notify_execution(execution)
                await self._check_daily_loss(execution, portfolio.total_value)
        else:
            logger.info("No action: %s", decision.reason)

        self._enter(AgentState.IDLE)
        return self._record_action("analyze", started, decision.reason, result)

    def _reset_errors(self) -> None:
        for kind in CYCLE_KINDS:
            self._consecutive_errors[kind] = 0

    async def _handle_cycle_error(self, error: Exception, context: str) -> None:
        """Count a failure against its own cycle kind; pause at the threshold."""
        if self._state is AgentState.STOPPED:
            logger.warning("%s cycle failed after stop: %s", context, error)
            return

        self._consecutive_errors[context] += 1
        count = self._consecutive_errors[context]
        self._enter(AgentState.ERROR)
        logger.error("%s cycle failed (%d consecutive): %s", context, count, error)
        self._emit(AgentEventType.ERROR, error=str(error), context=context, consecutive_errors=count)
        await self._notify(NotificationLevel.ERROR, "Error Occurred", str(error), {"Context": context})
        self._enter(AgentState.IDLE)

        if count >= self._config.safety.pause_on_consecutive_errors:
            await self.pause(f"{count} consecutive {context} errors")

    async def _check_daily_loss(self, execution: ExecutionResult, portfolio_value: float) -> None:
        """Pause once today's execution costs exceed the daily loss limit."""
        today = datetime.fromtimestamp(self._clock(), tz=timezone.utc).date()
        if today != self._loss_day:
            self._loss_day = today
            self._loss_baseline = portfolio_value
            self._loss_costs = 0.0
        self._loss_costs += execution.total_cost

        if self._loss_baseline <= 0:
            return
        loss_percent = self._loss_costs / self._loss_baseline * 100
        limit = self._config.safety.daily_loss_limit
        if loss_percent > limit:
            await self.pause(f"Daily loss limit reached: {loss_percent:.2f}% > {limit}%")

    # ------------------------------------------------------------------
    # Notification messages
    # ------------------------------------------------------------------

    async def _notify_opportunity(self, opportunity: RebalanceOpportunity) -> None:
        await self._notify(
            NotificationLevel.INFO,
            "New Opportunity Found",
            opportunity.reason,
            {
                "APY Gain": f"+{opportunity.apy_gain:.1f}%",
                "Amount": f"${opportunity.amount:,.2f}",
                "Net Benefit": f"${opportunity.net_benefit:.2f}/day",
                "Priority": f"{opportunity.priority}/100",
            },
        )

    async def _notify_execution(self, execution: ExecutionResult) -> None:
        data = {
            "Total Cost": f"${execution.total_cost:,.2f}",
            "Total Received": f"${execution.total_received:,.2f}",
        }
        if execution.errors:
            data["Errors"] = ", ".join(execution.errors)
        await self._notify(
            NotificationLevel.SUCCESS if execution.success else NotificationLevel.ERROR,
            "Rebalance Executed" if execution.success else "Rebalance Failed",
            f"{execution.completed_count}/{len(execution.executions)} trades completed",
            data,
        )
