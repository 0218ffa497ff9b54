"""In-memory portfolio store: positions, trade history and snapshots."""
from __future__ import annotations

import dataclasses
import logging
import time
from typing import Any, Callable, Mapping

from ..config import chain_name
from ..models import (
    SETTLEMENT_POOL,
    SETTLEMENT_PROTOCOL,
    ActionType,
    PnLSummary,
    Portfolio,
    PortfolioSnapshot,
    Position,
    TradeRecord,
    new_id,
)

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60

_OUTFLOW_ACTIONS = (ActionType.WITHDRAW, ActionType.REBALANCE, ActionType.BRIDGE)


def apy_key(chain_id: int, protocol: str, pool: str) -> str:
    """Lookup key used by ``update_apys``."""
    return f"{chain_id}-{protocol}-{pool}".lower()


class InMemoryPortfolioStore:
    """Single source of truth for current allocations.

    Positions live in an insertion-ordered dict; every read builds a fresh
    ``Portfolio`` so callers never hold a stale view.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._positions: dict[str, Position] = {}
        self._trades: list[TradeRecord] = []
        self._snapshots: list[PortfolioSnapshot] = []

    # ------------------------------------------------------------------
    # Positions
    # ------------------------------------------------------------------

    def get_current_portfolio(self) -> Portfolio:
        return Portfolio.from_positions(tuple(self._positions.values()), now=self._clock())

    def add_position(
        self,
        chain_id: int,
        protocol: str,
        pool: str,
        symbol: str,
        balance: float,
        apy: float,
    ) -> Position:
        now = self._clock()
        position = Position(
            id=new_id(),
            chain_id=chain_id,
            chain_name=chain_name(chain_id),
            protocol=protocol,
            pool=pool,
            symbol=symbol,
            balance=balance,
            entry_apy=apy,
            current_apy=apy,
            entry_timestamp=now,
            last_updated=now,
        )
        self._positions[position.id] = position
        logger.debug(
            "Added position %s: %.2f %s in %s/%s", position.id, balance, symbol, protocol, pool
        )
        return position

    def get_position(self, position_id: str) -> Position | None:
        return self._positions.get(position_id)

    def update_position(self, position_id: str, **changes: Any) -> Position | None:
        position = self._positions.get(position_id)
        if position is None:
            return None
        changes.setdefault("last_updated", self._clock())
        updated = dataclasses.replace(position, **changes)
        self._positions[position_id] = updated
        return updated

    def remove_position(self, position_id: str) -> bool:
        return self._positions.pop(position_id, None) is not None

    def get_positions_by_chain(self, chain_id: int) -> list[Position]:
        return [p for p in self._positions.values() if p.chain_id == chain_id]

    def get_positions_by_protocol(self, protocol: str) -> list[Position]:
        needle = protocol.lower()
        return [p for p in self._positions.values() if needle in p.protocol.lower()]

    def clear(self) -> None:
        self._positions.clear()
        self._trades.clear()
        self._snapshots.clear()

    # ------------------------------------------------------------------
    # Trades
    # ------------------------------------------------------------------

    def record_trade(
        self,
        action: ActionType,
        amount: float,
        cost: float = 0.0,
        position_id: str | None = None,
        from_chain: int | None = None,
        to_chain: int | None = None,
        from_protocol: str | None = None,
        to_protocol: str | None = None,
        pnl: float = 0.0,
    ) -> TradeRecord:
        """Append a trade and apply it to the source position.

        Outflows (withdraw / rebalance / bridge) decrement the source and
        remove it at or below zero. A deposit tops up ``position_id`` when
        given; otherwise it is funded from idle settlement cash.
        """
        action = ActionType(action)
        record = TradeRecord(
            id=new_id(),
            timestamp=self._clock(),
            action=action,
            amount=amount,
            cost=cost,
            pnl=pnl,
            from_chain=from_chain,
            to_chain=to_chain,
            from_protocol=from_protocol,
            to_protocol=to_protocol,
        )
        self._trades.append(record)

        if position_id is not None:
            position = self._positions.get(position_id)
            if position is None:
                logger.warning("Trade %s references unknown position %s", record.id, position_id)
            elif action in _OUTFLOW_ACTIONS:
                self._apply_balance(position, position.balance - amount)
            else:
                self._apply_balance(position, position.balance + amount)
        elif action is ActionType.DEPOSIT:
            self._drain_idle(amount)

        return record

    def _apply_balance(self, position: Position, new_balance: float) -> None:
        if new_balance <= 0:
            self.remove_position(position.id)
        else:
            self.update_position(position.id, balance=new_balance)

    def _drain_idle(self, amount: float) -> None:
        remaining = amount
        for position in [p for p in self._positions.values() if p.is_idle]:
            if remaining <= 0:
                break
            take = min(position.balance, remaining)
            self._apply_balance(position, position.balance - take)
            remaining -= take
        if remaining > 1e-9:
            logger.debug("Deposit exceeded idle balance by %.6f", remaining)

    def get_trade_history(self, limit: int | None = None) -> list[TradeRecord]:
        """Most recent trades first."""
        trades = list(reversed(self._trades))
        return trades if limit is None else trades[:limit]

    # ------------------------------------------------------------------
    # Yield
    # ------------------------------------------------------------------

    def accrue_yield(self, now: float | None = None, time_scale: float = 1.0) -> None:
        """Accrue yield at each position's current APY since its last update."""
        now = self._clock() if now is None else now
        for position in list(self._positions.values()):
            if position.balance <= 0 or position.current_apy <= 0:
                continue
            elapsed_days = (now - position.last_updated) / SECONDS_PER_DAY
            if elapsed_days <= 0:
                continue
            accrued = position.balance * (position.current_apy / 100 / 365) * elapsed_days * time_scale
            self.update_position(
                position.id,
                unrealized_pnl=position.unrealized_pnl + accrued,
                last_updated=now,
            )

    def update_apys(self, apy_by_key: Mapping[str, float]) -> int:
        """Refresh ``current_apy`` from a ``apy_key`` -> APY mapping."""
        updated = 0
        for position in list(self._positions.values()):
            new_apy = apy_by_key.get(apy_key(position.chain_id, position.protocol, position.pool))
            if new_apy is not None and new_apy != position.current_apy:
                self.update_position(position.id, current_apy=new_apy)
                updated += 1
        return updated

    def sync_settlement_balances(
        self, balances: Mapping[str, float], chain_id: int = 0
    ) -> list[Position]:
        """Mirror settlement ledger balances (asset -> amount) as idle positions."""
        for position in [p for p in self._positions.values() if p.is_idle]:
            self.remove_position(position.id)

        synced = []
        for asset, amount in balances.items():
            if amount <= 0:
                continue
            synced.append(
                self.add_position(
                    chain_id=chain_id,
                    protocol=SETTLEMENT_PROTOCOL,
                    pool=SETTLEMENT_POOL,
                    symbol=asset,
                    balance=amount,
                    apy=0.0,
                )
            )
        return synced

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def take_snapshot(self) -> PortfolioSnapshot:
        portfolio = self.get_current_portfolio()
        top = max(portfolio.positions, key=lambda p: p.balance, default=None)
        snapshot = PortfolioSnapshot(
            timestamp=self._clock(),
            total_value=portfolio.total_value,
            total_pnl=portfolio.total_pnl,
            position_count=len(portfolio.positions),
            top_position=top,
        )
        self._snapshots.append(snapshot)
        return snapshot

    def get_snapshots(self, days_back: float = 7) -> list[PortfolioSnapshot]:
        since = self._clock() - days_back * SECONDS_PER_DAY
        return [s for s in self._snapshots if s.timestamp > since]

    def calculate_pnl(self) -> PnLSummary:
        realized = sum(t.pnl for t in self._trades)
        costs = sum(t.cost for t in self._trades)
        unrealized = self.get_current_portfolio().total_pnl
        return PnLSummary(
            total_pnl=realized + unrealized - costs,
            realized_pnl=realized,
            unrealized_pnl=unrealized,
            trading_costs=costs,
        )
