"""Portfolio store protocol: the single source of truth for allocations."""
from typing import Mapping, Protocol

from ..models import ActionType, Portfolio, Position, TradeRecord


class PortfolioStore(Protocol):
    def get_current_portfolio(self) -> Portfolio: ...

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
    ) -> TradeRecord: ...

    def add_position(
        self,
        chain_id: int,
        protocol: str,
        pool: str,
        symbol: str,
        balance: float,
        apy: float,
    ) -> Position: ...

    def accrue_yield(self, now: float | None = None, time_scale: float = 1.0) -> None: ...

    def update_apys(self, apy_by_key: Mapping[str, float]) -> int: ...
