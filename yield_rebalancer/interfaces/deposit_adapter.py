"""On-chain deposit adapter protocol."""
from typing import Protocol

from ..models import DepositReceipt, TargetPool


class OnChainDepositAdapter(Protocol):
    """Abstract interface for depositing directly into a pool contract."""

    async def is_depositable(self, pool: TargetPool) -> bool: ...

    async def deposit(
        self, pool: TargetPool, chain_id: int, amount_usd: float
    ) -> DepositReceipt: ...
