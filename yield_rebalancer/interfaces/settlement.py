"""Settlement network client protocol."""
from typing import Mapping, Protocol


class SettlementNetworkClient(Protocol):
    """Abstract interface for the zero-fee settlement network.

    Amounts are integer minimum units of the asset.
    """

    async def connect(self) -> None: ...

    async def authenticate(self) -> None: ...

    async def disconnect(self) -> None: ...

    def get_address(self) -> str | None: ...

    async def get_ledger_balance(self, asset: str) -> int: ...

    async def get_ledger_balances(self) -> Mapping[str, int]: ...

    async def transfer(self, destination: str, asset: str, amount: int) -> str | None:
        """Submit a transfer and return its receipt id (``None`` is a failure)."""
        ...
