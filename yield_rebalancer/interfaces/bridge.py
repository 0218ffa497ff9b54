"""Bridge client protocol: cross-chain route quoting."""
from typing import Protocol

from ..models import BridgeQuote


class BridgeClient(Protocol):
    """Abstract interface for a bridge aggregator.

    ``amount`` is in token minimum units. ``None`` means no route exists,
    which is a reported failure and not a transient error.
    """

    async def get_quote(
        self,
        from_chain: int,
        to_chain: int,
        from_token: str,
        to_token: str,
        amount: int,
        user_address: str,
    ) -> BridgeQuote | None: ...
