"""Protocol interfaces for the agent's external collaborators."""
from .bridge import BridgeClient
from .deposit_adapter import OnChainDepositAdapter
from .notifier import NotificationSink, Notifier
from .portfolio_store import PortfolioStore
from .settlement import SettlementNetworkClient
from .yield_provider import YieldDataProvider

__all__ = [
    "BridgeClient",
    "NotificationSink",
    "Notifier",
    "OnChainDepositAdapter",
    "PortfolioStore",
    "SettlementNetworkClient",
    "YieldDataProvider",
]
