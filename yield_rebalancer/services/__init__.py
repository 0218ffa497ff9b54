"""Service modules"""
from .decision_engine import DecisionEngine
from .notifier import NotificationDispatcher, build_notification_dispatcher
from .orchestrator import RebalancingAgent
from .portfolio import InMemoryPortfolioStore
from .trade_executor import TradeExecutor

__all__ = [
    "DecisionEngine",
    "InMemoryPortfolioStore",
    "NotificationDispatcher",
    "RebalancingAgent",
    "TradeExecutor",
    "build_notification_dispatcher",
]
