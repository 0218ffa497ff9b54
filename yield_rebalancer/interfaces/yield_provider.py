"""Yield data provider protocol."""
from typing import Protocol

from ..models import YieldScanResult


class YieldDataProvider(Protocol):
    """Abstract interface for fetching candidate pools.

    Results may be stale or empty; an empty result means "no action".
    """

    async def scan(self) -> YieldScanResult: ...
