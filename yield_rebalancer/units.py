"""Fixed-point amount helpers for the settlement boundary.

Portfolio and decision code works in decimal USD (``float``). Settlement
ledgers and bridge quotes work in integer minimum units of the asset
(``10 ** decimals`` units per whole token). Conversions only happen where a
collaborator is called, and outbound conversions always round down so a
transfer can never exceed the ledger balance it was sized against.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_FLOOR, Decimal

DEFAULT_DECIMALS = 6


def to_minor_units(amount: float, decimals: int = DEFAULT_DECIMALS) -> int:
    """Convert a decimal amount to minimum units, rounding toward zero.

    ``str(amount)`` is used so that binary float noise such as
    ``0.30000000000000004`` floors to the intended value.
    """
    if amount <= 0:
        return 0
    scaled = Decimal(str(amount)) * (Decimal(10) ** decimals)
    return int(scaled.to_integral_value(rounding=ROUND_FLOOR))


def from_minor_units(units: int, decimals: int = DEFAULT_DECIMALS) -> float:
    """Convert minimum units back to a decimal amount."""
    return float(Decimal(units) / (Decimal(10) ** decimals))


def format_minor_units(units: int, decimals: int = DEFAULT_DECIMALS) -> str:
    """Render minimum units as a fixed-point string, e.g. ``1.005000``."""
    sign = "-" if units < 0 else ""
    whole, frac = divmod(abs(units), 10**decimals)
    if decimals == 0:
        return f"{sign}{whole}"
    return f"{sign}{whole}.{frac:0{decimals}d}"


@dataclass(frozen=True)
class SpendBudget:
    """Remaining spendable ceiling, in minimum units.

    Each reservation returns a new budget; the ceiling only ever decreases.
    """

    remaining: int
    decimals: int = DEFAULT_DECIMALS

    def __post_init__(self) -> None:
        if self.remaining < 0:
            raise ValueError("SpendBudget.remaining cannot be negative")

    @classmethod
    def from_available(
        cls, available: int, safety_buffer: int, decimals: int = DEFAULT_DECIMALS
    ) -> SpendBudget:
        """Ceiling = available minus the safety buffer, floored at zero."""
        return cls(remaining=max(0, available - safety_buffer), decimals=decimals)

    def reserve(self, desired: int) -> tuple[int, SpendBudget]:
        """Grant ``min(desired, remaining)`` and return it with the new budget."""
        granted = max(0, min(desired, self.remaining))
        return granted, SpendBudget(self.remaining - granted, self.decimals)

    @property
    def remaining_amount(self) -> float:
        return from_minor_units(self.remaining, self.decimals)
