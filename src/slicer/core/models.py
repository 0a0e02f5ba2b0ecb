"""Core domain models and types."""

from __future__ import annotations

import hashlib
import itertools
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum

# Fixed-point and percentage constants
BPS_DENOMINATOR = 10_000
RATE_SCALE = 10**18
ZERO_ADDRESS = "0x" + "0" * 40


def is_zero_address(address: str | None) -> bool:
    """Check whether an address is the null identity."""
    if not address:
        return True
    return address.lower() == ZERO_ADDRESS


_address_counter = itertools.count(1)


def new_address(label: str = "") -> str:
    """Generate a fresh, unique address."""
    seed = f"{label}:{next(_address_counter)}".encode()
    return "0x" + hashlib.sha256(seed).hexdigest()[:40]


def bps_to_pct(bps: int) -> Decimal:
    """Convert basis points to a display percentage (4000 -> 40.00)."""
    return (Decimal(bps) / Decimal(100)).quantize(Decimal("0.01"))


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Direction(str, Enum):
    """Side of a rebalance action."""

    SHED = "shed"
    ACQUIRE = "acquire"
    HOLD = "hold"


@dataclass(frozen=True)
class Allocation:
    """Target allocation for a wrapper asset.

    Attributes:
        wrapper: Yield wrapper address (unique key)
        asset: Underlying asset address of the wrapper
        price_source: Price source address for the underlying asset
        target_percentage: Target share of portfolio value in basis points
    """

    wrapper: str
    asset: str
    price_source: str
    target_percentage: int

    @classmethod
    def empty(cls) -> Allocation:
        """Zero-valued allocation returned for unknown keys."""
        return cls(ZERO_ADDRESS, ZERO_ADDRESS, ZERO_ADDRESS, 0)

    @property
    def is_empty(self) -> bool:
        return is_zero_address(self.wrapper)

    @property
    def target_pct(self) -> Decimal:
        return bps_to_pct(self.target_percentage)


@dataclass(frozen=True)
class PriceReading:
    """A single price source reading.

    `value / scale` is the price of one underlying unit in value units.
    """

    value: int
    scale: int
    updated_at: float | None = None


# Notifications


@dataclass(frozen=True)
class Event:
    """Base class for observable state transitions."""

    timestamp: datetime = field(default_factory=_utcnow, kw_only=True, compare=False)

    @property
    def name(self) -> str:
        return type(self).__name__


@dataclass(frozen=True)
class AllocationAdded(Event):
    wrapper: str
    asset: str
    price_source: str
    target_percentage: int


@dataclass(frozen=True)
class AllocationPercentageChanged(Event):
    wrapper: str
    old_percentage: int
    new_percentage: int


@dataclass(frozen=True)
class AllocationRemoved(Event):
    wrapper: str


@dataclass(frozen=True)
class Deposited(Event):
    wrapper: str
    sender: str
    amount: int
    shares: int = 0


@dataclass(frozen=True)
class Withdrawn(Event):
    """Per-allocation withdrawal.

    `amount` is in wrapper shares. `underlying_amount` is None when the
    wrapper was locked and the shares were delivered in kind.
    """

    wrapper: str
    receiver: str
    amount: int
    underlying_amount: int | None = None


@dataclass(frozen=True)
class Rebalanced(Event):
    wrapper: str
    direction: Direction
    amount_in: int
    amount_out: int


@dataclass(frozen=True)
class RebalanceSkipped(Event):
    wrapper: str
    direction: Direction
    reason: str
