"""Core domain models and types."""

from slicer.core.models import (
    BPS_DENOMINATOR,
    RATE_SCALE,
    ZERO_ADDRESS,
    Allocation,
    AllocationAdded,
    AllocationPercentageChanged,
    AllocationRemoved,
    Deposited,
    Direction,
    Event,
    PriceReading,
    Rebalanced,
    RebalanceSkipped,
    Withdrawn,
    is_zero_address,
    new_address,
)

__all__ = [
    "BPS_DENOMINATOR",
    "RATE_SCALE",
    "ZERO_ADDRESS",
    "Allocation",
    "AllocationAdded",
    "AllocationPercentageChanged",
    "AllocationRemoved",
    "Deposited",
    "Direction",
    "Event",
    "PriceReading",
    "Rebalanced",
    "RebalanceSkipped",
    "Withdrawn",
    "is_zero_address",
    "new_address",
]
