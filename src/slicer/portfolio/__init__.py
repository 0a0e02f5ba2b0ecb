"""Portfolio allocation, valuation, share accounting and rebalancing."""

from slicer.portfolio.ledger import ShareLedger, ShareToken
from slicer.portfolio.rebalance import (
    RebalanceConfig,
    RebalanceEngine,
    RebalanceOrder,
    RebalancePlan,
    RebalanceResult,
)
from slicer.portfolio.registry import AllocationRegistry
from slicer.portfolio.slice import Slice
from slicer.portfolio.valuation import AllocationValuation, ValuationSnapshot, Valuator

__all__ = [
    "AllocationRegistry",
    "AllocationValuation",
    "RebalanceConfig",
    "RebalanceEngine",
    "RebalanceOrder",
    "RebalancePlan",
    "RebalanceResult",
    "ShareLedger",
    "ShareToken",
    "Slice",
    "ValuationSnapshot",
    "Valuator",
]
