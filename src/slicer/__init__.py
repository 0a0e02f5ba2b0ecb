"""Slice: multi-asset yield portfolio with target allocations and rebalancing."""

__version__ = "0.1.0"
