"""Ordered, uniquely-keyed registry of portfolio allocations."""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import TYPE_CHECKING

from loguru import logger

from slicer.core.exceptions import (
    ConfigurationError,
    DuplicateAllocationError,
    NotFoundError,
)
from slicer.core.models import (
    BPS_DENOMINATOR,
    ZERO_ADDRESS,
    Allocation,
    is_zero_address,
)

if TYPE_CHECKING:
    from collections.abc import Iterator

    from slicer.collaborators.base import PriceSource, YieldWrapper


@dataclass
class AllocationEntry:
    """Registered allocation together with its live collaborators."""

    allocation: Allocation
    wrapper: YieldWrapper
    price_source: PriceSource


def _check_percentage(pct: int, message: str) -> None:
    if not 0 < pct < BPS_DENOMINATOR:
        raise ConfigurationError(f"{message}: {pct}")


class AllocationRegistry:
    """
    Allocations kept in insertion order and indexed by wrapper address.

    Backed by an append-only list plus an address -> index map. Removal
    swaps the last entry into the removed slot and fixes its index, so
    order is only guaranteed among allocations that were never moved.

    Invariants:
    - wrapper addresses are unique
    - every target percentage is strictly between 0 and 10000
    - the sum of target percentages never exceeds 10000
    """

    def __init__(self, max_allocations: int = 10) -> None:
        self.max_allocations = max_allocations
        self._entries: list[AllocationEntry] = []
        self._index: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, wrapper: object) -> bool:
        return wrapper in self._index

    def __iter__(self) -> Iterator[AllocationEntry]:
        return iter(list(self._entries))

    @property
    def total_percentage(self) -> int:
        return sum(e.allocation.target_percentage for e in self._entries)

    def add(
        self,
        wrapper: YieldWrapper | None,
        price_source: PriceSource | None,
        pct: int,
    ) -> Allocation:
        """Register a new allocation.

        Raises:
            ConfigurationError: Null wrapper/price source, bad percentage,
                oversubscribed total, or too many allocations
            DuplicateAllocationError: Wrapper already registered
        """
        if wrapper is None or is_zero_address(wrapper.address):
            raise ConfigurationError("Invalid aToken address")
        if price_source is None or is_zero_address(price_source.address):
            raise ConfigurationError("Invalid price feed address")
        _check_percentage(pct, "Invalid allocation percentage")
        if wrapper.address in self._index:
            raise DuplicateAllocationError(wrapper.address)
        if len(self._entries) >= self.max_allocations:
            raise ConfigurationError(
                f"Allocation limit reached ({self.max_allocations})"
            )
        if self.total_percentage + pct > BPS_DENOMINATOR:
            raise ConfigurationError("Total allocation exceeds 100%")

        allocation = Allocation(
            wrapper=wrapper.address,
            asset=wrapper.asset.address,
            price_source=price_source.address,
            target_percentage=pct,
        )
        self._index[wrapper.address] = len(self._entries)
        self._entries.append(AllocationEntry(allocation, wrapper, price_source))

        logger.info(f"Allocation added: {wrapper.symbol} -> {allocation.target_pct}%")
        return allocation

    def set_percentage(self, wrapper: str, pct: int) -> tuple[int, int]:
        """Change the target percentage of an allocation.

        The new total across all allocations must stay within 10000.

        Returns:
            (old_percentage, new_percentage)
        """
        entry = self.entry(wrapper)
        _check_percentage(pct, "Invalid percentage")

        old = entry.allocation.target_percentage
        if self.total_percentage - old + pct > BPS_DENOMINATOR:
            raise ConfigurationError("Total allocation exceeds 100%")

        entry.allocation = replace(entry.allocation, target_percentage=pct)
        logger.info(f"Allocation {wrapper} percentage changed {old} -> {pct} bps")
        return old, pct

    def remove(self, wrapper: str) -> Allocation:
        """Remove an allocation (swap-with-last-and-pop)."""
        if wrapper not in self._index:
            raise NotFoundError(wrapper)

        idx = self._index.pop(wrapper)
        removed = self._entries[idx]
        last = self._entries.pop()
        if last is not removed:
            self._entries[idx] = last
            self._index[last.allocation.wrapper] = idx

        logger.info(f"Allocation removed: {wrapper}")
        return removed.allocation

    def entry(self, wrapper: str) -> AllocationEntry:
        if wrapper not in self._index:
            raise NotFoundError(wrapper)
        return self._entries[self._index[wrapper]]

    def get(self, wrapper: str) -> Allocation:
        """Get allocation for a wrapper; empty allocation if unknown."""
        if wrapper not in self._index:
            return Allocation.empty()
        return self._entries[self._index[wrapper]].allocation

    def list(self) -> list[Allocation]:
        """All allocations in registry order."""
        return [e.allocation for e in self._entries]

    def price_feed(self, asset: str) -> str:
        """Price source address tracking an underlying asset."""
        for e in self._entries:
            if e.allocation.asset == asset:
                return e.allocation.price_source
        return ZERO_ADDRESS

    def price_source(self, asset: str) -> PriceSource:
        """Live price source tracking an underlying asset."""
        for e in self._entries:
            if e.allocation.asset == asset:
                return e.price_source
        raise NotFoundError(asset)
