"""Valuation of allocation holdings through exchange rates and price sources."""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING

from loguru import logger

from slicer.core.exceptions import PriceUnavailableError
from slicer.core.models import BPS_DENOMINATOR, RATE_SCALE, Allocation, PriceReading

if TYPE_CHECKING:
    from slicer.collaborators.base import PriceSource
    from slicer.portfolio.registry import AllocationEntry, AllocationRegistry


@dataclass(frozen=True)
class AllocationValuation:
    """Valuation of one allocation at a point in time.

    Attributes:
        allocation: The allocation valued
        wrapper_balance: Wrapper shares held by the portfolio
        underlying_amount: Underlying those shares redeem for
        price: Price reading used (None when the balance was zero)
        current_value: Value of the holding
        target_value: total_value * target_percentage // 10000
    """

    allocation: Allocation
    wrapper_balance: int
    underlying_amount: int
    price: PriceReading | None
    current_value: int
    target_value: int = 0

    @property
    def delta(self) -> int:
        """Signed distance from target (positive = overweight)."""
        return self.current_value - self.target_value


@dataclass(frozen=True)
class ValuationSnapshot:
    """Valuation of the whole portfolio, recomputed on every call."""

    total_value: int
    entries: list[AllocationValuation]

    def weight_bps(self, wrapper: str) -> int:
        """Current share of total value held by an allocation, in bps."""
        if self.total_value == 0:
            return 0
        for e in self.entries:
            if e.allocation.wrapper == wrapper:
                return e.current_value * BPS_DENOMINATOR // self.total_value
        return 0

    def weight_pct(self, wrapper: str) -> Decimal:
        if self.total_value == 0:
            return Decimal(0)
        for e in self.entries:
            if e.allocation.wrapper == wrapper:
                return Decimal(e.current_value * 100) / Decimal(self.total_value)
        return Decimal(0)


class Valuator:
    """
    Converts wrapper holdings into a common value unit.

    value = balance * exchange_rate / 10**18 * price / price_scale

    Price policy: a non-positive reading, a reading older than
    `max_price_age` seconds, or a failing price source aborts the
    valuation with PriceUnavailableError. No allocation is ever valued
    from a bad reading.
    """

    def __init__(
        self,
        registry: AllocationRegistry,
        holder: str,
        max_price_age: float = 0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize valuator.

        Args:
            registry: Allocations to value
            holder: Address whose wrapper balances are valued
            max_price_age: Maximum reading age in seconds (0 disables)
            clock: Time source for staleness checks
        """
        self.registry = registry
        self.holder = holder
        self.max_price_age = max_price_age
        self._clock = clock

    async def read_price(self, price_source: PriceSource) -> PriceReading:
        """Read a price and enforce the price policy."""
        try:
            reading = await price_source.latest_price()
        except Exception as e:
            raise PriceUnavailableError(price_source.address, str(e)) from e

        if reading.value <= 0:
            raise PriceUnavailableError(
                price_source.address, f"non-positive price {reading.value}"
            )
        if reading.scale <= 0:
            raise PriceUnavailableError(
                price_source.address, f"invalid scale {reading.scale}"
            )
        if self.max_price_age and reading.updated_at is not None:
            age = self._clock() - reading.updated_at
            if age > self.max_price_age:
                raise PriceUnavailableError(
                    price_source.address, f"stale price ({age:.0f}s old)"
                )
        return reading

    async def _value_entry(self, entry: AllocationEntry) -> AllocationValuation:
        balance = await entry.wrapper.balance_of(self.holder)
        if balance == 0:
            return AllocationValuation(entry.allocation, 0, 0, None, 0)

        rate = await entry.wrapper.exchange_rate()
        underlying = balance * rate // RATE_SCALE
        price = await self.read_price(entry.price_source)
        value = underlying * price.value // price.scale
        return AllocationValuation(entry.allocation, balance, underlying, price, value)

    async def value_of(self, allocation: Allocation | str) -> int:
        """Value of the portfolio's holding in one allocation."""
        wrapper = allocation if isinstance(allocation, str) else allocation.wrapper
        valuation = await self._value_entry(self.registry.entry(wrapper))
        return valuation.current_value

    async def total_value(self) -> int:
        """Sum of all allocation values (zero when there are none)."""
        total = 0
        for entry in self.registry:
            total += (await self._value_entry(entry)).current_value
        return total

    async def snapshot(self) -> ValuationSnapshot:
        """Value every allocation and attach its target value."""
        raw = [await self._value_entry(entry) for entry in self.registry]
        total = sum(v.current_value for v in raw)

        entries = [
            AllocationValuation(
                allocation=v.allocation,
                wrapper_balance=v.wrapper_balance,
                underlying_amount=v.underlying_amount,
                price=v.price,
                current_value=v.current_value,
                target_value=total * v.allocation.target_percentage // BPS_DENOMINATOR,
            )
            for v in raw
        ]

        logger.debug(f"Valuation snapshot: total={total} across {len(entries)} allocations")
        return ValuationSnapshot(total_value=total, entries=entries)
