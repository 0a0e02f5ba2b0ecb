"""Slice: a multi-asset portfolio of yield wrappers with target allocations."""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from contextvars import ContextVar
from typing import TYPE_CHECKING

from loguru import logger

from slicer.config.settings import Settings, get_settings
from slicer.core.exceptions import ConfigurationError, ReentrancyError, UnauthorizedError
from slicer.core.models import (
    Allocation,
    AllocationAdded,
    AllocationPercentageChanged,
    AllocationRemoved,
    PriceReading,
    Withdrawn,
    new_address,
)
from slicer.notifications.events import EventBus
from slicer.portfolio.calls import ExternalCalls
from slicer.portfolio.ledger import ShareLedger, ShareToken
from slicer.portfolio.rebalance import (
    RebalanceConfig,
    RebalanceEngine,
    RebalancePlan,
    RebalanceResult,
)
from slicer.portfolio.registry import AllocationRegistry
from slicer.portfolio.valuation import ValuationSnapshot, Valuator

if TYPE_CHECKING:
    from slicer.auth.permit import Authorization, DepositRequest
    from slicer.collaborators.base import (
        FungibleToken,
        PriceSource,
        SwapVenue,
        YieldWrapper,
    )

# Portfolios with a public call in flight in the current context
_active_calls: ContextVar[frozenset[int]] = ContextVar("slice_active_calls", default=frozenset())


class Slice:
    """
    Portfolio holding several yield wrappers at target percentages.

    Every public call runs as one indivisible step: calls from different
    actors are serialized by a lock, and a call re-entering the portfolio
    from a collaborator while another call is in flight is rejected with
    ReentrancyError.

    Example:
        slice_ = Slice(owner, venue, usdc, name="BuildingSlice", symbol="sBLD")
        await slice_.add_allocation(owner, wrapper_a, feed_a, 4000)
        await slice_.add_allocation(owner, wrapper_b, feed_b, 6000)

        await slice_.deposit(wrapper_a.address, 50 * 10**12, sender=user)
        result = await slice_.rebalance()
    """

    def __init__(
        self,
        owner: str,
        swap_venue: SwapVenue,
        base_token: FungibleToken,
        name: str = "Slice",
        symbol: str = "sTOKEN",
        metadata_uri: str = "",
        address: str | None = None,
        settings: Settings | None = None,
        config: RebalanceConfig | None = None,
        base_price_source: PriceSource | None = None,
        events: EventBus | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize a slice.

        Args:
            owner: Address allowed to manage allocations
            swap_venue: Venue used for rebalancing swaps
            base_token: Intermediate currency swaps route through
            name: Share token name
            symbol: Share token symbol
            metadata_uri: Descriptive metadata location
            address: Portfolio address. Generated if not provided.
            settings: Settings instance. Uses cached settings if not provided.
            config: Rebalance configuration. Built from settings if not provided.
            base_price_source: Price of the base currency in value units
            events: Event bus. A fresh one is created if not provided.
            clock: Time source for deadlines, locks and price staleness
        """
        settings = settings or get_settings()
        self.owner = owner
        self.swap_venue = swap_venue
        self.base_token = base_token
        self.metadata_uri = metadata_uri
        self.settings = settings
        self.events = events or EventBus()

        self.shares = ShareToken(
            name=name,
            symbol=symbol,
            address=address or new_address(symbol),
            decimals=settings.share_decimals,
        )
        self.registry = AllocationRegistry(max_allocations=settings.max_allocations)
        self.valuator = Valuator(
            self.registry,
            holder=self.address,
            max_price_age=settings.max_price_age_seconds,
            clock=clock,
        )
        self.ledger = ShareLedger(
            self.registry, self.shares, self.events, clock=clock, base_token=base_token
        )
        self.engine = RebalanceEngine(
            self.registry,
            self.valuator,
            ExternalCalls(self.address, swap_venue),
            base_token,
            self.events,
            config=config or RebalanceConfig.from_settings(settings),
            base_price_source=base_price_source,
            clock=clock,
        )
        self._lock = asyncio.Lock()

    @property
    def address(self) -> str:
        return self.shares.address

    @property
    def name(self) -> str:
        return self.shares.name

    @property
    def symbol(self) -> str:
        return self.shares.symbol

    @property
    def decimals(self) -> int:
        return self.shares.decimals

    @asynccontextmanager
    async def _guarded(self) -> AsyncIterator[None]:
        active = _active_calls.get()
        if id(self) in active:
            raise ReentrancyError(f"Re-entrant call into slice {self.address}")

        async with self._lock:
            token = _active_calls.set(active | {id(self)})
            try:
                yield
            finally:
                _active_calls.reset(token)

    def _only_owner(self, sender: str) -> None:
        if sender != self.owner:
            raise UnauthorizedError(f"{sender} is not the slice owner")

    # Allocation administration

    async def add_allocation(
        self,
        sender: str,
        wrapper: YieldWrapper | None,
        price_source: PriceSource | None,
        percentage: int,
    ) -> Allocation:
        """Track a new wrapper at a target percentage (basis points)."""
        async with self._guarded():
            self._only_owner(sender)
            allocation = self.registry.add(wrapper, price_source, percentage)
            await self.events.emit(
                AllocationAdded(
                    wrapper=allocation.wrapper,
                    asset=allocation.asset,
                    price_source=allocation.price_source,
                    target_percentage=allocation.target_percentage,
                )
            )
            return allocation

    async def set_allocation_percentage(
        self, sender: str, wrapper: str, percentage: int
    ) -> None:
        """Change an allocation's target percentage (basis points)."""
        async with self._guarded():
            self._only_owner(sender)
            old, new = self.registry.set_percentage(wrapper, percentage)
            await self.events.emit(
                AllocationPercentageChanged(
                    wrapper=wrapper, old_percentage=old, new_percentage=new
                )
            )

    async def remove_allocation(self, sender: str, wrapper: str) -> Allocation:
        """Stop tracking a wrapper the slice no longer holds."""
        async with self._guarded():
            self._only_owner(sender)
            entry = self.registry.entry(wrapper)
            held = await entry.wrapper.balance_of(self.address)
            if held > 0:
                raise ConfigurationError(
                    f"Cannot remove {wrapper}: slice still holds {held} shares"
                )
            allocation = self.registry.remove(wrapper)
            await self.events.emit(AllocationRemoved(wrapper=wrapper))
            return allocation

    def get_allocation(self, wrapper: str) -> Allocation:
        return self.registry.get(wrapper)

    def allocations(self) -> list[Allocation]:
        return self.registry.list()

    def price_feed(self, asset: str) -> str:
        return self.registry.price_feed(asset)

    async def latest_price(self, asset: str) -> PriceReading:
        """Current price of an underlying asset, checked against the price policy.

        Raises:
            NotFoundError: No allocation holds the asset
            PriceUnavailableError: The reading is non-positive, stale or failed
        """
        async with self._guarded():
            return await self.valuator.read_price(self.registry.price_source(asset))

    # Deposits and withdrawals

    async def deposit(self, wrapper: str, amount: int, sender: str) -> int:
        async with self._guarded():
            return await self.ledger.deposit(wrapper, amount, sender)

    async def deposit_with_authorization(
        self,
        wrapper: str,
        amount: int,
        sender: str,
        authorization: Authorization,
    ) -> int:
        async with self._guarded():
            return await self.ledger.deposit_with_authorization(
                wrapper, amount, sender, authorization
            )

    async def deposit_batch(self, requests: list[DepositRequest], sender: str) -> list[int]:
        async with self._guarded():
            return await self.ledger.deposit_batch(requests, sender)

    async def withdraw(
        self, share_amount: int, sender: str, receiver: str | None = None
    ) -> list[Withdrawn]:
        async with self._guarded():
            return await self.ledger.withdraw(share_amount, sender, receiver)

    # Rebalancing and valuation

    async def rebalance(self) -> RebalanceResult:
        """Move value toward target allocations. Callable by anyone."""
        async with self._guarded():
            logger.info(f"Rebalancing slice {self.symbol} ({len(self.registry)} allocations)")
            return await self.engine.rebalance()

    async def plan_rebalance(self) -> RebalancePlan:
        """Compute what a rebalance would do without trading."""
        async with self._guarded():
            return await self.engine.plan()

    async def total_value(self) -> int:
        async with self._guarded():
            return await self.valuator.total_value()

    async def snapshot(self) -> ValuationSnapshot:
        async with self._guarded():
            return await self.valuator.snapshot()

    # Share token surface

    async def balance_of(self, holder: str) -> int:
        return await self.shares.balance_of(holder)

    async def total_supply(self) -> int:
        return await self.shares.total_supply()

    async def allowance(self, owner: str, spender: str) -> int:
        return await self.shares.allowance(owner, spender)

    async def transfer(self, sender: str, to: str, amount: int) -> bool:
        async with self._guarded():
            return await self.shares.transfer(sender, to, amount)

    async def approve(self, owner: str, spender: str, amount: int) -> bool:
        async with self._guarded():
            return await self.shares.approve(owner, spender, amount)

    async def transfer_from(self, spender: str, owner: str, to: str, amount: int) -> bool:
        async with self._guarded():
            return await self.shares.transfer_from(spender, owner, to, amount)
